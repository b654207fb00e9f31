from pydantic import BaseModel
import os


def _env_flag(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    api_token: str | None = os.getenv("API_TOKEN") or None
    worker_count: int = int(os.getenv("WORKER_COUNT", 3))
    task_ttl_seconds: int = int(os.getenv("TASK_TTL_SECONDS", 24 * 60 * 60))
    default_max_retry: int = int(os.getenv("DEFAULT_MAX_RETRY", 3))
    pop_timeout_seconds: int = int(os.getenv("POP_TIMEOUT_SECONDS", 2))
    backoff_unit_seconds: float = float(os.getenv("BACKOFF_UNIT_SECONDS", 1.0))
    backoff_max_seconds: float = float(os.getenv("BACKOFF_MAX_SECONDS", 300))
    key_prefix: str = os.getenv("TASKQUEUE_KEY_PREFIX", "taskqueue")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    run_workers_in_api: bool = _env_flag("RUN_WORKERS_IN_API", True)

settings = Settings()
