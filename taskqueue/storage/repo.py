import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import List

import orjson
import redis
from pydantic import ValidationError

from .schema import Task, TaskStatus, utc_now
from ..config import settings
from ..errors import RetryBudgetExceededError, StoreUnavailableError, TaskSerializationError

logger = logging.getLogger(__name__)


@contextmanager
def _store_call(action: str):
    try:
        yield
    except redis.RedisError as exc:
        raise StoreUnavailableError(f"{action}: {exc}") from exc


class TaskQueue:
    """Task records under ``<prefix>:task:<id>`` plus the ``<prefix>:pending`` list of IDs to dispatch.

    Record and dispatch entry are written in one MULTI/EXEC block. There is no
    per-record locking: BLPOP hands each ID to exactly one worker.
    """

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        key_prefix: str | None = None,
        ttl_seconds: int | None = None,
        default_max_retry: int | None = None,
    ):
        self.r = client if client is not None else redis.from_url(settings.redis_url, decode_responses=True)
        prefix = key_prefix or settings.key_prefix
        self.pending_key = f"{prefix}:pending"
        self.task_prefix = f"{prefix}:task:"
        self.ttl_seconds = ttl_seconds or settings.task_ttl_seconds
        self.default_max_retry = settings.default_max_retry if default_max_retry is None else default_max_retry
        self.dangling_pops = 0
        self._counter_lock = threading.Lock()

    def _key(self, task_id: str) -> str:
        return f"{self.task_prefix}{task_id}"

    @staticmethod
    def _encode(task: Task) -> bytes:
        try:
            return orjson.dumps(task.model_dump(mode="json", exclude_none=True))
        except (TypeError, orjson.JSONEncodeError) as exc:
            raise TaskSerializationError(f"encode task {task.id}: {exc}") from exc

    @staticmethod
    def _decode(raw: str | bytes) -> Task:
        try:
            return Task.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as exc:
            raise TaskSerializationError(f"decode task: {exc}") from exc

    def _store_and_dispatch(self, task: Task, action: str) -> None:
        data = self._encode(task)
        with _store_call(f"{action} task {task.id}"):
            pipe = self.r.pipeline(transaction=True)
            pipe.set(self._key(task.id), data, ex=self.ttl_seconds)
            pipe.rpush(self.pending_key, task.id)
            pipe.execute()

    def ping(self) -> bool:
        with _store_call("ping"):
            return bool(self.r.ping())

    def close(self) -> None:
        self.r.close()

    def push(self, task_type: str, payload: str, max_retry: int | None = None) -> Task:
        now = utc_now()
        task = Task(
            type=task_type,
            payload=payload,
            max_retry=self.default_max_retry if max_retry is None else max_retry,
            created_at=now,
            updated_at=now,
        )
        self._store_and_dispatch(task, "push")
        logger.debug("Pushed task %s (type=%s)", task.id, task.type)
        return task

    def pop(self, timeout: float) -> Task | None:
        # None on timeout, and on an ID whose record expired or was deleted
        if timeout <= 0:
            raise ValueError("pop timeout must be positive")
        with _store_call("pop task"):
            item = self.r.blpop([self.pending_key], timeout=timeout)
        if item is None:
            return None

        _, task_id = item
        task = self.get(task_id)
        if task is None:
            with self._counter_lock:
                self.dangling_pops += 1
            logger.warning("Dispatched task %s has no stored record, dropping it", task_id)
        return task

    def get(self, task_id: str) -> Task | None:
        with _store_call(f"get task {task_id}"):
            raw = self.r.get(self._key(task_id))
        if raw is None:
            return None
        return self._decode(raw)

    def update(self, task: Task) -> bool:
        """Overwrite an existing record. Returns False, writing nothing, once it was deleted."""
        task.updated_at = utc_now()
        data = self._encode(task)
        with _store_call(f"update task {task.id}"):
            return bool(self.r.set(self._key(task.id), data, ex=self.ttl_seconds, xx=True))

    def retry(self, task: Task) -> bool:
        if not task.can_retry:
            raise RetryBudgetExceededError(task.id, task.max_retry)
        task.transition(TaskStatus.PENDING)
        task.retries += 1
        task.updated_at = utc_now()
        data = self._encode(task)
        key = self._key(task.id)

        def _requeue(pipe) -> bool:
            if not pipe.exists(key):
                return False
            pipe.multi()
            pipe.set(key, data, ex=self.ttl_seconds)
            pipe.rpush(self.pending_key, task.id)
            return True

        # WATCH on the record: a delete racing the retry aborts and re-runs the check
        with _store_call(f"retry task {task.id}"):
            requeued = self.r.transaction(_requeue, key, value_from_callable=True)
        if not requeued:
            logger.warning("Task %s was deleted while waiting to retry, dropping it", task.id)
        return requeued

    def list(self) -> List[Task]:
        with _store_call("list tasks"):
            keys = list(self.r.scan_iter(match=f"{self.task_prefix}*", count=500))
            if not keys:
                return []
            pipe = self.r.pipeline(transaction=False)
            for key in keys:
                pipe.get(key)
            values = pipe.execute()

        tasks = []
        for key, raw in zip(keys, values):
            # expired between SCAN and GET
            if raw is None:
                continue
            try:
                tasks.append(self._decode(raw))
            except TaskSerializationError:
                logger.warning("Skipping undecodable record %s", key)
        return tasks

    def delete(self, task_id: str) -> bool:
        with _store_call(f"delete task {task_id}"):
            return bool(self.r.delete(self._key(task_id)))

    def pending_count(self) -> int:
        with _store_call("count pending"):
            return int(self.r.llen(self.pending_key))

    def reconcile(self, min_age_seconds: float = 60.0) -> List[str]:
        # pending records missing from the list; recently touched ones may have just been popped
        with _store_call("read pending list"):
            queued = set(self.r.lrange(self.pending_key, 0, -1))
        cutoff = utc_now() - timedelta(seconds=min_age_seconds)

        requeued = []
        for task in self.list():
            if task.status is not TaskStatus.PENDING or task.id in queued:
                continue
            if task.updated_at > cutoff:
                continue
            with _store_call(f"requeue task {task.id}"):
                self.r.rpush(self.pending_key, task.id)
            requeued.append(task.id)

        if requeued:
            logger.warning("Re-dispatched %d orphaned pending task(s): %s", len(requeued), ", ".join(requeued))
        return requeued
