"""Standalone worker process: ``python -m worker.main``."""
import logging
import signal
import sys
import threading

from taskqueue.config import settings
from taskqueue.errors import StoreUnavailableError
from taskqueue.log_config import configure_logging
from taskqueue.storage.repo import TaskQueue

from .handlers import register_builtin
from .pool import WorkerPool

logger = logging.getLogger(__name__)


def build_pool(queue: TaskQueue) -> WorkerPool:
    pool = WorkerPool(queue, settings.worker_count)
    register_builtin(pool.registry)
    return pool


def main() -> int:
    configure_logging(settings.log_level)

    queue = TaskQueue()
    try:
        queue.ping()
    except StoreUnavailableError as exc:
        logger.error("Failed to connect to Redis: %s", exc)
        return 1
    logger.info("Connected to Redis")

    stop = threading.Event()

    def _on_signal(signum, _frame):
        logger.info("Shutdown signal received (%s)", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    pool = build_pool(queue)
    pool.start(stop)
    try:
        while not stop.wait(1.0):
            pass
    finally:
        pool.stop()
        queue.close()
    logger.info("Worker process stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
