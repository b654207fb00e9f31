import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from taskqueue.config import settings
from taskqueue.errors import QueueError
from taskqueue.storage.repo import TaskQueue
from taskqueue.storage.schema import Task, TaskStatus

from .backoff import BackoffScheduler, backoff_delay
from .registry import Handler, HandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class PoolStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    stale: int = 0
    dropped: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "processed": self.processed,
                "succeeded": self.succeeded,
                "failed": self.failed,
                "retried": self.retried,
                "stale": self.stale,
                "dropped": self.dropped,
            }


class WorkerPool:
    """N worker threads popping from a TaskQueue; failed attempts are re-enqueued by tracked backoff timers."""

    def __init__(
        self,
        queue: TaskQueue,
        count: Optional[int] = None,
        *,
        registry: Optional[HandlerRegistry] = None,
        pop_timeout: Optional[float] = None,
        backoff_unit: Optional[float] = None,
        backoff_max: Optional[float] = None,
    ):
        self.queue = queue
        self.count = count or settings.worker_count
        self.registry = registry or HandlerRegistry()
        self.pop_timeout = pop_timeout or settings.pop_timeout_seconds
        self.backoff_unit = settings.backoff_unit_seconds if backoff_unit is None else backoff_unit
        self.backoff_max = settings.backoff_max_seconds if backoff_max is None else backoff_max
        self.stats = PoolStats()
        self._cancel = threading.Event()
        self._threads: list[threading.Thread] = []
        self._backoff = BackoffScheduler(self._requeue)

    def register(self, task_type: str, handler: Handler) -> None:
        self.registry.register(task_type, handler)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def pending_backoffs(self) -> int:
        return len(self._backoff)

    def start(self, cancel: Optional[threading.Event] = None, *, reconcile: bool = True) -> threading.Event:
        if self._threads:
            raise RuntimeError("worker pool already started")
        if cancel is not None:
            self._cancel = cancel
        elif self._cancel.is_set():
            self._cancel = threading.Event()

        if reconcile:
            try:
                self.queue.reconcile()
            except QueueError as exc:
                logger.error("Reconcile before start failed: %s", exc)

        for i in range(self.count):
            thread = threading.Thread(target=self._worker, args=(i,), name=f"worker-{i}", daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.info("Started %d workers (handlers: %s)", self.count, ", ".join(self.registry.types()) or "none")
        return self._cancel

    def stop(self, flush_backoff: bool = True, timeout: Optional[float] = None) -> list[str]:
        # flush: re-enqueue waiting retries now; otherwise drop them (records stay processing)
        self._cancel.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("%s did not stop within %ss", thread.name, timeout)
        self._threads = []

        if flush_backoff:
            ids = self._backoff.flush()
            if ids:
                logger.info("Re-enqueued %d task(s) waiting on backoff", len(ids))
        else:
            ids = self._backoff.drop()
            if ids:
                logger.warning("Dropped %d pending retr%s: %s", len(ids), "y" if len(ids) == 1 else "ies", ", ".join(ids))
        logger.info("All workers stopped")
        return ids

    def _worker(self, worker_id: int) -> None:
        cancel = self._cancel
        logger.info("Worker %d started", worker_id)
        while not cancel.is_set():
            try:
                task = self.queue.pop(self.pop_timeout)
            except QueueError as exc:
                if cancel.is_set():
                    break
                logger.error("Worker %d: pop error: %s", worker_id, exc)
                cancel.wait(self.pop_timeout)
                continue

            if task is None:
                continue
            try:
                self.process(task, worker_id)
            except Exception:
                logger.exception("Worker %d: unexpected error while processing task %s", worker_id, task.id)
        logger.info("Worker %d shutting down", worker_id)

    def process(self, task: Task, worker_id: int = 0) -> None:
        if task.status is not TaskStatus.PENDING:
            self.stats.incr("stale")
            logger.warning("Worker %d: skipping task %s dispatched in status %s", worker_id, task.id, task.status.value)
            return

        logger.info("Worker %d processing task %s (type: %s)", worker_id, task.id, task.type)
        self.stats.incr("processed")
        task.mark_processing()
        if self._persist(task, worker_id, "status") is False:
            return

        handler = self.registry.get(task.type)
        if handler is None:
            task.mark_failed(f"unknown task type: {task.type}")
            self.stats.incr("failed")
            logger.warning("Worker %d: task %s has unknown type %r", worker_id, task.id, task.type)
            self._persist(task, worker_id, "result")
            return

        try:
            # handlers get a copy; only the pool writes the record
            result = handler(self._cancel, task.model_copy(deep=True))
        except Exception as exc:
            self._handle_failure(task, exc, worker_id)
            return

        task.mark_completed("" if result is None else str(result))
        self.stats.incr("succeeded")
        logger.info("Worker %d: task %s completed", worker_id, task.id)
        self._persist(task, worker_id, "result")

    def _handle_failure(self, task: Task, exc: Exception, worker_id: int) -> None:
        task.error = str(exc) or exc.__class__.__name__
        if task.can_retry:
            delay = backoff_delay(task.retries, self.backoff_unit, self.backoff_max)
            logger.warning(
                "Worker %d: task %s failed (retry %d/%d in %.2fs): %s",
                worker_id, task.id, task.retries + 1, task.max_retry, delay, task.error,
                exc_info=exc,
            )
            if self._persist(task, worker_id, "error") is not False:
                self._backoff.schedule(task, delay)
            return

        task.mark_failed(task.error)
        self.stats.incr("failed")
        logger.error("Worker %d: task %s failed after %d retries: %s", worker_id, task.id, task.retries, task.error)
        self._persist(task, worker_id, "result")

    def _requeue(self, task: Task) -> None:
        if not self.queue.retry(task):
            self.stats.incr("dropped")
            return
        self.stats.incr("retried")
        logger.info("Task %s re-enqueued (retry %d/%d)", task.id, task.retries, task.max_retry)

    def _persist(self, task: Task, worker_id: int, what: str) -> Optional[bool]:
        # False: the record was deleted. None: the store failed, carry on regardless.
        try:
            written = self.queue.update(task)
        except QueueError as exc:
            logger.error("Worker %d: update %s error for task %s: %s", worker_id, what, task.id, exc)
            return None
        if not written:
            self.stats.incr("dropped")
            logger.warning("Worker %d: task %s was deleted, dropping it", worker_id, task.id)
        return written
