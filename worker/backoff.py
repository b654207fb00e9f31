import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from taskqueue.storage.schema import Task

logger = logging.getLogger(__name__)


def backoff_delay(retries: int, unit: float = 1.0, cap: Optional[float] = None) -> float:
    delay = (2 ** retries) * unit
    if cap is not None:
        delay = min(delay, cap)
    return delay


class BackoffScheduler:
    """Runs ``action(task)`` after a delay on a timer thread; pending timers can be flushed or dropped."""

    def __init__(self, action: Callable[[Task], None]):
        self._action = action
        self._pending: Dict[str, Tuple[threading.Timer, Task]] = {}
        self._running = 0
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending)

    def pending_ids(self) -> list[str]:
        with self._cond:
            return list(self._pending)

    def schedule(self, task: Task, delay: float) -> None:
        timer = threading.Timer(delay, self._fire, args=(task.id,))
        timer.daemon = True
        timer.name = f"backoff-{task.id[:8]}"
        with self._cond:
            self._pending[task.id] = (timer, task)
        timer.start()

    def flush(self) -> list[str]:
        """Cancel outstanding timers and run their actions immediately."""
        entries = self._take_all(mark_running=True)
        for timer, task in entries:
            timer.cancel()
            self._run(task)
        self.wait_idle()
        return [task.id for _, task in entries]

    def drop(self) -> list[str]:
        entries = self._take_all(mark_running=False)
        for timer, _ in entries:
            timer.cancel()
        self.wait_idle()
        return [task.id for _, task in entries]

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: self._running == 0, timeout)

    def _take_all(self, mark_running: bool) -> list[Tuple[threading.Timer, Task]]:
        with self._cond:
            entries = list(self._pending.values())
            self._pending.clear()
            if mark_running:
                self._running += len(entries)
        return entries

    def _fire(self, task_id: str) -> None:
        with self._cond:
            entry = self._pending.pop(task_id, None)
            if entry is None:
                return
            self._running += 1
        self._run(entry[1])

    def _run(self, task: Task) -> None:
        try:
            self._action(task)
        except Exception:
            logger.exception("Deferred retry of task %s failed", task.id)
        finally:
            with self._cond:
                self._running -= 1
                self._cond.notify_all()
