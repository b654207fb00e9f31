import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional

from taskqueue.storage.schema import Task

# handler(cancel, task) -> result; raising marks the attempt as failed.
Handler = Callable[[threading.Event, Task], str]


# many readers or one writer; a waiting writer blocks new readers
class ReadWriteLock:
    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}
        self._lock = ReadWriteLock()

    def register(self, task_type: str, handler: Handler) -> None:
        if not task_type:
            raise ValueError("task type must be a non-empty string")
        with self._lock.write():
            self._handlers[task_type] = handler

    def unregister(self, task_type: str) -> None:
        with self._lock.write():
            self._handlers.pop(task_type, None)

    def get(self, task_type: str) -> Optional[Handler]:
        with self._lock.read():
            return self._handlers.get(task_type)

    def types(self) -> list[str]:
        with self._lock.read():
            return sorted(self._handlers)

    def __contains__(self, task_type: object) -> bool:
        with self._lock.read():
            return task_type in self._handlers
