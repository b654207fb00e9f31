# Handlers should wait on ``cancel`` instead of sleeping so pool shutdown is not held up.
import random
import threading
from functools import partial

import orjson

from taskqueue.storage.schema import Task

from .registry import HandlerRegistry


class TaskCancelledError(Exception):
    pass


def _pause(cancel: threading.Event, seconds: float) -> None:
    if seconds > 0 and cancel.wait(seconds):
        raise TaskCancelledError("cancelled")


def echo(cancel: threading.Event, task: Task, delay: float = 1.0) -> str:
    _pause(cancel, delay)
    return f"echo: {task.payload}"


def reverse(cancel: threading.Event, task: Task, delay: float = 0.5) -> str:
    _pause(cancel, delay)
    return task.payload[::-1]


def sum_numbers(cancel: threading.Event, task: Task, delay: float = 0.3) -> str:
    try:
        numbers = orjson.loads(task.payload)
    except orjson.JSONDecodeError:
        numbers = None
    if not isinstance(numbers, list) or not all(
        isinstance(n, (int, float)) and not isinstance(n, bool) for n in numbers
    ):
        raise ValueError("invalid payload: expected JSON array of numbers")

    _pause(cancel, delay)
    return f"{sum(numbers):.2f}"


def slow(cancel: threading.Event, task: Task, duration: float = 5.0) -> str:
    _pause(cancel, duration)
    return f"completed after {duration:g} seconds"


def flaky(cancel: threading.Event, task: Task, delay: float = 0.5, failure_rate: float = 0.5,
          rng: random.Random | None = None) -> str:
    _pause(cancel, delay)
    if (rng or random).random() < failure_rate:
        raise RuntimeError("random failure (demo retry)")
    return "succeeded after retry!"


def register_builtin(registry: HandlerRegistry, delays: bool = True) -> None:
    if delays:
        registry.register("echo", echo)
        registry.register("reverse", reverse)
        registry.register("sum", sum_numbers)
        registry.register("slow", slow)
        registry.register("flaky", flaky)
        return

    registry.register("echo", partial(echo, delay=0))
    registry.register("reverse", partial(reverse, delay=0))
    registry.register("sum", partial(sum_numbers, delay=0))
    registry.register("slow", partial(slow, duration=0))
    registry.register("flaky", partial(flaky, delay=0))
