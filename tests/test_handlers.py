import random
import threading

import pytest

from taskqueue.storage.schema import Task
from worker import handlers
from worker.registry import HandlerRegistry


@pytest.fixture
def cancel():
    return threading.Event()


def test_echo(cancel):
    assert handlers.echo(cancel, Task(type="echo", payload="hi"), delay=0) == "echo: hi"


def test_reverse_handles_unicode(cancel):
    assert handlers.reverse(cancel, Task(type="reverse", payload="привет"), delay=0) == "тевирп"


@pytest.mark.parametrize("payload, expected", [("[1, 2, 3]", "6.00"), ("[1.5, 2.25]", "3.75"), ("[]", "0.00")])
def test_sum(cancel, payload, expected):
    assert handlers.sum_numbers(cancel, Task(type="sum", payload=payload), delay=0) == expected


@pytest.mark.parametrize("payload", ["not json", '{"a": 1}', '["1", 2]', "[true]"])
def test_sum_rejects_bad_payload(cancel, payload):
    with pytest.raises(ValueError, match="invalid payload: expected JSON array of numbers"):
        handlers.sum_numbers(cancel, Task(type="sum", payload=payload), delay=0)


def test_slow_observes_cancellation(cancel):
    cancel.set()

    with pytest.raises(handlers.TaskCancelledError):
        handlers.slow(cancel, Task(type="slow"), duration=5)


def test_slow_completes(cancel):
    assert handlers.slow(cancel, Task(type="slow"), duration=0.01) == "completed after 0.01 seconds"


def test_flaky_depends_on_rng(cancel):
    task = Task(type="flaky")

    with pytest.raises(RuntimeError, match="random failure"):
        handlers.flaky(cancel, task, delay=0, failure_rate=1.0)
    assert handlers.flaky(cancel, task, delay=0, failure_rate=0.0) == "succeeded after retry!"
    assert handlers.flaky(cancel, task, delay=0, rng=random.Random(1), failure_rate=0.0)


def test_register_builtin(cancel):
    registry = HandlerRegistry()
    handlers.register_builtin(registry, delays=False)

    assert registry.types() == ["echo", "flaky", "reverse", "slow", "sum"]
    assert registry.get("echo")(cancel, Task(type="echo", payload="x")) == "echo: x"
