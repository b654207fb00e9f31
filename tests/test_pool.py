import threading
import time
from datetime import timedelta

import pytest

from taskqueue.storage.repo import TaskQueue
from taskqueue.storage.schema import TaskStatus, utc_now
from worker.handlers import register_builtin
from worker.pool import WorkerPool

from conftest import wait_for


def _status(queue, task_id, status):
    return lambda: (t := queue.get(task_id)) is not None and t.status is status


@pytest.fixture
def make_pool(queue):
    pools = []

    def _make(count=1, backoff_unit=0.01, **kwargs):
        pool = WorkerPool(queue, count, pop_timeout=1, backoff_unit=backoff_unit, **kwargs)
        pools.append(pool)
        return pool

    yield _make
    for pool in pools:
        pool.stop(flush_backoff=False)


def test_success_transitions_to_completed(queue, make_pool):
    pool = make_pool()
    pool.register("success_task", lambda cancel, task: "ok result")
    created = queue.push("success_task", "payload")

    pool.start()

    assert wait_for(_status(queue, created.id, TaskStatus.COMPLETED))
    stored = queue.get(created.id)
    assert stored.result == "ok result"
    assert stored.error is None
    assert stored.retries == 0
    assert pool.stats.snapshot()["succeeded"] == 1


def test_echo_end_to_end(queue, make_pool):
    pool = make_pool(count=3)
    register_builtin(pool.registry, delays=False)
    created = queue.push("echo", "hi", max_retry=3)

    pool.start()

    assert wait_for(_status(queue, created.id, TaskStatus.COMPLETED))
    assert queue.get(created.id).result == "echo: hi"


def test_unknown_type_fails_without_retry(queue, make_pool):
    pool = make_pool()
    created = queue.push("bogus", "x", max_retry=3)

    pool.start()

    assert wait_for(_status(queue, created.id, TaskStatus.FAILED))
    stored = queue.get(created.id)
    assert stored.error == "unknown task type: bogus"
    assert stored.retries == 0
    assert pool.pending_backoffs == 0
    assert queue.pending_count() == 0


def test_always_failing_task_ends_failed_after_budget(queue, make_pool):
    attempts = []
    pool = make_pool()

    def always_fails(cancel, task):
        attempts.append(task.retries)
        raise RuntimeError("something went wrong")

    pool.register("fail_task", always_fails)
    created = queue.push("fail_task", "payload", max_retry=2)

    pool.start()

    assert wait_for(_status(queue, created.id, TaskStatus.FAILED))
    stored = queue.get(created.id)
    assert stored.retries == 2
    assert stored.error == "something went wrong"
    assert attempts == [0, 1, 2]
    time.sleep(0.2)
    assert attempts == [0, 1, 2]
    assert queue.pending_count() == 0


def test_retry_waits_for_backoff_then_redelivers(queue, make_pool):
    calls = []
    pool = make_pool(backoff_unit=0.3)

    def fails_once(cancel, task):
        calls.append(time.monotonic())
        if task.retries == 0:
            raise RuntimeError("transient")
        return "second time lucky"

    pool.register("flaky", fails_once)
    created = queue.push("flaky", "payload", max_retry=3)

    pool.start()

    assert wait_for(lambda: pool.pending_backoffs == 1)
    during = queue.get(created.id)
    assert during.status is TaskStatus.PROCESSING
    assert during.error == "transient"

    assert wait_for(_status(queue, created.id, TaskStatus.COMPLETED))
    stored = queue.get(created.id)
    assert stored.retries == 1
    assert stored.result == "second time lucky"
    assert stored.error is None
    assert calls[1] - calls[0] >= 0.3


def test_stop_flushes_pending_backoff(queue, make_pool):
    pool = make_pool(backoff_unit=60)

    def fails(cancel, task):
        raise RuntimeError("something went wrong")

    pool.register("fail_task", fails)
    created = queue.push("fail_task", "payload")
    pool.start()
    assert wait_for(lambda: pool.pending_backoffs == 1)

    flushed = pool.stop()

    assert flushed == [created.id]
    stored = queue.get(created.id)
    assert stored.status is TaskStatus.PENDING
    assert stored.retries == 1
    assert queue.pending_count() == 1


def test_stop_can_drop_pending_backoff(queue, make_pool):
    pool = make_pool(backoff_unit=60)
    pool.register("fail_task", lambda cancel, task: 1 / 0)
    created = queue.push("fail_task", "payload")
    pool.start()
    assert wait_for(lambda: pool.pending_backoffs == 1)

    dropped = pool.stop(flush_backoff=False)

    assert dropped == [created.id]
    stored = queue.get(created.id)
    assert stored.status is TaskStatus.PROCESSING
    assert stored.error == "division by zero"
    assert queue.pending_count() == 0


def test_external_cancel_signal_stops_workers(queue, make_pool):
    pool = make_pool(count=2)
    cancel = threading.Event()
    pool.start(cancel)
    assert pool.running

    cancel.set()

    assert wait_for(lambda: not pool.running, timeout=5)


def test_handler_receives_cancellation(queue, make_pool):
    pool = make_pool()
    started = threading.Event()
    seen = []

    def waits(cancel, task):
        started.set()
        seen.append(cancel.wait(10))
        raise RuntimeError("cancelled")

    pool.register("slow", waits)
    queue.push("slow", "", max_retry=0)
    pool.start()
    assert started.wait(5)

    began = time.monotonic()
    pool.stop()

    assert seen == [True]
    assert time.monotonic() - began < 5


def test_handler_cannot_mutate_record(queue, make_pool):
    pool = make_pool()

    def meddles(cancel, task):
        task.status = TaskStatus.FAILED
        task.payload = "changed"
        return "done"

    pool.register("meddle", meddles)
    created = queue.push("meddle", "untouched")
    pool.start()

    assert wait_for(_status(queue, created.id, TaskStatus.COMPLETED))
    assert queue.get(created.id).payload == "untouched"


def test_stale_dispatch_is_skipped(queue):
    pool = WorkerPool(queue, 1, pop_timeout=1)
    calls = []
    pool.register("echo", lambda cancel, task: calls.append(task.id) or "x")
    created = queue.push("echo", "hi")
    task = queue.pop(1)
    task.mark_processing()
    queue.update(task)

    pool.process(queue.get(created.id))

    assert calls == []
    assert pool.stats.snapshot()["stale"] == 1


def test_start_twice_is_rejected(queue, make_pool):
    pool = make_pool()
    pool.start()

    with pytest.raises(RuntimeError):
        pool.start()


def test_start_dispatches_orphaned_pending_record(queue, redis_client, make_pool):
    pool = make_pool()
    pool.register("echo", lambda cancel, task: f"echo: {task.payload}")
    orphan = queue.push("echo", "lost")
    redis_client.lrem("test:pending", 0, orphan.id)
    orphan.updated_at = utc_now() - timedelta(minutes=5)
    redis_client.set(f"test:task:{orphan.id}", TaskQueue._encode(orphan))

    pool.start()

    assert wait_for(_status(queue, orphan.id, TaskStatus.COMPLETED))
    assert queue.get(orphan.id).result == "echo: lost"


def test_task_deleted_during_backoff_stays_deleted(queue, make_pool):
    attempts = []
    pool = make_pool(backoff_unit=0.2)

    def always_fails(cancel, task):
        attempts.append(task.retries)
        raise RuntimeError("something went wrong")

    pool.register("fail_task", always_fails)
    created = queue.push("fail_task", "payload", max_retry=3)
    pool.start()
    assert wait_for(lambda: pool.pending_backoffs == 1)

    queue.delete(created.id)

    assert wait_for(lambda: pool.stats.snapshot()["dropped"] == 1)
    time.sleep(0.5)
    assert queue.get(created.id) is None
    assert attempts == [0]
    assert queue.pending_count() == 0


def test_task_deleted_before_processing_is_not_run(queue):
    pool = WorkerPool(queue, 1, pop_timeout=1)
    calls = []
    pool.register("echo", lambda cancel, task: calls.append(task.id) or "x")
    queue.push("echo", "hi")
    task = queue.pop(1)
    queue.delete(task.id)

    pool.process(task)

    assert calls == []
    assert queue.get(task.id) is None
    assert pool.stats.snapshot()["dropped"] == 1
