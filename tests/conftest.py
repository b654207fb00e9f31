from pathlib import Path
import sys
import time

import fakeredis
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from taskqueue.storage.repo import TaskQueue


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    client.close()


@pytest.fixture
def queue(redis_client):
    return TaskQueue(redis_client, key_prefix="test", ttl_seconds=3600, default_max_retry=3)
