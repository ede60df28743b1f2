"""
Pytest configuration and fixtures

Nothing here touches a real Redis: the durable mirror is exercised
against FakeRedis, an in-memory double that understands the handful of
commands the mirror issues.
"""
import os
import re
import sys

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Add the project root to the path so we can import core and services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.cache_store import CacheStore
from services.catalog import load_catalog
from services.durable_mirror import DurableMirror


def _glob_to_regex(pattern: str) -> "re.Pattern":
    """Redis MATCH glob (with backslash escapes) -> compiled regex."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(out) + "$", re.DOTALL)


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self._store:
            return False
        self._store[key] = value
        if ex:
            self._ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for k in keys:
            if k in self._store:
                removed += 1
            self._store.pop(k, None)
            self._ttls.pop(k, None)
        return removed

    def exists(self, key):
        return key in self._store

    def scan_iter(self, match=None, count=None):
        regex = _glob_to_regex(match) if match else None
        for key in list(self._store):
            if regex is None or regex.match(key):
                yield key

    def ping(self):
        return True


class FailingRedis:
    """Every command raises, as a Redis that went away mid-run would."""

    def _fail(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    get = set = delete = exists = scan_iter = ping = _fail


class ManualClock:
    """Injectable clock (seconds) that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def mirror(fake_redis):
    return DurableMirror(fake_redis)


@pytest.fixture
def store(clock):
    """Memory-only cache with the default capacity."""
    return CacheStore(capacity=50, default_ttl=300, eviction_fraction=0.2, clock=clock)


@pytest.fixture
def mirrored_store(clock, mirror):
    return CacheStore(capacity=50, default_ttl=300, eviction_fraction=0.2, mirror=mirror, clock=clock)


@pytest.fixture(scope="session")
def catalog():
    return load_catalog()


@pytest.fixture
def failing_redis():
    return FailingRedis()
