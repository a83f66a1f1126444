from __future__ import annotations

import logging
from dataclasses import replace

from redis.exceptions import ConnectionError as RedisConnectionError

from housing.services.cache_service import (
    CacheService,
    InMemoryCacheBackend,
    build_cache_service,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DictBackend:
    """Shared-backend double that records writes."""

    def __init__(self) -> None:
        self.entries: dict[str, str] = {}
        self.ttls: dict[str, object] = {}

    def get(self, key):
        return self.entries.get(key)

    def set(self, key, value, ttl_seconds):
        self.entries[key] = value
        self.ttls[key] = ttl_seconds

    def delete(self, key):
        self.entries.pop(key, None)


class FlakyBackend(DictBackend):
    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def set(self, key, value, ttl_seconds):
        if self.down:
            raise RedisConnectionError("connection refused")
        super().set(key, value, ttl_seconds)


class UnreachableBackend:
    def __init__(self) -> None:
        self.calls = 0

    def _fail(self, *args):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    get = _fail
    set = _fail
    delete = _fail


def test_in_memory_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    backend = InMemoryCacheBackend(clock=clock)
    backend.set("k", "v", 10)

    clock.advance(9.9)
    assert backend.get("k") == "v"
    clock.advance(0.2)
    assert backend.get("k") is None
    assert len(backend) == 0


def test_in_memory_entry_without_ttl_never_expires() -> None:
    clock = FakeClock()
    backend = InMemoryCacheBackend(clock=clock)
    backend.set("k", "v", None)
    clock.advance(10**9)
    assert backend.get("k") == "v"


def test_with_cache_calls_producer_once_until_invalidated() -> None:
    cache = CacheService(key_prefix="test:")
    calls = []

    def producer():
        calls.append(1)
        return {"value": len(calls)}

    assert cache.with_cache("stats", 60, producer) == {"value": 1}
    assert cache.with_cache("stats", 60, producer) == {"value": 1}
    cache.invalidate("stats")
    assert cache.with_cache("stats", 60, producer) == {"value": 2}
    assert len(calls) == 2


def test_with_cache_does_not_store_none() -> None:
    cache = CacheService()
    calls = []

    def producer():
        calls.append(1)
        return None

    cache.with_cache("missing", 60, producer)
    cache.with_cache("missing", 60, producer)
    assert len(calls) == 2


def test_shared_backend_receives_prefixed_keys_and_ttl() -> None:
    shared = DictBackend()
    cache = CacheService(shared=shared, key_prefix="housing:")

    cache.set("settings:accommodations:ageGapYears", 5, 300)

    assert shared.entries == {"housing:settings:accommodations:ageGapYears": "5"}
    assert shared.ttls["housing:settings:accommodations:ageGapYears"] == 300
    assert cache.get("settings:accommodations:ageGapYears") == 5


def test_shared_write_evicts_local_copy() -> None:
    shared = FlakyBackend()
    local = InMemoryCacheBackend()
    cache = CacheService(shared=shared, local=local)

    shared.down = True
    cache.set("k", "stale", 60)
    assert len(local) == 1

    shared.down = False
    cache.set("k", "fresh", 60)

    assert len(local) == 0
    assert cache.get("k") == "fresh"


def test_unreachable_shared_backend_falls_back_silently() -> None:
    shared = UnreachableBackend()
    cache = CacheService(shared=shared)

    cache.set("k", [1, 2, 3], 60)
    assert cache.get("k") == [1, 2, 3]
    cache.invalidate("k")
    assert cache.get("k") is None
    assert shared.calls == 4


def test_fallback_keeps_ttl_semantics() -> None:
    clock = FakeClock()
    cache = CacheService(shared=UnreachableBackend(), local=InMemoryCacheBackend(clock=clock))

    cache.set("k", "v", 5)
    clock.advance(6)

    assert cache.get("k") is None


def test_fallback_warning_is_rate_limited(caplog) -> None:
    cache = CacheService(shared=UnreachableBackend(), warning_interval_seconds=3600.0)

    with caplog.at_level(logging.WARNING, logger="housing.services.cache_service"):
        for _ in range(5):
            cache.get("k")

    warnings = [record for record in caplog.records if "Shared cache unavailable" in record.getMessage()]
    assert len(warnings) == 1


def test_build_cache_service_without_redis_url_is_local_only(settings) -> None:
    cache = build_cache_service(replace(settings, redis_url=None))
    assert not cache.has_shared_backend
    cache.set("k", "v", 10)
    assert cache.get("k") == "v"
