"""Read-through cache with a shared Redis backend and an in-process fallback.

Callers never see backend errors: when Redis is unreachable every operation
is served from the local map instead, with identical TTL semantics.
"""

from __future__ import annotations

import json
import time
from threading import Lock
from typing import Any, Callable, Optional, Protocol

import redis
from redis.exceptions import RedisError

from housing.utils.config import Settings, get_settings
from housing.utils.logger import get_logger


logger = get_logger(__name__)


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryCacheBackend:
    """Process-local map; expiry is evaluated lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds and ttl_seconds > 0:
            expires_at = self._clock() + ttl_seconds
        else:
            expires_at = float("inf")
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheBackend:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        client = redis.Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=1.0,
            socket_timeout=1.0,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds and ttl_seconds > 0:
            self._client.setex(key, ttl_seconds, value)
        else:
            self._client.set(key, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def ping(self) -> bool:
        return bool(self._client.ping())


class CacheService:
    """Cache facade used by settings and read-heavy lookups."""

    def __init__(
        self,
        shared: Optional[CacheBackend] = None,
        local: Optional[InMemoryCacheBackend] = None,
        key_prefix: str = "",
        warning_interval_seconds: float = 60.0,
    ) -> None:
        self._shared = shared
        self._local = local or InMemoryCacheBackend()
        self._key_prefix = key_prefix
        self._warning_interval_seconds = warning_interval_seconds
        self._last_warning_at: Optional[float] = None

    @property
    def has_shared_backend(self) -> bool:
        return self._shared is not None

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _report_shared_failure(self, operation: str, exc: Exception) -> None:
        now = time.monotonic()
        if (
            self._last_warning_at is None
            or now - self._last_warning_at >= self._warning_interval_seconds
        ):
            self._last_warning_at = now
            logger.warning(
                "Shared cache unavailable; using in-process cache | operation=%s | error=%s",
                operation,
                exc,
            )

    def get(self, key: str) -> Any:
        full_key = self._key(key)
        raw: Optional[str] = None
        served = False
        if self._shared is not None:
            try:
                raw = self._shared.get(full_key)
                served = True
            except RedisError as exc:
                self._report_shared_failure("get", exc)
        if not served:
            raw = self._local.get(full_key)
        if raw is None:
            logger.debug("Cache MISS | key=%s", full_key)
            return None
        logger.debug("Cache HIT | key=%s", full_key)
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        full_key = self._key(key)
        payload = json.dumps(value)
        if self._shared is not None:
            try:
                self._shared.set(full_key, payload, ttl_seconds)
                self._local.delete(full_key)
                return
            except RedisError as exc:
                self._report_shared_failure("set", exc)
        self._local.set(full_key, payload, ttl_seconds)

    def invalidate(self, key: str) -> None:
        full_key = self._key(key)
        if self._shared is not None:
            try:
                self._shared.delete(full_key)
            except RedisError as exc:
                self._report_shared_failure("invalidate", exc)
        self._local.delete(full_key)

    def with_cache(
        self,
        key: str,
        ttl_seconds: Optional[int],
        producer: Callable[[], Any],
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = producer()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value


def build_cache_service(settings: Optional[Settings] = None) -> CacheService:
    """Select cache backends at startup from ``REDIS_URL``."""
    resolved = settings or get_settings()
    shared: Optional[RedisCacheBackend] = None
    if resolved.redis_url:
        shared = RedisCacheBackend.from_url(resolved.redis_url)
        try:
            shared.ping()
            logger.info("Shared cache connected | url=%s", resolved.redis_url)
        except RedisError as exc:
            # Kept as primary anyway; each call falls back until Redis recovers.
            logger.warning(
                "Shared cache unreachable at startup; serving from in-process cache | error=%s",
                exc,
            )
    else:
        logger.info("REDIS_URL not configured; using in-process cache")
    return CacheService(shared=shared, key_prefix=resolved.cache_key_prefix)
