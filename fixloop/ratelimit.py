"""Fixed-window rate limiter backed by an external counter store.

The counter lives in the store, keyed by a sanitized caller identity. The
limiter itself holds no per-identity state, so any number of replicas can
share one Redis instance. When the store is unreachable the limiter fails
open: availability wins over strict quota enforcement.
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from prometheus_client import Counter

from .errors import RateLimitExceeded
from .state import RateLimitStatus

logger = logging.getLogger("fixloop.ratelimit")

RATE_LIMIT_DECISIONS = Counter(
    "fixloop_ratelimit_decisions_total",
    "Rate limit checks by decision",
    ["decision"],
)
RATE_LIMIT_STORE_ERRORS = Counter(
    "fixloop_ratelimit_store_errors_total",
    "Counter store failures (request allowed: fail open)",
)

KEY_PREFIX = "ratelimit:"
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9.:]")


def sanitize_identity(identity: str) -> str:
    """Strip everything but IP-address characters to prevent key injection."""
    cleaned = _UNSAFE_KEY_CHARS.sub("", identity or "")[:128]
    return cleaned or "unknown"


def rate_limit_key(identity: str) -> str:
    return f"{KEY_PREFIX}{sanitize_identity(identity)}"


class CounterStore(Protocol):
    """Minimal async counter store. Redis semantics."""

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> None: ...

    async def ttl_ms(self, key: str) -> int:
        """Remaining TTL in ms; -2 if the key is missing, -1 if it has no expiry."""
        ...

    async def get(self, key: str) -> int | None: ...

    async def delete(self, key: str) -> None: ...


@dataclass
class _Entry:
    value: int = 0
    expires_at: float | None = None


class MemoryCounterStore:
    """Thread-safe in-process counter store with TTL semantics.

    Only suitable for a single replica or tests: counts are not shared
    across processes.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._data[key]
            return None
        return entry

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = self._data[key] = _Entry()
            entry.value += 1
            return entry.value

    async def expire(self, key: str, seconds: int) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is not None:
                entry.expires_at = self._clock() + seconds

    async def ttl_ms(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            return max(0, int(round((entry.expires_at - self._clock()) * 1000)))

    async def get(self, key: str) -> int | None:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class RedisCounterStore:
    """Counter store over redis.asyncio. INCR is atomic across replicas."""

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> RedisCounterStore:
        from redis import asyncio as aioredis

        client = aioredis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(key))

    async def expire(self, key: str, seconds: int) -> None:
        await self._client.expire(key, seconds)

    async def ttl_ms(self, key: str) -> int:
        return int(await self._client.pttl(key))

    async def get(self, key: str) -> int | None:
        raw = await self._client.get(key)
        return int(raw) if raw is not None else None

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def close(self) -> None:
        await self._client.aclose()


def format_reset_time(reset_at_ms: int, now_ms: int | None = None) -> str:
    """Human-readable time until reset: '12 minutes', '1 hour 5 minutes'."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    diff = reset_at_ms - now_ms
    if diff <= 0:
        return "now"

    minutes = math.ceil(diff / 60000)
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'}"

    hours, rem = divmod(minutes, 60)
    hours_str = f"{hours} hour{'' if hours == 1 else 's'}"
    if rem == 0:
        return hours_str
    return f"{hours_str} {rem} minute{'' if rem == 1 else 's'}"


class RateLimiter:
    """Per-identity fixed-window request counter."""

    def __init__(
        self,
        store: CounterStore,
        limit: int = 3,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    def _fail_open(self, now: int) -> RateLimitStatus:
        return RateLimitStatus(
            allowed=True,
            limit=self.limit,
            remaining=self.limit,
            reset_at_epoch_ms=now + self.window_seconds * 1000,
            reset_in_seconds=self.window_seconds,
        )

    def _status(self, count: int, ttl_ms: int, now: int, allowed: bool) -> RateLimitStatus:
        reset_in_ms = ttl_ms if ttl_ms > 0 else self.window_seconds * 1000
        return RateLimitStatus(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at_epoch_ms=now + reset_in_ms,
            reset_in_seconds=math.ceil(reset_in_ms / 1000),
        )

    async def check(self, identity: str) -> RateLimitStatus:
        """Count one request against the caller's window."""
        key = rate_limit_key(identity)
        now = self._now_ms()
        try:
            count = await self._store.incr(key)
            if count == 1:
                await self._store.expire(key, self.window_seconds)
            ttl = await self._store.ttl_ms(key)
            if ttl == -1:
                # INCR landed but EXPIRE never did: the key would never reset
                logger.warning("ratelimit_expiry_repaired", extra={"key": key})
                await self._store.expire(key, self.window_seconds)
                ttl = self.window_seconds * 1000
        except Exception as e:
            RATE_LIMIT_STORE_ERRORS.inc()
            logger.warning("ratelimit_store_unavailable_fail_open", extra={"key": key, "error": str(e)[:200]})
            return self._fail_open(now)

        status = self._status(count, ttl, now, allowed=count <= self.limit)
        RATE_LIMIT_DECISIONS.labels(decision="allowed" if status.allowed else "rejected").inc()
        return status

    async def check_or_reject(self, identity: str) -> RateLimitStatus:
        status = await self.check(identity)
        if not status.allowed:
            when = format_reset_time(status.reset_at_epoch_ms, self._now_ms())
            raise RateLimitExceeded(
                status,
                f"Rate limit exceeded. You can make {status.limit} requests per hour. Try again in {when}.",
            )
        return status

    async def status(self, identity: str) -> RateLimitStatus:
        """Current window state without counting a request."""
        key = rate_limit_key(identity)
        now = self._now_ms()
        try:
            count = await self._store.get(key) or 0
            ttl = await self._store.ttl_ms(key)
        except Exception as e:
            RATE_LIMIT_STORE_ERRORS.inc()
            logger.warning("ratelimit_status_unavailable", extra={"key": key, "error": str(e)[:200]})
            return self._fail_open(now)
        return self._status(count, ttl, now, allowed=count < self.limit)

    async def reset(self, identity: str) -> None:
        key = rate_limit_key(identity)
        try:
            await self._store.delete(key)
        except Exception as e:
            RATE_LIMIT_STORE_ERRORS.inc()
            logger.warning("ratelimit_reset_failed", extra={"key": key, "error": str(e)[:200]})
            raise
        logger.info("ratelimit_reset", extra={"key": key})
