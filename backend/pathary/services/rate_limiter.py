"""Sliding-window rate limiting.

Each key maps to the ordered timestamps of its allowed attempts inside the
trailing window. Keys are composed by callers (``password_change_user_42``,
``login_ip_1.2.3.4``) so the same limiter serves per-user and per-IP
limits.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from pathary.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Interface shared by the rate limiter backends."""

    def is_allowed(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        """Record an attempt for ``key`` and report whether it is within the limit."""
        raise NotImplementedError

    def attempt(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        return self.is_allowed(key, max_attempts, window_seconds)

    def get_remaining_attempts(self, key: str, max_attempts: int, window_seconds: int) -> int:
        raise NotImplementedError

    def get_time_until_reset(self, key: str, window_seconds: int) -> int:
        """Seconds until the oldest attempt in the window falls out of it (0 if none)."""
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError

    def clear_all(self) -> None:
        raise NotImplementedError


@dataclass
class _Bucket:
    timestamps: Deque[float] = field(default_factory=deque)


class InMemoryRateLimiter(RateLimiter):
    """Sliding-window rate limiter suitable for single-node deployments."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}

    def _prune(self, key: str, window_seconds: int, now: float) -> Optional[_Bucket]:
        """Drop timestamps outside the window; an emptied bucket is evicted."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        cutoff = now - window_seconds
        while bucket.timestamps and bucket.timestamps[0] <= cutoff:
            bucket.timestamps.popleft()
        if not bucket.timestamps:
            del self._buckets[key]
            return None
        return bucket

    def is_allowed(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        now = self._clock()

        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            count = len(bucket.timestamps) if bucket else 0

            if count >= max_attempts:
                return False

            if bucket is None:
                bucket = self._buckets[key] = _Bucket()
            bucket.timestamps.append(now)
            return True

    def get_remaining_attempts(self, key: str, max_attempts: int, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            return max(0, max_attempts - (len(bucket.timestamps) if bucket else 0))

    def get_time_until_reset(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._prune(key, window_seconds, now)
            if bucket is None:
                return 0
            return max(0, int(bucket.timestamps[0] + window_seconds - now))

    def clear(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)

    def clear_all(self) -> None:
        with self._lock:
            self._buckets.clear()


class RedisRateLimiter(RateLimiter):
    """Sliding-window rate limiter backed by one Redis sorted set per key.

    Shared across processes, so correctness does not depend on which worker
    served the previous request.
    """

    KEY_PREFIX = "rate_limit:"

    def __init__(self, client, clock: Callable[[], float] = time.time) -> None:
        self._client = client
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def _count(self, redis_key: str, window_seconds: int, now: float) -> int:
        pipe = self._client.pipeline()
        pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
        pipe.zcard(redis_key)
        _, count = pipe.execute()
        return int(count)

    def is_allowed(self, key: str, max_attempts: int, window_seconds: int) -> bool:
        now = self._clock()
        redis_key = self._key(key)

        if self._count(redis_key, window_seconds, now) >= max_attempts:
            return False

        pipe = self._client.pipeline()
        pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex}": now})
        pipe.expire(redis_key, int(window_seconds) + 1)
        pipe.execute()
        return True

    def get_remaining_attempts(self, key: str, max_attempts: int, window_seconds: int) -> int:
        count = self._count(self._key(key), window_seconds, self._clock())
        return max(0, max_attempts - count)

    def get_time_until_reset(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        redis_key = self._key(key)
        if self._count(redis_key, window_seconds, now) == 0:
            return 0
        oldest = self._client.zrange(redis_key, 0, 0, withscores=True)
        if not oldest:
            return 0
        _, oldest_score = oldest[0]
        return max(0, int(float(oldest_score) + window_seconds - now))

    def clear(self, key: str) -> None:
        self._client.delete(self._key(key))

    def clear_all(self) -> None:
        for redis_key in self._client.scan_iter(match=f"{self.KEY_PREFIX}*"):
            self._client.delete(redis_key)


def create_rate_limiter() -> RateLimiter:
    backend = settings.RATE_LIMIT_BACKEND.lower().strip()
    if backend == "redis":
        import redis

        logger.info("Using Redis rate limiter backend")
        return RedisRateLimiter(redis.Redis.from_url(settings.REDIS_URL))
    if backend != "memory":
        raise RuntimeError(f"Unknown RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")
    return InMemoryRateLimiter()


rate_limiter = create_rate_limiter()
