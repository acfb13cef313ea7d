"""Sliding-window limiter shared across replicas through Redis."""

from __future__ import annotations

import time
import uuid
from typing import Callable, Final, Tuple

from redis import Redis
from redis.exceptions import ResponseError


class RedisSlidingWindowRateLimiter:
    """One sorted set of attempt timestamps (ms) per key.

    The script trims, counts and records atomically. It answers ``-1`` when
    the attempt was recorded, otherwise the milliseconds until the oldest
    attempt leaves the window.
    """

    _CHECK_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local limit = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    if redis.call('ZCARD', key) < limit then
        redis.call('ZADD', key, now_ms, ARGV[4])
        redis.call('PEXPIRE', key, window_ms)
        return -1
    end
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return tonumber(oldest[2]) + window_ms - now_ms
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "rate",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._limit = max_requests
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock
        self._check = client.register_script(self._CHECK_SCRIPT)

    def check(self, key: str) -> Tuple[bool, float]:
        """Record an attempt for ``key``; returns ``(allowed, seconds until retry)``."""
        now_ms = int(self._clock() * 1000)
        redis_key = f"{self._key_prefix}:{key}"
        attempt_id = uuid.uuid4().hex
        try:
            wait_ms = int(self._check(keys=[redis_key], args=[self._window_ms, self._limit, now_ms, attempt_id]))
        except ResponseError as exc:
            message = str(exc).lower()
            if not ("unknown command" in message and "eval" in message):
                raise
            wait_ms = self._check_with_pipeline(redis_key, now_ms, attempt_id)
        if wait_ms < 0:
            return True, 0.0
        return False, wait_ms / 1000

    def _check_with_pipeline(self, redis_key: str, now_ms: int, attempt_id: str) -> int:
        """Non-scripted path for servers that disable EVAL."""
        with self._client.pipeline() as pipe:
            pipe.zremrangebyscore(redis_key, "-inf", now_ms - self._window_ms)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.zcard(redis_key)
            _, oldest, count = pipe.execute()
        if count >= self._limit:
            return int(oldest[0][1]) + self._window_ms - now_ms
        with self._client.pipeline() as pipe:
            pipe.zadd(redis_key, {attempt_id: now_ms})
            pipe.pexpire(redis_key, self._window_ms)
            pipe.execute()
        return -1
