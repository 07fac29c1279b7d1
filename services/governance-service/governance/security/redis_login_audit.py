"""Redis-backed failed login audit trail."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError


class RedisLoginAudit:
    """Distributed failed-login record implemented with Redis sorted sets."""

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local counter_key = key .. ':seq'
    local retention = tonumber(ARGV[1])
    local now = tonumber(ARGV[2])

    redis.call('ZREMRANGEBYSCORE', key, 0, now - retention - 1)
    local seq = redis.call('INCR', counter_key)
    redis.call('EXPIRE', counter_key, retention)
    local member = tostring(now) .. ':' .. tostring(seq)
    redis.call('ZADD', key, now, member)
    redis.call('EXPIRE', key, retention)
    return 1
    """

    def __init__(
        self,
        client: Redis,
        *,
        retention_seconds: int = 86400,
        key_prefix: str = "login-failures"
    ) -> None:
        """Initialise the Redis client, retention window, and Lua script cache."""
        self._client = client
        self._retention = retention_seconds
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    def _key(self, account_id: str) -> str:
        return f"{self._key_prefix}:{account_id}"

    def record_failure(self, account_id: str, at_time: int | None = None) -> None:
        """Record a failed login for ``account_id`` at ``at_time`` (defaults to now)."""
        now = int(time.time()) if at_time is None else at_time
        redis_key = self._key(account_id)
        try:
            self._script(keys=[redis_key], args=[self._retention, now])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                self._record_fallback(redis_key, now)
                return
            raise

    def _record_fallback(self, redis_key: str, now: int) -> None:
        """Fallback pure-Python implementation used when Lua is unavailable."""
        self._client.zremrangebyscore(redis_key, 0, now - self._retention - 1)
        seq = self._client.incr(f"{redis_key}:seq")
        self._client.expire(f"{redis_key}:seq", self._retention)
        self._client.zadd(redis_key, {f"{now}:{seq}": now})
        self._client.expire(redis_key, self._retention)

    def count_failures(self, account_id: str, since_time: int) -> int:
        """Return the number of failures recorded at or after ``since_time``."""
        return int(self._client.zcount(self._key(account_id), since_time, "+inf"))

    def clear(self, account_id: str) -> None:
        redis_key = self._key(account_id)
        self._client.delete(redis_key, f"{redis_key}:seq")
