from __future__ import annotations

import hashlib
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for login failures, rate limits and OAuth states.

    Each identifier owns a sorted set of failure timestamps (epoch seconds).
    Windowed counts read the set directly, so the lockout semantics match the
    store-backed log while every update stays a single atomic script call.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Append one failure, trim entries past retention, refresh key expiry
    _RECORD_FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local member = ARGV[2]
local retention = tonumber(ARGV[3])

redis.call('ZADD', key, now, member)
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - retention)
redis.call('EXPIRE', key, math.max(math.ceil(retention), 1))
return redis.call('ZCARD', key)
"""

    # Failures strictly after ARGV[1] plus the newest failure score
    _FAILURE_WINDOW_SCRIPT = """
local key = KEYS[1]
local since = ARGV[1]

local count = redis.call('ZCOUNT', key, '(' .. since, '+inf')
if count == 0 then
  return {0, ''}
end
local latest = redis.call('ZREVRANGE', key, 0, 0, 'WITHSCORES')
return {count, latest[2]}
"""

    # Atomic refill and consume; returns {allowed, tokens, reset_after}
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)
if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)
        self._failure_window = self.client.register_script(self._FAILURE_WINDOW_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _failure_key(identifier: str) -> str:
        """Hash the identifier so arbitrary emails never collide with key delimiters."""

        digest = hashlib.sha256(identifier.encode()).hexdigest()
        return f"auth:login_failures:{digest}"

    async def record_login_failure(
        self, identifier: str, at: datetime, retention_seconds: int
    ) -> int:
        return int(
            await self._record_failure(
                keys=[self._failure_key(identifier)],
                args=[at.timestamp(), str(uuid.uuid4()), retention_seconds],
            )
        )

    async def login_failure_window(
        self, identifier: str, since: datetime
    ) -> Tuple[int, Optional[datetime]]:
        count, latest = await self._failure_window(
            keys=[self._failure_key(identifier)],
            args=[since.timestamp()],
        )
        if not int(count) or not latest:
            return 0, None
        return int(count), datetime.fromtimestamp(float(latest), tz=timezone.utc)

    async def clear_login_failures(self, identifier: str) -> None:
        await self.client.delete(self._failure_key(identifier))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Token bucket holding ``limit`` requests that refills over ``window_seconds``."""
        safe_key = f"rate:{hashlib.sha256(key.encode()).hexdigest()}"
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), float(limit) / float(window_seconds), limit],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def set_oauth_state(self, state_hash: str, provider: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:oauth:{state_hash}", provider, ex=max(ttl_seconds, 1))

    async def pop_oauth_state(self, state_hash: str) -> Optional[str]:
        """Atomically read and delete; a second caller gets None."""
        return await self.client.getdel(f"auth:oauth:{state_hash}")
