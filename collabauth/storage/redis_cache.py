from __future__ import annotations

import hashlib
import time
from typing import List, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

BucketResult = Union[bool, Tuple[bool, int, int]]

# KEYS[1]: bucket hash. ARGV: now_ms, capacity, window_ms, cost.
# Returns {allowed, whole tokens left, seconds until enough tokens}.
TOKEN_BUCKET_LUA = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local rate = capacity / window

local state = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local last = tonumber(state[2]) or now
tokens = math.min(capacity, tokens + math.max(0, now - last) * rate)

local allowed = 0
local wait_ms = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait_ms = math.ceil((cost - tokens) / rate)
end

redis.call('HSET', KEYS[1], 'tokens', tostring(tokens), 'ts', now)
redis.call('PEXPIRE', KEYS[1], window)
return {allowed, math.floor(tokens), math.ceil(wait_ms / 1000)}
"""


def rate_key(subject: str) -> str:
    """Redis key for a rate-limit subject such as ``login:<ip>``.

    The subject is hashed so client-controlled text never shapes the key.
    """
    return "collabauth:rate:" + hashlib.sha256(subject.encode()).hexdigest()


def bucket_args(limit: int, window_seconds: int, cost: int) -> List[int]:
    return [int(time.time() * 1000), limit, window_seconds * 1000, max(1, cost)]


def bucket_result(raw, return_remaining: bool) -> BucketResult:
    allowed, remaining, reset_seconds = raw
    allowed = bool(int(allowed))
    if not return_remaining:
        return allowed
    return (allowed, max(0, int(remaining)), int(reset_seconds or 0))


class RedisCache:
    """Async Redis client used for login rate limits shared across workers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        """Ping Redis once at start-up; raises if it is unreachable."""
        # short-lived sync client so the async one is not bound to a startup loop
        pinger = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            pinger.ping()
        finally:
            pinger.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> BucketResult:
        """Take ``cost`` tokens from a bucket holding ``limit`` per ``window_seconds``."""
        raw = await self._token_bucket(
            keys=[rate_key(key)], args=bucket_args(limit, window_seconds, cost)
        )
        return bucket_result(raw, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking twin of RedisCache for TEST_MODE.

    Keeps the awaitable surface but never binds connections to the per-test
    event loops.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> BucketResult:
        raw = self._token_bucket(
            keys=[rate_key(key)], args=bucket_args(limit, window_seconds, cost)
        )
        return bucket_result(raw, return_remaining)

    def close_sync(self) -> None:
        self.client.close()

    async def close(self) -> None:
        self.close_sync()


def build_redis_cache(
    redis_url: Optional[str], *, test_mode: bool = False
) -> Union[RedisCache, SyncRedisCache, None]:
    if not redis_url:
        return None
    if test_mode:
        return SyncRedisCache(redis_url)
    return RedisCache(redis_url)
