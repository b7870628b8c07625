from __future__ import annotations

import functools
import uuid
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from riskgate.logging import get_logger
from riskgate.storage.common import dumps, loads
from riskgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def _wrap_errors(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Surface transport and protocol failures as StoreUnavailable."""

    @functools.wraps(func)
    async def wrapper(self: "RedisStateStore", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except (RedisError, OSError, ValueError) as exc:
            logger.error(
                "state_store_error",
                operation=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(str(exc), operation=func.__name__) from exc

    return wrapper


class RedisStateStore:
    """StateStore backed by Redis; multi-step updates run as Lua scripts."""

    # Fixed-window counter: TTL only on the first increment
    _INCR_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""

    # Sliding window over a sorted set scored by timestamp
    _EVENT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
redis.call('ZADD', KEYS[1], now, ARGV[3])
redis.call('EXPIRE', KEYS[1], window)
return redis.call('ZCARD', KEYS[1])
"""

    # Ordered index with FIFO eviction beyond the cap
    _PUSH_INDEX_SCRIPT = """
redis.call('RPUSH', KEYS[1], ARGV[1])
local cap = tonumber(ARGV[2])
local evicted = {}
while redis.call('LLEN', KEYS[1]) > cap do
  table.insert(evicted, redis.call('LPOP', KEYS[1]))
end
local ttl = tonumber(ARGV[3])
if ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return evicted
"""

    # Replace a JSON document only if one field still holds the expected value
    _CAS_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local doc = cjson.decode(raw)
local current = doc[ARGV[1]]
if current == nil or current == cjson.null or tostring(current) ~= ARGV[2] then
  return 0
end
local ttl = tonumber(ARGV[4])
if ttl > 0 then
  redis.call('SET', KEYS[1], ARGV[3], 'EX', ttl)
else
  redis.call('SET', KEYS[1], ARGV[3], 'KEEPTTL')
end
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "riskgate:",
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr = self.client.register_script(self._INCR_SCRIPT)
        self._record_event = self.client.register_script(self._EVENT_SCRIPT)
        self._push_index = self.client.register_script(self._PUSH_INDEX_SCRIPT)
        self._cas = self.client.register_script(self._CAS_SCRIPT)

    def _k(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_wrap_errors
    async def get_json(self, key: str) -> Optional[dict]:
        return loads(await self.client.get(self._k(key)))

    @_wrap_errors
    async def set_json(
        self, key: str, value: dict, ttl_seconds: Optional[int] = None
    ) -> None:
        await self.client.set(self._k(key), dumps(value), ex=ttl_seconds or None)

    @_wrap_errors
    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(self._k(key)))

    @_wrap_errors
    async def compare_and_set_json(
        self,
        key: str,
        field: str,
        expected: Any,
        value: dict,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        result = await self._cas(
            keys=[self._k(key)],
            args=[field, str(expected), dumps(value), int(ttl_seconds or 0)],
        )
        return bool(int(result))

    @_wrap_errors
    async def incr(self, key: str, ttl_seconds: int) -> int:
        return int(await self._incr(keys=[self._k(key)], args=[int(ttl_seconds)]))

    @_wrap_errors
    async def get_int(self, key: str) -> int:
        raw = await self.client.get(self._k(key))
        return int(raw) if raw else 0

    @_wrap_errors
    async def record_event(self, key: str, timestamp: float, window_seconds: int) -> int:
        member = f"{timestamp}:{uuid.uuid4().hex}"
        count = await self._record_event(
            keys=[self._k(key)], args=[timestamp, int(window_seconds), member]
        )
        return int(count)

    @_wrap_errors
    async def append_capped(
        self, key: str, value: dict, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        full_key = self._k(key)
        pipe = self.client.pipeline(transaction=True)
        pipe.rpush(full_key, dumps(value))
        pipe.ltrim(full_key, -max_len, -1)
        if ttl_seconds:
            pipe.expire(full_key, ttl_seconds)
        await pipe.execute()

    @_wrap_errors
    async def get_list(self, key: str) -> list[dict]:
        return [loads(raw) for raw in await self.client.lrange(self._k(key), 0, -1)]

    @_wrap_errors
    async def push_index(
        self, key: str, member: str, cap: int, ttl_seconds: Optional[int] = None
    ) -> list[str]:
        evicted = await self._push_index(
            keys=[self._k(key)], args=[member, int(cap), int(ttl_seconds or 0)]
        )
        return list(evicted or [])

    @_wrap_errors
    async def remove_from_index(self, key: str, member: str) -> None:
        await self.client.lrem(self._k(key), 0, member)

    @_wrap_errors
    async def get_index(self, key: str) -> list[str]:
        return list(await self.client.lrange(self._k(key), 0, -1))

    @_wrap_errors
    async def add_member(self, key: str, member: str) -> None:
        await self.client.sadd(self._k(key), member)

    @_wrap_errors
    async def remove_member(self, key: str, member: str) -> bool:
        return bool(await self.client.srem(self._k(key), member))

    @_wrap_errors
    async def members(self, key: str) -> set[str]:
        return set(await self.client.smembers(self._k(key)))

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("state_store_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        """Close the connection pool; call on shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
