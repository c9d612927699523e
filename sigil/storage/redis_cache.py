from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sigil.logging import get_logger
from sigil.storage.errors import StoreTimeout

logger = get_logger(__name__)


class RedisStore:
    """Redis implementation of the ephemeral store contract."""

    # Upper bound on any single command, on top of the socket timeouts
    DEFAULT_OPERATION_TIMEOUT = 5.0

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before wiring dependent services."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (RedisTimeoutError, RedisConnectionError, asyncio.TimeoutError, OSError) as exc:
            logger.error(
                "redis_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreTimeout(operation, exc) from exc

    async def increment(self, key: str) -> int:
        return int(await self._call("increment", self.client.incr(key)))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call(
            "set_with_ttl", self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        )

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        # SET NX EX answers None when the key already exists
        created = await self._call(
            "set_if_absent_with_ttl",
            self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True),
        )
        return bool(created)

    async def set_if_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        replaced = await self._call(
            "set_if_exists",
            self.client.set(key, value, ex=max(1, int(ttl_seconds)), xx=True),
        )
        return bool(replaced)

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def get_and_delete(self, key: str) -> Optional[str]:
        # GETDEL needs Redis 6.2+; older servers answer with an unknown-command error
        try:
            return await self._call("get_and_delete", self.client.getdel(key))
        except ResponseError:
            return await self._call(
                "get_and_delete", self.client.eval(self._GETDEL_SCRIPT, 1, key)
            )

    async def delete(self, key: str) -> int:
        return int(await self._call("delete", self.client.delete(key)))

    async def delete_prefix(self, prefix: str) -> int:
        async def _scan_and_delete() -> int:
            removed = 0
            batch: list[str] = []
            async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self.client.delete(*batch)
                    batch = []
            if batch:
                removed += await self.client.delete(*batch)
            return removed

        return int(await self._call("delete_prefix", _scan_and_delete()))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self._call("ttl", self.client.ttl(key)))
        # -2: missing key, -1: key without expiry
        if remaining < 0:
            return None
        return remaining

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(
            await self._call("expire", self.client.expire(key, max(1, int(ttl_seconds))))
        )

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        pipe.expire(key, max(1, int(ttl_seconds)))
        await self._call("add_member", pipe.execute())

    async def remove_member(self, key: str, member: str) -> None:
        await self._call("remove_member", self.client.srem(key, member))

    async def members(self, key: str) -> set[str]:
        return set(await self._call("members", self.client.smembers(key)))

    async def close(self) -> None:
        await self.client.aclose()
