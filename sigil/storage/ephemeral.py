"""Contract for the shared, expiring key-value store.

Every component of the core is built on this protocol only; the Redis and
in-memory implementations are interchangeable. Implementations raise
``StoreTimeout`` when the backend cannot answer, never a "missing" result.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


class EphemeralStore(Protocol):
    async def increment(self, key: str) -> int:
        """Atomically add one to an integer key, creating it at 1."""
        ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Create ``key`` with its expiry in one step; False when it already exists."""
        ...

    async def set_if_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Overwrite ``key`` and its expiry only while it exists; False when missing."""
        ...

    async def get(self, key: str) -> Optional[str]:
        ...

    async def get_and_delete(self, key: str) -> Optional[str]:
        """Atomically read and remove a key; at most one caller sees the value."""
        ...

    async def delete(self, key: str) -> int:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds, or None when the key is missing or never expires."""
        ...

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        """Add to a set and re-arm the set expiry to ``ttl_seconds``."""
        ...

    async def remove_member(self, key: str, member: str) -> None:
        ...

    async def members(self, key: str) -> set[str]:
        ...
