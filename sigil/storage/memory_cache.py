from __future__ import annotations

import math
import threading
from typing import Any, Dict, Optional, Tuple

from sigil.logging import get_logger
from sigil.storage.ephemeral import Clock, system_clock


class MemoryEphemeralStore:
    """In-process stand-in for Redis used by tests and single-process dev runs.

    Expiry is evaluated lazily against the injected clock, so tests can move
    time forward without sleeping.
    """

    def __init__(self, *, clock: Clock = system_clock) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._state_lock = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def _deadline(self, ttl_seconds: int) -> float:
        return self._clock() + max(1, int(ttl_seconds))

    async def increment(self, key: str) -> int:
        with self._state_lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = (1, None)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._data[key] = (count, expires_at)
            return count

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._state_lock:
            self._data[key] = (value, self._deadline(ttl_seconds))

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._state_lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl_seconds))
            return True

    async def set_if_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._state_lock:
            if self._live(key) is None:
                return False
            self._data[key] = (value, self._deadline(ttl_seconds))
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._state_lock:
            entry = self._live(key)
            if entry is None or isinstance(entry[0], set):
                return None
            return str(entry[0])

    async def get_and_delete(self, key: str) -> Optional[str]:
        with self._state_lock:
            entry = self._live(key)
            if entry is None:
                return None
            self._data.pop(key, None)
            return str(entry[0])

    async def delete(self, key: str) -> int:
        with self._state_lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return int(existed)

    async def delete_prefix(self, prefix: str) -> int:
        with self._state_lock:
            doomed = [key for key in self._data if key.startswith(prefix)]
            removed = 0
            for key in doomed:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
            return removed

    async def ttl(self, key: str) -> Optional[int]:
        with self._state_lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, math.ceil(entry[1] - self._clock()))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._state_lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._deadline(ttl_seconds))
            return True

    async def exists(self, key: str) -> bool:
        with self._state_lock:
            return self._live(key) is not None

    async def add_member(self, key: str, member: str, ttl_seconds: int) -> None:
        with self._state_lock:
            entry = self._live(key)
            members = set(entry[0]) if entry and isinstance(entry[0], set) else set()
            members.add(member)
            self._data[key] = (members, self._deadline(ttl_seconds))

    async def remove_member(self, key: str, member: str) -> None:
        with self._state_lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry[0], set):
                return
            members = set(entry[0])
            members.discard(member)
            if members:
                self._data[key] = (members, entry[1])
            else:
                self._data.pop(key, None)

    async def members(self, key: str) -> set[str]:
        with self._state_lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry[0], set):
                return set()
            return set(entry[0])

    def key_count(self) -> int:
        """Number of live keys; lets tests assert storage stays bounded."""
        with self._state_lock:
            return sum(1 for key in list(self._data) if self._live(key) is not None)
