from __future__ import annotations

import json
import secrets
from typing import List, Optional

from sigil.logging import get_logger
from sigil.service.errors import translate_store_errors
from sigil.service.identifiers import anonymize_ip
from sigil.service.one_time import CsrfBinding
from sigil.storage.ephemeral import Clock, EphemeralStore, system_clock
from sigil.storage.models import DeviceInfo, Session

logger = get_logger(__name__)


class SessionStore:
    """Server-side sessions in the ephemeral store.

    ``session:{id}`` holds the JSON record with TTL equal to the session
    timeout; ``user_sessions:{user_id}`` is a set indexing a user's session
    ids so that ``destroy_all`` never scans the keyspace. Index entries may
    outlive their session and are pruned when read.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        *,
        timeout_seconds: int = 86400,
        max_sessions_per_user: int = 0,
        csrf: Optional[CsrfBinding] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.cache = cache
        self.timeout_seconds = timeout_seconds
        self.max_sessions_per_user = max_sessions_per_user
        self.csrf = csrf
        self._clock = clock

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"user_sessions:{user_id}"

    async def _write(self, session: Session) -> None:
        await self.cache.set_with_ttl(
            self._key(session.id), session.to_json(), self.timeout_seconds
        )
        await self.cache.add_member(
            self._index_key(session.user_id), session.id, self.timeout_seconds
        )

    async def _read(self, session_id: str) -> Optional[Session]:
        raw = await self.cache.get(self._key(session_id))
        if raw is None:
            return None
        try:
            session = Session.from_json(raw)
        except (json.JSONDecodeError, TypeError, KeyError):
            logger.warning("session_record_corrupt", session_prefix=session_id[:8])
            return None
        # Expired records are inert even if the store has not evicted them yet
        if session.is_expired(self._clock()):
            return None
        return session

    @translate_store_errors
    async def create(self, user_id: str, device: Optional[DeviceInfo] = None) -> str:
        device = device or DeviceInfo()
        now = self._clock()
        session = Session(
            id=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.timeout_seconds,
            ip_addr=anonymize_ip(device.ip_addr),
            user_agent=device.user_agent,
            device_type=device.device_type,
            location=device.location,
        )
        await self._write(session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_prefix=session.id[:8],
            device_type=session.device_type,
        )
        if self.max_sessions_per_user > 0:
            await self._evict_over_limit(user_id)
        return session.id

    async def _evict_over_limit(self, user_id: str) -> None:
        sessions = await self._list(user_id)
        excess = len(sessions) - self.max_sessions_per_user
        if excess <= 0:
            return
        oldest_first = sorted(sessions, key=lambda s: s.created_at)
        for session in oldest_first[:excess]:
            await self._destroy(session.id, session.user_id)
            logger.info(
                "session_evicted",
                user_id=user_id,
                session_prefix=session.id[:8],
                limit=self.max_sessions_per_user,
            )

    @translate_store_errors
    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        return await self._read(session_id)

    @translate_store_errors
    async def touch(self, session_id: str) -> bool:
        session = await self._read(session_id) if session_id else None
        if session is None:
            return False
        now = self._clock()
        session.last_activity_at = now
        session.expires_at = now + self.timeout_seconds
        # Conditional write: a destroy that lands after the read above wins
        refreshed = await self.cache.set_if_exists(
            self._key(session_id), session.to_json(), self.timeout_seconds
        )
        if not refreshed:
            logger.info("session_touch_lost_to_destroy", session_prefix=session_id[:8])
            return False
        await self.cache.add_member(
            self._index_key(session.user_id), session_id, self.timeout_seconds
        )
        if self.csrf is not None:
            await self.csrf.extend(session_id)
        return True

    async def _destroy(self, session_id: str, user_id: Optional[str]) -> None:
        await self.cache.delete(self._key(session_id))
        if user_id:
            await self.cache.remove_member(self._index_key(user_id), session_id)
        if self.csrf is not None:
            await self.csrf.discard(session_id)

    @translate_store_errors
    async def destroy(self, session_id: str) -> None:
        if not session_id:
            return
        raw = await self.cache.get(self._key(session_id))
        user_id = None
        if raw is not None:
            try:
                user_id = Session.from_json(raw).user_id
            except (json.JSONDecodeError, TypeError, KeyError):
                user_id = None
        await self._destroy(session_id, user_id)
        logger.info("session_destroyed", session_prefix=session_id[:8])

    @translate_store_errors
    async def destroy_all(self, user_id: str) -> int:
        session_ids = await self.cache.members(self._index_key(user_id))
        destroyed = 0
        for session_id in session_ids:
            destroyed += await self.cache.delete(self._key(session_id))
            if self.csrf is not None:
                await self.csrf.discard(session_id)
        await self.cache.delete(self._index_key(user_id))
        logger.info("sessions_destroyed_for_user", user_id=user_id, count=destroyed)
        return destroyed

    async def _list(self, user_id: str) -> List[Session]:
        index_key = self._index_key(user_id)
        live: List[Session] = []
        for session_id in await self.cache.members(index_key):
            session = await self._read(session_id)
            if session is None or session.user_id != user_id:
                await self.cache.remove_member(index_key, session_id)
                continue
            live.append(session)
        return live

    @translate_store_errors
    async def list_for_user(self, user_id: str) -> List[Session]:
        sessions = await self._list(user_id)
        return sorted(sessions, key=lambda s: s.created_at)
