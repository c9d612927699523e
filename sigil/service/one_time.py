from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from typing import Any, Optional

from sigil.logging import get_logger
from sigil.service.errors import translate_store_errors
from sigil.storage.ephemeral import EphemeralStore

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"
OAUTH_STATE = "oauth_state"

PURPOSES = frozenset({PASSWORD_RESET, EMAIL_VERIFICATION, OAUTH_STATE})


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class OneTimeTokenStore:
    """Single-use, expiring secrets for out-of-band flows.

    Only the SHA-256 digest of a token is written to the store, so reading
    the store yields nothing redeemable. Redemption is the store's atomic
    get-and-delete: of any number of concurrent redeemers, one wins.
    """

    def __init__(self, cache: EphemeralStore) -> None:
        self.cache = cache

    @staticmethod
    def _key(purpose: str, token: str) -> str:
        return f"ott:{purpose}:{token_digest(token)}"

    @staticmethod
    def _check_purpose(purpose: str) -> None:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown one-time token purpose: {purpose}")

    @translate_store_errors
    async def issue(self, purpose: str, bound_id: str, ttl_seconds: int) -> str:
        self._check_purpose(purpose)
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        token = secrets.token_urlsafe(32)
        await self.cache.set_with_ttl(self._key(purpose, token), bound_id, ttl_seconds)
        logger.info("one_time_token_issued", purpose=purpose, ttl_seconds=ttl_seconds)
        return token

    @translate_store_errors
    async def redeem(self, purpose: str, token: str) -> Optional[str]:
        self._check_purpose(purpose)
        if not token:
            return None
        bound_id = await self.cache.get_and_delete(self._key(purpose, token))
        if bound_id is None:
            logger.info("one_time_token_rejected", purpose=purpose)
        return bound_id

    async def issue_state(
        self, provider: str, data: dict[str, Any], ttl_seconds: int
    ) -> str:
        """Issue an OAuth ``state`` value carrying the flow's context."""
        payload = json.dumps({"provider": provider, **data}, separators=(",", ":"))
        return await self.issue(OAUTH_STATE, payload, ttl_seconds)

    async def consume_state(self, state: str) -> Optional[dict[str, Any]]:
        raw = await self.redeem(OAUTH_STATE, state)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("oauth_state_corrupt")
            return None
        return data if isinstance(data, dict) else None


class CsrfBinding:
    """Per-session CSRF token, compared on every state-changing request.

    Not single-use: the token lives as long as its session and is replaced
    by ``rotate`` or dropped with the session.
    """

    def __init__(self, cache: EphemeralStore, *, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"csrf:{session_id}"

    @translate_store_errors
    async def issue(self, session_id: str) -> str:
        token = secrets.token_hex(32)
        await self.cache.set_with_ttl(self._key(session_id), token, self.ttl_seconds)
        return token

    async def rotate(self, session_id: str) -> str:
        return await self.issue(session_id)

    @translate_store_errors
    async def verify(self, session_id: str, token: str) -> bool:
        if not session_id or not token or not token.isascii():
            return False
        stored = await self.cache.get(self._key(session_id))
        if stored is None:
            return False
        return hmac.compare_digest(stored.encode(), token.encode())

    @translate_store_errors
    async def extend(self, session_id: str) -> bool:
        return await self.cache.expire(self._key(session_id), self.ttl_seconds)

    @translate_store_errors
    async def discard(self, session_id: str) -> None:
        await self.cache.delete(self._key(session_id))
