from __future__ import annotations

import hashlib

from sigil.logging import fingerprint, get_logger
from sigil.service.errors import translate_store_errors
from sigil.storage.ephemeral import EphemeralStore
from sigil.storage.models import AttemptResult

logger = get_logger(__name__)


class LoginAttemptLimiter:
    """Fixed-window counter of authentication attempts per identifier.

    The window is armed by the first increment and never extended by later
    ones, so a locked-out client cannot keep itself locked out, nor keep a
    window open by trickling attempts.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        *,
        max_attempts: int = 5,
        window_seconds: int = 900,
    ) -> None:
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @staticmethod
    def _key(identifier: str) -> str:
        # Hash so identifiers cannot inject key delimiters
        digest = hashlib.sha256(identifier.strip().lower().encode()).hexdigest()
        return f"login_attempts:{digest}"

    @translate_store_errors
    async def check_attempt(self, identifier: str) -> AttemptResult:
        key = self._key(identifier)
        attempts = await self.cache.increment(key)
        if attempts == 1:
            await self.cache.expire(key, self.window_seconds)
        elif await self.cache.ttl(key) is None:
            # The arming call after the first increment was lost (crash or
            # timeout); re-arm so the counter can never live forever.
            await self.cache.expire(key, self.window_seconds)
            logger.warning(
                "login_attempts_window_rearmed",
                identifier_hash=fingerprint(identifier.strip().lower()),
            )

        allowed = attempts <= self.max_attempts
        remaining = max(0, self.max_attempts - attempts)
        if not allowed:
            logger.warning(
                "login_attempts_exceeded",
                identifier_hash=fingerprint(identifier.strip().lower()),
                attempts=attempts,
            )
        return AttemptResult(allowed=allowed, remaining_attempts=remaining)

    @translate_store_errors
    async def reset_attempts(self, identifier: str) -> None:
        await self.cache.delete(self._key(identifier))
