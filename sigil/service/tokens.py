from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from typing import Any, Optional

from sigil.config import Settings
from sigil.logging import get_logger
from sigil.service.errors import (
    RefreshExpired,
    RefreshInvalid,
    SessionNotFound,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    translate_store_errors,
)
from sigil.service.sessions import SessionStore
from sigil.storage.ephemeral import Clock, EphemeralStore, system_clock
from sigil.storage.models import Claims, RefreshGrant, TokenPair, User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "sid", "iss", "aud", "iat", "exp", "jti", "typ")


class _Expired(Exception):
    pass


class _Invalid(Exception):
    pass


def revocation_key(token: str) -> str:
    return f"revoked:{hashlib.sha256(token.encode()).hexdigest()}"


class TokenService:
    """Signed access/refresh token pairs bound to a session.

    Tokens are compact HS256 JWTs. Access and refresh tokens are signed with
    different secrets and carry a ``typ`` claim, so neither can stand in for
    the other. Revocation records live only as long as the token would.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        settings: Settings,
        *,
        sessions: Optional[SessionStore] = None,
        clock: Clock = system_clock,
    ) -> None:
        self.cache = cache
        self.sessions = sessions
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds
        self.leeway = settings.clock_skew_leeway_seconds
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._clock = clock

    # encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        signature = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode(self, token: str, token_type: str) -> dict[str, Any]:
        """Verify ``token`` and return its payload.

        Raises ``_Invalid`` for anything wrong with structure, algorithm,
        signature or claims, and ``_Expired`` only for an authentic token
        past its expiry.
        """
        if not isinstance(token, str):
            raise _Invalid("token is not a string")
        if not token.isascii():
            raise _Invalid("token is not ascii")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise _Invalid("malformed token")

        # Pin the algorithm; never trust the header to choose it
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise _Invalid("header not decodable")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise _Invalid("unexpected algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise _Invalid("bad signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise _Invalid("payload not decodable")
        if not isinstance(payload, dict):
            raise _Invalid("payload not an object")
        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise _Invalid("missing claims")
        if payload.get("typ") != token_type:
            raise _Invalid("wrong token type")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise _Invalid("issuer or audience mismatch")
        try:
            exp = float(payload["exp"])
        except (TypeError, ValueError):
            raise _Invalid("exp not numeric")
        if self._clock() >= exp + self.leeway:
            raise _Expired()
        return payload

    def _payload(self, user: User, session_id: str, token_type: str, ttl: int) -> dict:
        issued_at = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "sid": session_id,
            "role": user.role,
            "typ": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + ttl,
        }
        return payload

    # operations
    def issue(self, user: User, session_id: str) -> TokenPair:
        access_token = self._encode(
            self._payload(user, session_id, ACCESS, self.access_ttl), ACCESS
        )
        refresh_token = self._encode(
            self._payload(user, session_id, REFRESH, self.refresh_ttl), REFRESH
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
        )

    @translate_store_errors
    async def verify_access(
        self,
        token: str,
        *,
        check_revoked: bool = False,
        check_session: bool = False,
    ) -> Claims:
        try:
            payload = self._decode(token, ACCESS)
        except _Expired:
            raise TokenExpired("access token expired")
        except _Invalid as exc:
            logger.info("access_token_rejected", reason=str(exc))
            raise TokenInvalid(f"access token invalid: {exc}")

        claims = Claims.from_payload(payload)
        if check_revoked and await self.cache.exists(revocation_key(token)):
            logger.info("access_token_revoked_used", jti=claims.jti)
            raise TokenRevoked("access token revoked")
        if check_session:
            if self.sessions is None:
                raise RuntimeError("session check requested without a session store")
            if await self.sessions.get(claims.sid) is None:
                raise SessionNotFound("session not found")
        return claims

    @translate_store_errors
    async def verify_refresh(self, token: str) -> RefreshGrant:
        try:
            payload = self._decode(token, REFRESH)
        except _Expired:
            raise RefreshExpired("refresh token expired")
        except _Invalid as exc:
            logger.info("refresh_token_rejected", reason=str(exc))
            raise RefreshInvalid(f"refresh token invalid: {exc}")
        if await self.cache.exists(revocation_key(token)):
            logger.warning("refresh_token_replayed", jti=payload.get("jti"))
            raise RefreshInvalid("refresh token revoked")
        return RefreshGrant(
            subject=str(payload["sub"]),
            session_id=str(payload["sid"]),
            expires_at=int(payload["exp"]),
        )

    def _authentic_expiry(self, token: str) -> Optional[float]:
        """Expiry of a token signed by us, whether or not it is still live."""
        for token_type in (ACCESS, REFRESH):
            try:
                payload = self._decode(token, token_type)
            except _Expired:
                return 0.0
            except _Invalid:
                continue
            return float(payload["exp"])
        return None

    @translate_store_errors
    async def revoke(self, token: str) -> bool:
        """Record a revocation for ``token`` until its natural expiry.

        Returns True only for the call that created the record, which makes
        revocation a single-winner claim on the token. Returns False when the
        token was already revoked, or when nothing needed recording because
        the token is forged or expired.
        """
        exp = self._authentic_expiry(token)
        if exp is None:
            logger.info("revoke_ignored_unrecognized_token")
            return False
        remaining = int(exp + self.leeway - self._clock())
        if remaining <= 0:
            return False
        # Created together with its expiry, so a lost call never leaves a
        # record that outlives the token
        return await self.cache.set_if_absent_with_ttl(
            revocation_key(token), "1", remaining + 1
        )

    @translate_store_errors
    async def is_revoked(self, token: str) -> bool:
        return await self.cache.exists(revocation_key(token))
