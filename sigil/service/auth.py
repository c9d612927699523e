from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from sigil.config import Settings
from sigil.logging import fingerprint, get_logger
from sigil.service.credentials import PASSWORD_ALGO, CredentialManager, PasswordPolicy
from sigil.service.email import EmailService, Notifier
from sigil.service.errors import (
    ConflictError,
    InvalidCredential,
    InvalidRequest,
    LockedOut,
    OneTimeTokenInvalid,
    RefreshInvalid,
    SessionNotFound,
    TwoFactorInvalid,
    TwoFactorRequired,
)
from sigil.service.identifiers import validate_email, validate_handle
from sigil.service.limiter import LoginAttemptLimiter
from sigil.service.one_time import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    CsrfBinding,
    OneTimeTokenStore,
)
from sigil.service.sessions import SessionStore
from sigil.service.tokens import TokenService
from sigil.service.two_factor import TwoFactorAuthenticator
from sigil.storage.errors import ConstraintViolation
from sigil.storage.ephemeral import Clock, EphemeralStore, system_clock
from sigil.storage.identity import IdentityStore
from sigil.storage.models import (
    Claims,
    Credential,
    DeviceInfo,
    TokenPair,
    TwoFactorProvisioning,
    TwoFactorSecret,
    User,
)

logger = get_logger(__name__)


class AuthService:
    """Login, token refresh, logout and the out-of-band account flows.

    Composes the credential manager, attempt limiter, two-factor
    authenticator, session store, token service and one-time token store
    over one durable ``IdentityStore`` and one shared ``EphemeralStore``.
    Holds no state of its own, so any number of instances may serve the same
    stores.
    """

    def __init__(
        self,
        store: IdentityStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        clock: Clock = system_clock,
        credentials: Optional[CredentialManager] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.notifier: Notifier = notifier or EmailService(base_url=settings.app_base_url)
        self.logger = logger
        self.credentials = credentials or CredentialManager(
            PasswordPolicy.from_settings(settings)
        )
        self.limiter = LoginAttemptLimiter(
            cache,
            max_attempts=settings.max_login_attempts,
            window_seconds=settings.lockout_seconds,
        )
        self.two_factor = TwoFactorAuthenticator(
            issuer=settings.totp_issuer,
            window=settings.totp_window,
            backup_code_count=settings.backup_code_count,
            clock=clock,
        )
        self.csrf = CsrfBinding(cache, ttl_seconds=settings.session_timeout_seconds)
        self.sessions = SessionStore(
            cache,
            timeout_seconds=settings.session_timeout_seconds,
            max_sessions_per_user=settings.max_sessions_per_user,
            csrf=self.csrf,
            clock=clock,
        )
        self.tokens = TokenService(cache, settings, sessions=self.sessions, clock=clock)
        self.one_time = OneTimeTokenStore(cache)

    # passwords
    async def _verify_password(self, user: Optional[User], password: str) -> bool:
        credential = self.store.get_credential(user.id) if user else None
        if credential is None:
            # Spend the same hashing cost as a real check
            await asyncio.to_thread(self.credentials.dummy_verify, password)
            return False
        return await asyncio.to_thread(
            self.credentials.verify, password, credential.password_hash
        )

    async def _save_password(self, user_id: str, password: str) -> None:
        password_hash = await asyncio.to_thread(self.credentials.hash, password)
        self.store.save_credential(
            Credential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=PASSWORD_ALGO,
                updated_at=datetime.now(timezone.utc),
            )
        )

    async def _upgrade_hash(self, user: User, password: str) -> None:
        """Re-hash a just-verified password stored under outdated parameters."""
        credential = self.store.get_credential(user.id)
        if credential is None or not self.credentials.needs_rehash(credential.password_hash):
            return
        password_hash = await asyncio.to_thread(self.credentials.rehash, password)
        credential.password_hash = password_hash
        credential.password_algo = PASSWORD_ALGO
        credential.updated_at = datetime.now(timezone.utc)
        self.store.save_credential(credential)
        self.logger.info("password_rehashed", user_id=user.id)

    async def register(
        self, email: str, password: str, handle: Optional[str] = None
    ) -> User:
        email = validate_email(email)
        handle = validate_handle(handle)
        # Hash before creating the identity so a policy failure leaves nothing behind
        password_hash = await asyncio.to_thread(self.credentials.hash, password)
        try:
            user = self.store.create_user(email, handle)
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", email_hash=fingerprint(email))
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.store.save_credential(
            Credential(user_id=user.id, password_hash=password_hash)
        )
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if not await self._verify_password(user, current_password):
            raise InvalidCredential("current password mismatch")
        await self._save_password(user_id, new_password)
        destroyed = await self.sessions.destroy_all(user_id)
        self.logger.info("password_changed", user_id=user_id, sessions_destroyed=destroyed)

    # login
    async def _check_two_factor(self, user: User, code: Optional[str]) -> None:
        record = self.store.get_two_factor(user.id)
        if record is None or not record.enabled:
            return
        if not code:
            raise TwoFactorRequired("two-factor code required")
        if self.two_factor.verify_code(code, record.secret):
            return
        remaining = self.two_factor.consume_backup_code(code, record.backup_codes)
        if remaining is None:
            self.logger.info("two_factor_failed", user_id=user.id)
            raise TwoFactorInvalid("two-factor code rejected")
        # Persist before returning so the code cannot be replayed
        record.backup_codes = remaining
        self.store.save_two_factor(record)
        self.logger.info(
            "backup_code_consumed", user_id=user.id, backup_codes_left=len(remaining)
        )

    async def login(
        self,
        identifier: str,
        password: str,
        two_factor_code: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> TokenPair:
        identifier_hash = fingerprint(identifier.strip().lower())
        attempt = await self.limiter.check_attempt(identifier)
        if not attempt.allowed:
            self.logger.warning("login_locked_out", identifier_hash=identifier_hash)
            raise LockedOut()

        user = self.store.get_user_by_email(identifier)
        if user is not None and not user.is_active:
            user = None
        if not await self._verify_password(user, password):
            self.logger.info(
                "login_failed",
                identifier_hash=identifier_hash,
                remaining_attempts=attempt.remaining_attempts,
            )
            raise InvalidCredential("identifier or password mismatch")

        await self._check_two_factor(user, two_factor_code)
        await self.limiter.reset_attempts(identifier)
        await self._upgrade_hash(user, password)

        session_id = await self.sessions.create(user.id, device)
        pair = self.tokens.issue(user, session_id)
        self.logger.info("login_succeeded", user_id=user.id, session_prefix=session_id[:8])
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        grant = await self.tokens.verify_refresh(refresh_token)
        session = await self.sessions.get(grant.session_id)
        if session is None or session.user_id != grant.subject:
            raise SessionNotFound("refresh token session is gone")
        user = self.store.get_user(grant.subject)
        if user is None or not user.is_active:
            raise RefreshInvalid("refresh token subject is gone")
        # Only one refresh may consume a given token
        if not await self.tokens.revoke(refresh_token):
            self.logger.warning("refresh_token_replayed", user_id=user.id)
            raise RefreshInvalid("refresh token already used")
        if not await self.sessions.touch(session.id):
            raise SessionNotFound("refresh token session ended during refresh")
        self.logger.info("refresh_token_revoked", user_id=user.id, session_prefix=session.id[:8])
        return self.tokens.issue(user, session.id)

    async def authenticate(self, access_token: str) -> Claims:
        claims = await self.tokens.verify_access(
            access_token, check_revoked=True, check_session=True
        )
        # A logout racing this call may have ended the session after the check
        if not await self.sessions.touch(claims.sid):
            raise SessionNotFound("session ended")
        return claims

    # logout
    async def terminate_session(
        self, session_id: str, access_token: Optional[str] = None
    ) -> None:
        """Revoke ``access_token`` and destroy the session, both before returning."""
        if access_token:
            await self.tokens.revoke(access_token)
        await self.sessions.destroy(session_id)
        self.logger.info("session_terminated", session_prefix=session_id[:8])

    async def logout(self, session_id: str, access_token: Optional[str] = None) -> None:
        await self.terminate_session(session_id, access_token)

    async def logout_everywhere(self, user_id: str) -> int:
        destroyed = await self.sessions.destroy_all(user_id)
        self.logger.info("logout_everywhere", user_id=user_id, sessions_destroyed=destroyed)
        return destroyed

    # out-of-band flows
    async def _deliver(self, destination: str, purpose: str, token: str) -> bool:
        delivered = await asyncio.to_thread(
            self.notifier.send_token, destination, purpose, token
        )
        if not delivered:
            self.logger.error("one_time_token_delivery_failed", purpose=purpose)
        return delivered

    async def request_password_reset(self, identifier: str) -> None:
        """Mail a reset link; unknown identifiers are accepted silently."""
        user = self.store.get_user_by_email(identifier)
        if user is None or not user.is_active:
            self.logger.info(
                "password_reset_unknown_identifier",
                identifier_hash=fingerprint(identifier.strip().lower()),
            )
            return
        token = await self.one_time.issue(
            PASSWORD_RESET, user.id, self.settings.password_reset_ttl_seconds
        )
        await self._deliver(user.email, PASSWORD_RESET, token)
        self.logger.info("password_reset_requested", user_id=user.id)

    async def confirm_password_reset(self, token: str, new_password: str) -> None:
        # Reject a weak password before the token is spent
        self.credentials.policy.validate(new_password)
        user_id = await self.one_time.redeem(PASSWORD_RESET, token)
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise OneTimeTokenInvalid("password reset token rejected")
        await self._save_password(user.id, new_password)
        destroyed = await self.sessions.destroy_all(user.id)
        await self.limiter.reset_attempts(user.email)
        self.logger.info(
            "password_reset_completed", user_id=user.id, sessions_destroyed=destroyed
        )

    async def request_email_verification(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            return
        if user.email_verified:
            self.logger.info("email_already_verified", user_id=user_id)
            return
        token = await self.one_time.issue(
            EMAIL_VERIFICATION, user.id, self.settings.email_verification_ttl_seconds
        )
        await self._deliver(user.email, EMAIL_VERIFICATION, token)
        self.logger.info("email_verification_requested", user_id=user.id)

    async def confirm_email_verification(self, token: str) -> User:
        user_id = await self.one_time.redeem(EMAIL_VERIFICATION, token)
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise OneTimeTokenInvalid("email verification token rejected")
        user.email_verified = True
        user = self.store.update_user(user)
        self.logger.info("email_verified", user_id=user.id)
        return user

    # two-factor enrolment
    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredential("unknown user")
        return user

    async def setup_two_factor(self, user_id: str) -> TwoFactorProvisioning:
        """Provision a pending secret; it takes effect once confirmed by ``enable_two_factor``."""
        user = self._require_user(user_id)
        existing = self.store.get_two_factor(user.id)
        if existing is not None and existing.enabled:
            raise ConflictError("two-factor already enabled")
        provisioning = self.two_factor.provision(user)
        self.store.save_two_factor(
            TwoFactorSecret(
                user_id=user.id,
                secret=provisioning.secret,
                backup_codes=self.two_factor.hash_backup_codes(provisioning.backup_codes),
                enabled=False,
            )
        )
        self.logger.info("two_factor_provisioned", user_id=user.id)
        return provisioning

    async def enable_two_factor(self, user_id: str, code: str) -> None:
        record = self.store.get_two_factor(user_id)
        if record is None or not self.two_factor.verify_code(code, record.secret):
            raise TwoFactorInvalid("two-factor confirmation rejected")
        record.enabled = True
        self.store.save_two_factor(record)
        self.logger.info("two_factor_enabled", user_id=user_id)

    async def disable_two_factor(self, user_id: str, code: str) -> None:
        record = self.store.get_two_factor(user_id)
        if record is None or not record.enabled:
            raise TwoFactorInvalid("two-factor not enabled")
        accepted = self.two_factor.verify_code(
            code, record.secret
        ) or self.two_factor.verify_backup_code(code, record.backup_codes)
        if not accepted:
            raise TwoFactorInvalid("two-factor code rejected")
        self.store.delete_two_factor(user_id)
        self.logger.info("two_factor_disabled", user_id=user_id)

    # federated login state
    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        try:
            parsed = urlparse(redirect_uri)
        except (TypeError, ValueError, AttributeError) as exc:
            raise InvalidRequest("redirect URI is not a valid URL") from exc
        if parsed.scheme not in {"https", "http"}:
            raise InvalidRequest("redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise InvalidRequest("insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise InvalidRequest("redirect URI must include host")
        return redirect_uri

    async def start_oauth(self, provider: str, redirect_to: str) -> str:
        """Return an opaque ``state`` value for an authorization request."""
        if not provider:
            raise InvalidRequest("provider is required")
        redirect_to = self._validate_redirect_uri(redirect_to)
        state = await self.one_time.issue_state(
            provider, {"redirect_to": redirect_to}, self.settings.oauth_state_ttl_seconds
        )
        self.logger.info("oauth_started", provider=provider)
        return state

    async def complete_oauth_state(self, state: str) -> dict[str, Any]:
        data = await self.one_time.consume_state(state)
        if data is None:
            raise OneTimeTokenInvalid("oauth state rejected")
        return data

    # CSRF
    async def issue_csrf(self, session_id: str) -> str:
        if await self.sessions.get(session_id) is None:
            raise SessionNotFound("csrf requested for unknown session")
        return await self.csrf.issue(session_id)

    async def verify_csrf(self, session_id: str, token: str) -> bool:
        return await self.csrf.verify(session_id, token)
