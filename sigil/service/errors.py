from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sigil.storage.errors import StoreTimeout


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries a stable ``error_code``, an HTTP-style ``status_code``
    for whatever surface wraps the core, and a ``public_message`` that is safe
    to show to the end user. ``message`` is the internal, loggable reason.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: str = "request could not be completed"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.public_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthError(ServiceError):
    """Authentication failed (401).

    All subclasses share one public message so callers cannot tell which
    check failed.
    """

    status_code = 401
    error_code = "unauthorized"
    public_message = "invalid credentials"


class InvalidCredential(AuthError):
    error_code = "invalid_credential"


class LockedOut(AuthError):
    """Attempt limit exceeded; disclosed so users know to wait."""

    status_code = 423
    error_code = "locked_out"
    public_message = "too many failed attempts, try again later"


class InvalidPassword(ServiceError):
    """Password policy violation, raised before hashing (400)."""

    status_code = 400
    error_code = "invalid_password"
    public_message = "password does not meet policy"

    def __init__(self, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        # The violated rule is the useful part for the user
        self.public_message = self.message


class InvalidRequest(ServiceError):
    """Malformed caller input such as a bad email, handle or redirect (400)."""

    status_code = 400
    error_code = "invalid_request"
    public_message = "request is invalid"

    def __init__(self, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.public_message = self.message


class TokenExpired(AuthError):
    error_code = "token_expired"


class TokenInvalid(AuthError):
    error_code = "token_invalid"


class TokenRevoked(AuthError):
    error_code = "token_revoked"


class SessionNotFound(AuthError):
    error_code = "session_not_found"


class RefreshExpired(AuthError):
    error_code = "refresh_expired"


class RefreshInvalid(AuthError):
    error_code = "refresh_invalid"


class TwoFactorRequired(AuthError):
    error_code = "two_factor_required"


class TwoFactorInvalid(AuthError):
    error_code = "two_factor_invalid"


class OneTimeTokenInvalid(AuthError):
    """Token missing, already redeemed or expired; deliberately not distinguished."""

    error_code = "one_time_token_invalid"
    public_message = "link is invalid or has expired"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""

    status_code = 409
    error_code = "conflict"
    public_message = "account could not be created"


class StoreUnavailable(ServiceError):
    """A backing store failed or timed out; the only retryable error (503)."""

    status_code = 503
    error_code = "store_unavailable"
    public_message = "service temporarily unavailable"
    retryable = True


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def translate_store_errors(func: F) -> F:
    """Map store timeouts raised inside ``func`` to ``StoreUnavailable``."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except StoreTimeout as exc:
            raise StoreUnavailable(
                f"store operation '{exc.operation}' failed",
                detail={"operation": exc.operation},
            ) from exc

    return wrapper  # type: ignore[return-value]


__all__ = [
    "ServiceError",
    "AuthError",
    "InvalidCredential",
    "LockedOut",
    "InvalidPassword",
    "InvalidRequest",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "SessionNotFound",
    "RefreshExpired",
    "RefreshInvalid",
    "TwoFactorRequired",
    "TwoFactorInvalid",
    "OneTimeTokenInvalid",
    "ConflictError",
    "StoreUnavailable",
    "translate_store_errors",
]
