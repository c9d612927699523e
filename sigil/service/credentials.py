from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from sigil.config import Settings
from sigil.logging import get_logger
from sigil.service.errors import InvalidPassword

logger = get_logger(__name__)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

PASSWORD_ALGO = "argon2id"


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 128
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_upper=settings.password_require_upper,
            require_lower=settings.password_require_lower,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def violation(self, password: str) -> str | None:
        """Return the first rule ``password`` breaks, or None."""
        if not isinstance(password, str):
            return "Password must be a string"
        if len(password) < self.min_length:
            return f"Password must be at least {self.min_length} characters"
        if len(password) > self.max_length:
            return f"Password must be at most {self.max_length} characters"
        if self.require_upper and not re.search(r"[A-Z]", password):
            return "Password must contain at least one uppercase letter"
        if self.require_lower and not re.search(r"[a-z]", password):
            return "Password must contain at least one lowercase letter"
        if self.require_digit and not re.search(r"\d", password):
            return "Password must contain at least one number"
        if self.require_special and not _SPECIAL_RE.search(password):
            return "Password must contain at least one special character"
        return None

    def validate(self, password: str) -> None:
        problem = self.violation(password)
        if problem:
            raise InvalidPassword(problem)


class CredentialManager:
    """Password policy enforcement plus Argon2id hashing and verification.

    Touches no shared state. Both ``hash`` and ``verify`` are deliberately
    slow; async callers should run them off the event loop.
    """

    def __init__(
        self,
        policy: PasswordPolicy | None = None,
        *,
        hasher: PasswordHasher | None = None,
    ) -> None:
        self.policy = policy or PasswordPolicy()
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Pre-computed hash used to equalize timing for unknown identities
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        # Policy is checked before the primitive ever sees the password
        self.policy.validate(password)
        return self._hasher.hash(password)

    def rehash(self, password: str) -> str:
        """Hash a password that was just verified, without re-checking policy.

        Used to upgrade stored hashes after a successful login, where the
        password may predate the current policy.
        """
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not isinstance(password, str) or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def dummy_verify(self, password: str) -> None:
        """Spend one verification so a missing identity costs as much as a bad password."""
        self.verify(password, self._dummy_hash)

    def generate_password(self, length: int = 16) -> str:
        """Random password guaranteed to satisfy the policy."""
        length = min(max(length, self.policy.min_length, 4), self.policy.max_length)
        required = [
            secrets.choice(string.ascii_uppercase),
            secrets.choice(string.ascii_lowercase),
            secrets.choice(string.digits),
            secrets.choice(SPECIAL_CHARACTERS),
        ]
        alphabet = string.ascii_letters + string.digits + SPECIAL_CHARACTERS
        rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
        chars = required + rest
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)
