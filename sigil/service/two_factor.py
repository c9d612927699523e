from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
from typing import List, Optional, Sequence
from urllib.parse import quote, urlencode

from sigil.logging import get_logger
from sigil.storage.ephemeral import Clock, system_clock
from sigil.storage.models import TwoFactorProvisioning, User

logger = get_logger(__name__)


def digest_backup_code(code: str) -> str:
    normalized = code.strip().replace("-", "").upper()
    return hashlib.sha256(normalized.encode()).hexdigest()


class TwoFactorAuthenticator:
    """RFC 6238 TOTP codes plus single-use backup codes.

    Backup codes are handed to the user once in clear and persisted only as
    SHA-256 digests; ``consume_backup_code`` returns the reduced digest list
    that the caller must store.
    """

    def __init__(
        self,
        *,
        issuer: str = "Sigil",
        window: int = 2,
        interval: int = 30,
        digits: int = 6,
        backup_code_count: int = 8,
        clock: Clock = system_clock,
    ) -> None:
        self.issuer = issuer
        self.window = window
        self.interval = interval
        self.digits = digits
        self.backup_code_count = backup_code_count
        self._clock = clock

    def provision(self, user: User) -> TwoFactorProvisioning:
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        label = quote(f"{self.issuer}:{user.email}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        backup_codes = [
            secrets.token_hex(4).upper() for _ in range(self.backup_code_count)
        ]
        return TwoFactorProvisioning(
            secret=secret,
            provisioning_uri=f"otpauth://totp/{label}?{params}",
            backup_codes=backup_codes,
        )

    def generate_code(self, secret: str, at: Optional[float] = None) -> str:
        timestamp = self._clock() if at is None else at
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (
            int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF
        ) % (10**self.digits)
        return str(code_int).zfill(self.digits)

    def verify_code(self, code: str, secret: str) -> bool:
        if not code or not secret:
            return False
        candidate = code.strip().replace(" ", "")
        # isdigit() alone admits non-ASCII digits such as Arabic-Indic numerals
        if (
            len(candidate) != self.digits
            or not candidate.isascii()
            or not candidate.isdigit()
        ):
            return False
        now = self._clock()
        matched = False
        # Check every step in the window so timing does not reveal the offset
        for offset in range(-self.window, self.window + 1):
            generated = self.generate_code(secret, now + offset * self.interval)
            if generated and hmac.compare_digest(generated.encode(), candidate.encode()):
                matched = True
        return matched

    def verify_backup_code(self, code: str, backup_codes: Sequence[str]) -> bool:
        if not code or not code.isascii():
            return False
        candidate = digest_backup_code(code)
        matched = False
        for stored in backup_codes:
            if hmac.compare_digest(stored, candidate):
                matched = True
        return matched

    def consume_backup_code(
        self, code: str, backup_codes: Sequence[str]
    ) -> Optional[List[str]]:
        """Return ``backup_codes`` without ``code``, or None when it does not match."""
        if not self.verify_backup_code(code, backup_codes):
            return None
        candidate = digest_backup_code(code)
        remaining = list(backup_codes)
        remaining.remove(candidate)
        return remaining

    @staticmethod
    def hash_backup_codes(codes: Sequence[str]) -> List[str]:
        return [digest_backup_code(code) for code in codes]

