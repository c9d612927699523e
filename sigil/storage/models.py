from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    email_verified: bool = False
    meta: Dict | None = None


@dataclass
class Credential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class TwoFactorSecret:
    """Shared TOTP secret plus the SHA-256 digests of unused backup codes."""

    user_id: str
    secret: str
    backup_codes: List[str] = field(default_factory=list)
    enabled: bool = False


@dataclass
class TwoFactorProvisioning:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


@dataclass
class DeviceInfo:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "web"
    location: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: float
    last_activity_at: float
    expires_at: float
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "web"
    location: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(**data)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass
class Claims:
    sub: str
    role: str
    sid: str
    iss: str
    aud: str
    iat: int
    exp: int
    jti: str

    @classmethod
    def from_payload(cls, payload: dict) -> "Claims":
        return cls(
            sub=str(payload["sub"]),
            role=str(payload.get("role", "user")),
            sid=str(payload["sid"]),
            iss=str(payload["iss"]),
            aud=str(payload["aud"]),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=str(payload["jti"]),
        )


@dataclass
class RefreshGrant:
    subject: str
    session_id: str
    expires_at: int


@dataclass
class AttemptResult:
    allowed: bool
    remaining_attempts: int
