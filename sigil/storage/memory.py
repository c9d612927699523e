from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from sigil.logging import get_logger
from sigil.storage.errors import ConstraintViolation
from sigil.storage.models import Credential, TwoFactorSecret, User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryStore:
    """In-memory durable store, optionally snapshotted to a JSON file."""

    def __init__(
        self, state_dir: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.two_factor: Dict[str, TwoFactorSecret] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Optional[Path]:
        if not self.state_dir:
            return None
        return self.state_dir / "identity_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_ENCRYPTION_KEY")
        if not material and self.state_dir:
            key_path = self.state_dir / ".mfa_key"
            try:
                material = key_path.read_text().strip()
            except FileNotFoundError:
                material = secrets.token_urlsafe(64)
                try:
                    key_path.write_text(material)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
        if not material:
            # Process-local key; secrets do not survive a restart
            material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(material))

    # identities
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[dict] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                handle=handle,
                role=role,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            self.users[user.id] = replace(user)
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.two_factor.pop(user_id, None)
            self._persist_state()
            return True

    # credentials
    def save_credential(self, credential: Credential) -> None:
        with self._data_lock:
            if credential.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": credential.user_id}
                )
            self.credentials[credential.user_id] = replace(credential)
            self._persist_state()

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            return replace(credential) if credential else None

    # two-factor
    def _encrypt_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("two-factor secret cannot be decrypted") from exc

    def save_two_factor(self, record: TwoFactorSecret) -> None:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": record.user_id}
                )
            self.two_factor[record.user_id] = TwoFactorSecret(
                user_id=record.user_id,
                secret=self._encrypt_secret(record.secret),
                backup_codes=list(record.backup_codes),
                enabled=record.enabled,
            )
            self._persist_state()

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorSecret]:
        with self._data_lock:
            stored = self.two_factor.get(user_id)
            if not stored:
                return None
            return TwoFactorSecret(
                user_id=stored.user_id,
                secret=self._decrypt_secret(stored.secret),
                backup_codes=list(stored.backup_codes),
                enabled=stored.enabled,
            )

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            existed = self.two_factor.pop(user_id, None) is not None
            if existed:
                self._persist_state()
            return existed

    # snapshot
    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "handle": user.handle,
            "role": user.role,
            "created_at": user.created_at.isoformat(),
            "is_active": user.is_active,
            "email_verified": user.email_verified,
            "meta": user.meta or {},
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            handle=data.get("handle"),
            role=data.get("role", "user"),
            created_at=datetime.fromisoformat(data["created_at"]),
            is_active=data.get("is_active", True),
            email_verified=data.get("email_verified", False),
            meta=data.get("meta") or {},
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": c.user_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                    "updated_at": c.updated_at.isoformat(),
                }
                for c in self.credentials.values()
            ],
            # secrets are already encrypted in memory
            "two_factor": [
                {
                    "user_id": t.user_id,
                    "secret": t.secret,
                    "backup_codes": t.backup_codes,
                    "enabled": t.enabled,
                }
                for t in self.two_factor.values()
            ],
        }
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist identity state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: Credential(
                user_id=c["user_id"],
                password_hash=c["password_hash"],
                password_algo=c.get("password_algo", "argon2id"),
                updated_at=datetime.fromisoformat(c["updated_at"]),
            )
            for c in data.get("credentials", [])
        }
        self.two_factor = {
            t["user_id"]: TwoFactorSecret(
                user_id=t["user_id"],
                secret=t["secret"],
                backup_codes=list(t.get("backup_codes", [])),
                enabled=t.get("enabled", False),
            )
            for t in data.get("two_factor", [])
        }
        self.logger.info("identity_state_loaded", users=len(self.users))
        return True
