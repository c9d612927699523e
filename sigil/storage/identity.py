"""Contract for the durable store holding identities and their credentials."""

from __future__ import annotations

from typing import Optional, Protocol

from sigil.storage.models import Credential, TwoFactorSecret, User


class IdentityStore(Protocol):
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_credential(self, credential: Credential) -> None: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def save_two_factor(self, record: TwoFactorSecret) -> None: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorSecret]: ...

    def delete_two_factor(self, user_id: str) -> bool: ...
