"""Tests for the in-memory identity store and its JSON snapshot."""

import json

import pytest

from sigil.storage.errors import ConstraintViolation
from sigil.storage.memory import MemoryStore
from sigil.storage.models import Credential, TwoFactorSecret


def test_email_normalized_and_unique(store):
    user = store.create_user("  Alice@Example.COM ")
    assert user.email == "alice@example.com"
    assert store.get_user_by_email("ALICE@example.com").id == user.id
    with pytest.raises(ConstraintViolation):
        store.create_user("alice@example.com")


def test_returned_records_are_copies(store):
    user = store.create_user("alice@example.com")
    user.role = "admin"
    assert store.get_user(user.id).role == "user"


def test_credential_requires_user(store):
    with pytest.raises(ConstraintViolation):
        store.save_credential(Credential(user_id="ghost", password_hash="x"))


def test_delete_user_cascades(store):
    user = store.create_user("alice@example.com")
    store.save_credential(Credential(user_id=user.id, password_hash="x"))
    store.save_two_factor(TwoFactorSecret(user_id=user.id, secret="JBSWY3DPEHPK3PXP"))
    assert store.delete_user(user.id) is True
    assert store.get_credential(user.id) is None
    assert store.get_two_factor(user.id) is None
    assert store.delete_user(user.id) is False


def test_two_factor_secret_encrypted_at_rest(store):
    user = store.create_user("alice@example.com")
    store.save_two_factor(
        TwoFactorSecret(user_id=user.id, secret="JBSWY3DPEHPK3PXP", backup_codes=["d1"])
    )
    assert store.two_factor[user.id].secret != "JBSWY3DPEHPK3PXP"
    record = store.get_two_factor(user.id)
    assert record.secret == "JBSWY3DPEHPK3PXP"
    assert record.backup_codes == ["d1"]


def test_snapshot_round_trip(tmp_path):
    first = MemoryStore(str(tmp_path), mfa_encryption_key="k1")
    user = first.create_user("alice@example.com", "alice")
    first.save_credential(Credential(user_id=user.id, password_hash="$argon2id$x"))
    first.save_two_factor(
        TwoFactorSecret(user_id=user.id, secret="JBSWY3DPEHPK3PXP", enabled=True)
    )

    snapshot = json.loads((tmp_path / "identity_store.json").read_text())
    assert "JBSWY3DPEHPK3PXP" not in json.dumps(snapshot)

    second = MemoryStore(str(tmp_path), mfa_encryption_key="k1")
    assert second.get_user_by_email("alice@example.com").handle == "alice"
    assert second.get_credential(user.id).password_hash == "$argon2id$x"
    assert second.get_two_factor(user.id).secret == "JBSWY3DPEHPK3PXP"


def test_wrong_key_cannot_decrypt(tmp_path):
    first = MemoryStore(str(tmp_path), mfa_encryption_key="k1")
    user = first.create_user("alice@example.com")
    first.save_two_factor(TwoFactorSecret(user_id=user.id, secret="JBSWY3DPEHPK3PXP"))

    second = MemoryStore(str(tmp_path), mfa_encryption_key="k2")
    with pytest.raises(RuntimeError):
        second.get_two_factor(user.id)
