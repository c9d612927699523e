"""Tests for TOTP codes and backup codes."""

import base64
from urllib.parse import parse_qs, urlparse

import pytest

from sigil.service.two_factor import TwoFactorAuthenticator, digest_backup_code
from sigil.storage.models import User

# RFC 6238 appendix B seed for HMAC-SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


@pytest.fixture
def authenticator(clock):
    return TwoFactorAuthenticator(issuer="Sigil", window=2, clock=clock)


@pytest.mark.parametrize(
    "timestamp, expected",
    [
        (59, "94287082"),
        (1111111109, "07081804"),
        (1234567890, "89005924"),
        (2000000000, "69279037"),
    ],
)
def test_rfc6238_vectors(timestamp, expected):
    authenticator = TwoFactorAuthenticator(digits=8)
    assert authenticator.generate_code(RFC_SECRET, at=timestamp) == expected


def test_provision_returns_uri_and_codes(authenticator):
    user = User(id="u1", email="alice@example.com")
    provisioning = authenticator.provision(user)

    uri = urlparse(provisioning.provisioning_uri)
    assert uri.scheme == "otpauth"
    assert uri.netloc == "totp"
    params = parse_qs(uri.query)
    assert params["secret"] == [provisioning.secret]
    assert params["issuer"] == ["Sigil"]
    assert len(provisioning.backup_codes) == 8
    assert len(set(provisioning.backup_codes)) == 8


def test_current_code_verifies(authenticator):
    secret = authenticator.provision(User(id="u1", email="a@example.com")).secret
    assert authenticator.verify_code(authenticator.generate_code(secret), secret) is True


def test_code_accepted_within_window(authenticator, clock):
    secret = authenticator.provision(User(id="u1", email="a@example.com")).secret
    code = authenticator.generate_code(secret)
    clock.advance(60)
    assert authenticator.verify_code(code, secret) is True


def test_code_rejected_outside_window(authenticator, clock):
    secret = authenticator.provision(User(id="u1", email="a@example.com")).secret
    code = authenticator.generate_code(secret)
    clock.advance(30 * 4)
    assert authenticator.verify_code(code, secret) is False


@pytest.mark.parametrize(
    "code", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦", "１２３４５６", "12345\u00e9"]
)
def test_malformed_codes_rejected(authenticator, code):
    secret = authenticator.provision(User(id="u1", email="a@example.com")).secret
    assert authenticator.verify_code(code, secret) is False


def test_invalid_secret_never_verifies(authenticator):
    assert authenticator.verify_code("123456", "not base32 !!") is False


def test_backup_code_consumed_once(authenticator):
    codes = ["ABCD1234", "EFGH5678"]
    digests = authenticator.hash_backup_codes(codes)

    remaining = authenticator.consume_backup_code("abcd-1234", digests)
    assert remaining == [digest_backup_code("EFGH5678")]
    assert authenticator.consume_backup_code("ABCD1234", remaining) is None


def test_backup_codes_exhaust(authenticator):
    codes = ["AAAA0001", "AAAA0002"]
    digests = authenticator.hash_backup_codes(codes)
    for code in codes:
        digests = authenticator.consume_backup_code(code, digests)
        assert digests is not None
    assert digests == []
    assert authenticator.verify_backup_code("AAAA0001", digests) is False


def test_backup_codes_stored_as_digests(authenticator):
    digests = authenticator.hash_backup_codes(["ABCD1234"])
    assert digests[0] != "ABCD1234"
    assert len(digests[0]) == 64


def test_non_ascii_backup_code_rejected(authenticator):
    digests = authenticator.hash_backup_codes(["ABCD1234"])
    assert authenticator.verify_backup_code("ÁBCD1234", digests) is False
    assert authenticator.consume_backup_code("\ud800", digests) is None
