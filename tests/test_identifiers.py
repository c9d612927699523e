"""Tests for email, handle and device-address validation."""

import pytest

from sigil.service.errors import InvalidRequest
from sigil.service.identifiers import (
    anonymize_ip,
    is_valid_ip,
    validate_email,
    validate_handle,
)


def test_email_trimmed_and_lowercased():
    assert validate_email("  Alice@Example.COM ") == "alice@example.com"


@pytest.mark.parametrize(
    "email",
    ["", "alice", "alice@", "@example.com", "alice@example", "al ice@example.com", 42],
)
def test_bad_email_rejected(email):
    with pytest.raises(InvalidRequest) as exc_info:
        validate_email(email)
    assert exc_info.value.status_code == 400
    assert exc_info.value.error_code == "invalid_request"


def test_handle_rules():
    assert validate_handle(None) is None
    assert validate_handle(" al_ice-1 ") == "al_ice-1"
    for bad in ("ab", "a" * 31, "al ice", "alice!"):
        with pytest.raises(InvalidRequest):
            validate_handle(bad)


def test_handle_failure_names_the_rule():
    with pytest.raises(InvalidRequest) as exc_info:
        validate_handle("ab")
    assert exc_info.value.public_message == "handle must be at least 3 characters"


@pytest.mark.parametrize(
    "value, valid",
    [
        ("192.0.2.1", True),
        ("::1", True),
        ("2001:db8::1", True),
        ("256.1.1.1", False),
        ("1.2.3", False),
        ("localhost", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_ip(value, valid):
    assert is_valid_ip(value) is valid


def test_anonymize_ip():
    assert anonymize_ip("198.51.100.200") == "198.51.100.0"
    assert anonymize_ip("2001:db8:1:2:3:4:5:6") == "2001:db8:1:2::"
    assert anonymize_ip("::1") == "::"
    assert anonymize_ip("garbage") is None
    assert anonymize_ip(None) is None
