"""Validation of account identifiers and device addresses."""

from __future__ import annotations

import ipaddress
import re
import unicodedata
from typing import Optional

from sigil.service.errors import InvalidRequest

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 30


def validate_email(value: str) -> str:
    """Return ``value`` trimmed and lowercased, or raise ``InvalidRequest``."""
    if not isinstance(value, str):
        raise InvalidRequest("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise InvalidRequest("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise InvalidRequest("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise InvalidRequest("invalid email address")
    labels = domain.split(".")
    if len(labels) < 2:
        raise InvalidRequest("invalid email address")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise InvalidRequest("invalid email address")
    return normalized


def validate_handle(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest("handle must be a string")
    handle = value.strip()
    if len(handle) < HANDLE_MIN_LENGTH:
        raise InvalidRequest(f"handle must be at least {HANDLE_MIN_LENGTH} characters")
    if len(handle) > HANDLE_MAX_LENGTH:
        raise InvalidRequest(f"handle must be at most {HANDLE_MAX_LENGTH} characters")
    if not _HANDLE_PATTERN.match(handle):
        raise InvalidRequest(
            "handle can only contain letters, numbers, underscores, and hyphens"
        )
    return handle


def is_valid_ip(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return True


def anonymize_ip(value: Optional[str]) -> Optional[str]:
    """Truncate an address to its network: /24 for IPv4, /64 for IPv6.

    Anything that does not parse as an address is dropped rather than stored.
    """
    if not is_valid_ip(value):
        return None
    address = ipaddress.ip_address(value.strip())
    if address.version == 4:
        network = ipaddress.IPv4Network((int(address), 24), strict=False)
    else:
        network = ipaddress.IPv6Network((int(address), 64), strict=False)
    return str(network.network_address)
