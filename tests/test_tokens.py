"""Tests for token issuance, verification and revocation."""

import asyncio
import base64
import json

import pytest

from sigil.service.errors import (
    RefreshExpired,
    RefreshInvalid,
    SessionNotFound,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from sigil.service.sessions import SessionStore
from sigil.service.tokens import TokenService, revocation_key
from sigil.storage.errors import StoreTimeout
from sigil.storage.memory_cache import MemoryEphemeralStore
from sigil.storage.models import User


@pytest.fixture
def sessions(cache, clock):
    return SessionStore(cache, timeout_seconds=3600, clock=clock)


@pytest.fixture
def tokens(cache, settings, sessions, clock):
    return TokenService(cache, settings, sessions=sessions, clock=clock)


@pytest.fixture
def member():
    return User(id="user-1", email="alice@example.com", role="admin")


def _segments(token):
    header, payload, signature = token.split(".")
    pad = lambda s: s + "=" * (-len(s) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        signature,
    )


def _forge(token, **changes):
    header, payload, signature = token.split(".")
    claims = _segments(token)[1]
    claims.update(changes)
    body = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{body}.{signature}"


async def test_issue_carries_claims(tokens, member, settings):
    pair = tokens.issue(member, "sess-1")
    assert pair.expires_in == settings.access_token_ttl_seconds
    assert pair.token_type == "Bearer"

    claims = await tokens.verify_access(pair.access_token)
    assert claims.sub == "user-1"
    assert claims.role == "admin"
    assert claims.sid == "sess-1"
    assert claims.iss == settings.jwt_issuer
    assert claims.aud == settings.jwt_audience
    assert claims.exp - claims.iat == settings.access_token_ttl_seconds


async def test_refresh_outlives_access(tokens, member):
    pair = tokens.issue(member, "sess-1")
    access = _segments(pair.access_token)[1]
    refresh = _segments(pair.refresh_token)[1]
    assert refresh["exp"] > access["exp"]
    assert refresh["sid"] == "sess-1"


async def test_pairs_are_unique(tokens, member):
    first = tokens.issue(member, "sess-1")
    second = tokens.issue(member, "sess-1")
    assert first.access_token != second.access_token
    assert first.refresh_token != second.refresh_token


async def test_access_expires(tokens, member, clock, settings):
    pair = tokens.issue(member, "sess-1")
    clock.advance(settings.access_token_ttl_seconds - 1)
    await tokens.verify_access(pair.access_token)

    clock.advance(1)
    with pytest.raises(TokenExpired):
        await tokens.verify_access(pair.access_token)


async def test_tampered_payload_rejected(tokens, member):
    pair = tokens.issue(member, "sess-1")
    with pytest.raises(TokenInvalid):
        await tokens.verify_access(_forge(pair.access_token, role="superuser"))


async def test_none_algorithm_rejected(tokens, member):
    pair = tokens.issue(member, "sess-1")
    _, payload, _ = pair.access_token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    with pytest.raises(TokenInvalid):
        await tokens.verify_access(f"{header}.{payload}.")


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
async def test_malformed_tokens_rejected(tokens, token):
    with pytest.raises(TokenInvalid):
        await tokens.verify_access(token)


async def test_issuer_and_audience_checked_exactly(cache, settings, member, clock):
    other = settings.model_copy(update={"jwt_audience": "someone-else"})
    foreign = TokenService(cache, other, clock=clock).issue(member, "sess-1")
    ours = TokenService(cache, settings, clock=clock)
    with pytest.raises(TokenInvalid):
        await ours.verify_access(foreign.access_token)


async def test_access_and_refresh_not_interchangeable(tokens, member):
    pair = tokens.issue(member, "sess-1")
    with pytest.raises(TokenInvalid):
        await tokens.verify_access(pair.refresh_token)
    with pytest.raises(RefreshInvalid):
        await tokens.verify_refresh(pair.access_token)


async def test_verify_refresh_returns_grant(tokens, member):
    pair = tokens.issue(member, "sess-1")
    grant = await tokens.verify_refresh(pair.refresh_token)
    assert grant.subject == "user-1"
    assert grant.session_id == "sess-1"


async def test_refresh_expires(tokens, member, clock, settings):
    pair = tokens.issue(member, "sess-1")
    clock.advance(settings.refresh_token_ttl_seconds)
    with pytest.raises(RefreshExpired):
        await tokens.verify_refresh(pair.refresh_token)


async def test_revoked_access_rejected_only_when_checked(tokens, member):
    pair = tokens.issue(member, "sess-1")
    assert await tokens.revoke(pair.access_token) is True

    await tokens.verify_access(pair.access_token)
    with pytest.raises(TokenRevoked):
        await tokens.verify_access(pair.access_token, check_revoked=True)


async def test_revoked_refresh_rejected(tokens, member):
    pair = tokens.issue(member, "sess-1")
    await tokens.revoke(pair.refresh_token)
    with pytest.raises(RefreshInvalid):
        await tokens.verify_refresh(pair.refresh_token)


async def test_revoke_is_single_winner(tokens, member):
    pair = tokens.issue(member, "sess-1")
    assert await tokens.revoke(pair.refresh_token) is True
    assert await tokens.revoke(pair.refresh_token) is False
    assert await tokens.is_revoked(pair.refresh_token) is True


async def test_revocation_retained_only_until_expiry(tokens, member, cache, clock, settings):
    pair = tokens.issue(member, "sess-1")
    clock.advance(100)
    await tokens.revoke(pair.access_token)

    key_count = cache.key_count()
    assert key_count == 1
    clock.advance(settings.access_token_ttl_seconds)
    assert cache.key_count() == 0
    with pytest.raises(TokenExpired):
        await tokens.verify_access(pair.access_token, check_revoked=True)


async def test_revoke_skips_expired_and_forged(tokens, member, clock, cache, settings):
    pair = tokens.issue(member, "sess-1")
    assert await tokens.revoke(_forge(pair.access_token, sub="other")) is False
    clock.advance(settings.access_token_ttl_seconds)
    assert await tokens.revoke(pair.access_token) is False
    assert cache.key_count() == 0


async def test_session_check(tokens, member, sessions):
    session_id = await sessions.create(member.id)
    pair = tokens.issue(member, session_id)
    claims = await tokens.verify_access(pair.access_token, check_session=True)
    assert claims.sid == session_id

    await sessions.destroy(session_id)
    with pytest.raises(SessionNotFound):
        await tokens.verify_access(pair.access_token, check_session=True)


async def test_leeway_tolerates_skew(cache, settings, member, clock):
    lenient = settings.model_copy(update={"clock_skew_leeway_seconds": 30})
    tokens = TokenService(cache, lenient, clock=clock)
    pair = tokens.issue(member, "sess-1")
    clock.advance(lenient.access_token_ttl_seconds + 29)
    await tokens.verify_access(pair.access_token)
    clock.advance(1)
    with pytest.raises(TokenExpired):
        await tokens.verify_access(pair.access_token)


async def test_distinct_signing_secrets(cache, settings, member, clock):
    rotated = settings.model_copy(update={"jwt_refresh_secret": "Z" * 40})
    pair = TokenService(cache, settings, clock=clock).issue(member, "sess-1")
    tokens = TokenService(cache, rotated, clock=clock)
    # Access tokens are unaffected by a refresh secret change
    await tokens.verify_access(pair.access_token)
    with pytest.raises(RefreshInvalid):
        await tokens.verify_refresh(pair.refresh_token)


class _ExpireTimesOut(MemoryEphemeralStore):
    async def expire(self, key, ttl_seconds):
        raise StoreTimeout("expire")


async def test_revocation_record_born_with_expiry(settings, member, clock):
    cache = _ExpireTimesOut(clock=clock)
    tokens = TokenService(cache, settings, clock=clock)
    pair = tokens.issue(member, "sess-1")

    assert await tokens.revoke(pair.refresh_token) is True
    key = revocation_key(pair.refresh_token)
    assert await cache.ttl(key) == settings.refresh_token_ttl_seconds + 1
    clock.advance(settings.refresh_token_ttl_seconds + 1)
    assert await cache.exists(key) is False


@pytest.mark.parametrize("signature", ["ñ", "\ud800", "é" * 43])
async def test_non_ascii_signature_rejected(tokens, member, signature):
    pair = tokens.issue(member, "sess-1")
    header, payload, _ = pair.access_token.split(".")
    with pytest.raises(TokenInvalid):
        await tokens.verify_access(f"{header}.{payload}.{signature}")
    header, payload, _ = pair.refresh_token.split(".")
    with pytest.raises(RefreshInvalid):
        await tokens.verify_refresh(f"{header}.{payload}.{signature}")
