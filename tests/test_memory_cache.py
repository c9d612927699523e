"""Conditional writes of the in-memory ephemeral store."""


async def test_set_if_absent_creates_with_expiry(cache, clock):
    assert await cache.set_if_absent_with_ttl("revoked:a", "1", 60) is True
    assert await cache.set_if_absent_with_ttl("revoked:a", "2", 600) is False
    assert await cache.get("revoked:a") == "1"
    assert await cache.ttl("revoked:a") == 60

    clock.advance(60)
    assert await cache.set_if_absent_with_ttl("revoked:a", "3", 60) is True


async def test_set_if_exists_never_creates(cache, clock):
    assert await cache.set_if_exists("session:s1", "{}", 60) is False
    assert await cache.exists("session:s1") is False

    await cache.set_with_ttl("session:s1", "old", 60)
    clock.advance(30)
    assert await cache.set_if_exists("session:s1", "new", 60) is True
    assert await cache.get("session:s1") == "new"
    assert await cache.ttl("session:s1") == 60

    await cache.delete("session:s1")
    assert await cache.set_if_exists("session:s1", "newer", 60) is False
    assert await cache.exists("session:s1") is False
