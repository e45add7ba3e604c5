import pytest

from contextfeed.presence import LAST_SEEN_KEY, PresenceTracker

from conftest import NOW, fixed_clock


@pytest.fixture
def presence(cache):
    return PresenceTracker(cache, clock=fixed_clock)


async def test_connect_and_disconnect(presence):
    await presence.connect("u1")
    await presence.connect("u2")

    assert presence.is_online("u1")
    assert presence.online_users() == ["u1", "u2"]

    await presence.disconnect("u1")

    assert not presence.is_online("u1")
    assert presence.online_users() == ["u2"]


async def test_last_seen_is_cached_for_a_day(presence, redis):
    await presence.connect("u1")

    assert await presence.last_seen("u1") == NOW
    assert redis.ttls[LAST_SEEN_KEY.format(user_id="u1")] == 86400


async def test_unknown_user(presence):
    assert not presence.is_online("ghost")
    assert await presence.last_seen("ghost") is None


async def test_malformed_last_seen(presence, cache):
    await cache.set(LAST_SEEN_KEY.format(user_id="u1"), "garbage")

    assert await presence.last_seen("u1") is None
