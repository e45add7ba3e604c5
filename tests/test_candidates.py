import pytest

from contextfeed.models import Follow, User
from contextfeed.ranking.candidates import FOLLOWING_KEY, CandidateRetriever

from conftest import fixed_clock, make_post


@pytest.fixture
def retriever(posts_repo, follows_repo, cache):
    return CandidateRetriever(posts_repo, follows_repo, cache, clock=fixed_clock)


async def test_pool_is_followed_authors_plus_recent_posts(retriever, seed):
    await seed(
        User(user_id="u1", username="reader"),
        User(user_id="friend", username="friend"),
        User(user_id="stranger", username="stranger"),
        Follow(follower_id="u1", followee_id="friend"),
        make_post("old-friend", user_id="friend", hours_ago=72),
        make_post("old-stranger", user_id="stranger", hours_ago=72),
        make_post("new-stranger", user_id="stranger", hours_ago=2),
        make_post("hidden-friend", user_id="friend", hours_ago=1, status="hidden"),
    )

    candidates = await retriever.get_candidates("u1")

    assert [c.content_id for c in candidates] == ["new-stranger", "old-friend"]
    assert candidates[0].author_username == "stranger"


async def test_pool_without_follows_is_recent_only(retriever, seed):
    await seed(
        make_post("recent", hours_ago=5),
        make_post("stale", hours_ago=7),
    )

    candidates = await retriever.get_candidates("nobody")

    assert [c.content_id for c in candidates] == ["recent"]


async def test_pool_is_capped(posts_repo, follows_repo, cache, seed):
    await seed(*[make_post(f"p{i:02d}", hours_ago=i * 0.1) for i in range(12)])
    retriever = CandidateRetriever(
        posts_repo, follows_repo, cache, pool_limit=5, clock=fixed_clock
    )

    candidates = await retriever.get_candidates("u1")

    assert [c.content_id for c in candidates] == ["p00", "p01", "p02", "p03", "p04"]


async def test_followed_ids_are_cached(retriever, seed, cache, redis):
    await seed(
        Follow(follower_id="u1", followee_id="a"),
        Follow(follower_id="u1", followee_id="b"),
    )

    assert await retriever.get_followed_ids("u1") == ["a", "b"]
    assert await cache.get(FOLLOWING_KEY.format(user_id="u1")) == ["a", "b"]
    assert redis.ttls[FOLLOWING_KEY.format(user_id="u1")] == 3600


async def test_cached_followed_ids_win_over_database(retriever, seed, cache):
    await cache.set(FOLLOWING_KEY.format(user_id="u1"), ["cached"])
    await seed(Follow(follower_id="u1", followee_id="fresh"))

    assert await retriever.get_followed_ids("u1") == ["cached"]
    assert await retriever.refresh_followed_ids("u1") == ["fresh"]
    assert await retriever.get_followed_ids("u1") == ["fresh"]


async def test_geo_location_is_carried(retriever, seed):
    await seed(make_post("geo", hours_ago=1, latitude=41.0, longitude=29.0, media_key="k"))

    (candidate,) = await retriever.get_candidates("u1")

    assert candidate.location.latitude == 41.0
    assert candidate.has_media is True
