import asyncio

import pytest

from contextfeed.exceptions import InvalidFeedRequest
from contextfeed.models import Follow, User
from contextfeed.ranking.candidates import CandidateRetriever
from contextfeed.ranking.context import ContextEnricher
from contextfeed.ranking.coordinator import FeedCacheCoordinator, feed_key
from contextfeed.ranking.ranker import Ranker
from contextfeed.schemas import CachedFeedPage, UserContext

from conftest import NOW, RecordingPublisher, fixed_clock, make_post


@pytest.fixture
def coordinator(cache, posts_repo, follows_repo, features, predictor, publisher):
    retriever = CandidateRetriever(posts_repo, follows_repo, cache, clock=fixed_clock)
    ranker = Ranker(features, predictor, posts_repo, clock=fixed_clock)
    enricher = ContextEnricher(cache, clock=fixed_clock)
    return FeedCacheCoordinator(
        cache, retriever, ranker, enricher, posts_repo, features, predictor, publisher,
        clock=fixed_clock,
    )


@pytest.fixture
async def feed_posts(seed):
    await seed(
        User(user_id="u1", username="reader"),
        User(user_id="friend", username="friend"),
        Follow(follower_id="u1", followee_id="friend"),
        make_post("a", user_id="friend", hours_ago=1),
        make_post("b", user_id="friend", hours_ago=2),
        make_post("c", user_id="friend", hours_ago=3),
    )


def ctx(**kwargs):
    return UserContext(timestamp=NOW, device_type="desktop", session_id="s", **kwargs)


def test_feed_key_layout():
    assert feed_key("u1", 2, 20) == "feed:user:u1:page:2:size:20"
    assert feed_key("u1", 1, 20, ctx()).startswith("feed:user:u1:page:1:size:20:ctx:")


async def test_miss_then_hit(coordinator, feed_posts, features, cache):
    features.engagement = {"a": 0.2, "b": 0.9, "c": 0.5}

    first = await coordinator.get_personalized_feed("u1", 1, 20)
    calls = len(features.content_calls)
    second = await coordinator.get_personalized_feed("u1", 1, 20)

    assert [i.content_id for i in first.items] == ["b", "c", "a"]
    assert second.model_dump() == first.model_dump()
    assert len(features.content_calls) == calls
    assert isinstance(await cache.get(feed_key("u1", 1, 20), CachedFeedPage), CachedFeedPage)


async def test_cached_page_ttl(coordinator, feed_posts, redis):
    await coordinator.get_personalized_feed("u1", 1, 20)

    assert redis.ttls[feed_key("u1", 1, 20)] == 900


async def test_empty_pool_is_empty_page(coordinator):
    page = await coordinator.get_personalized_feed("nobody", 1, 20)

    assert page.items == []
    assert page.total_count == 0
    assert not page.is_fallback


async def test_total_failure_serves_uncached_recency_page(coordinator, feed_posts, predictor, cache):
    predictor.fail = True

    page = await coordinator.get_personalized_feed("u1", 1, 20)

    assert page.is_fallback
    assert [i.content_id for i in page.items] == ["a", "b", "c"]
    assert await cache.get(feed_key("u1", 1, 20)) is None


async def test_invalid_paging_raises(coordinator):
    with pytest.raises(InvalidFeedRequest):
        await coordinator.get_personalized_feed("u1", 0, 20)


async def test_context_reorders_and_uses_own_key(coordinator, seed, features, cache):
    await seed(
        make_post("far", hours_ago=1, latitude=48.85, longitude=2.35),
        make_post("near", hours_ago=1, latitude=41.01, longitude=29.0),
    )
    features.engagement = {"far": 0.6, "near": 0.4}
    context = ctx(latitude=41.0, longitude=29.0)

    plain = await coordinator.get_personalized_feed("u1", 1, 20)
    boosted = await coordinator.get_personalized_feed("u1", 1, 20, context)

    assert [i.content_id for i in plain.items] == ["far", "near"]
    assert [i.content_id for i in boosted.items] == ["near", "far"]
    assert await cache.exists(feed_key("u1", 1, 20, context))


async def test_record_interaction_invalidates_cached_pages(coordinator, feed_posts, cache, publisher):
    await coordinator.get_personalized_feed("u1", 1, 20)
    await coordinator.get_personalized_feed("u1", 2, 20)
    await cache.set("feed:user:u2:page:1:size:20", {"other": True})

    await coordinator.record_interaction("u1", "a", "like")

    assert not await cache.exists(feed_key("u1", 1, 20))
    assert not await cache.exists(feed_key("u1", 2, 20))
    assert await cache.exists("feed:user:u2:page:1:size:20")
    (event,) = publisher.events
    assert (event.user_id, event.content_id, event.interaction_type) == ("u1", "a", "like")
    assert event.occurred_at == NOW


async def test_record_interaction_survives_publisher_failure(
    cache, posts_repo, follows_repo, features, predictor, feed_posts
):
    retriever = CandidateRetriever(posts_repo, follows_repo, cache, clock=fixed_clock)
    ranker = Ranker(features, predictor, posts_repo, clock=fixed_clock)
    coordinator = FeedCacheCoordinator(
        cache, retriever, ranker, ContextEnricher(cache), posts_repo, features, predictor,
        RecordingPublisher(fail=True), clock=fixed_clock,
    )
    await coordinator.get_personalized_feed("u1", 1, 20)

    await coordinator.record_interaction("u1", "a", "view", 12.5)

    assert not await cache.exists(feed_key("u1", 1, 20))


async def test_refresh_feed_cache(coordinator, feed_posts, cache, publisher):
    await coordinator.get_personalized_feed("u1", 1, 20)

    await coordinator.refresh_feed_cache("u1")

    assert not await cache.exists(feed_key("u1", 1, 20))
    assert publisher.refreshes == ["u1"]


async def test_contextualized_feed_takes_count(coordinator, seed, features):
    await seed(*[make_post(f"p{i}", hours_ago=i * 0.5) for i in range(6)])

    items = await coordinator.get_contextualized_feed("u1", ctx(), count=3)

    assert [i.content_id for i in items] == ["p0", "p1", "p2"]


async def test_contextualized_feed_boosts_nearby(coordinator, seed, features):
    await seed(
        make_post("far", hours_ago=1, latitude=48.85, longitude=2.35),
        make_post("near", hours_ago=1, latitude=41.01, longitude=29.0),
    )
    features.engagement = {"far": 0.6, "near": 0.4}

    items = await coordinator.get_contextualized_feed(
        "u1", ctx(latitude=41.0, longitude=29.0), count=2
    )

    assert [i.content_id for i in items] == ["near", "far"]
    assert items[0].personalization_score > items[1].personalization_score


async def test_trending_orders_by_engagement_rate(coordinator, seed, redis):
    await seed(
        make_post("steady", hours_ago=10, likes=30, comments=5),   # 40 / 11
        make_post("viral", hours_ago=1, likes=20, comments=5),     # 30 / 2
        make_post("old", hours_ago=30, likes=500),
        make_post("quiet", hours_ago=2),
    )

    trending = await coordinator.get_trending(3)

    assert [i.content_id for i in trending] == ["viral", "steady", "quiet"]
    assert trending[0].personalization_score == pytest.approx(15.0)
    assert redis.ttls["trending:posts:3"] == 1800


async def test_trending_is_cached(coordinator, seed):
    await seed(make_post("one", hours_ago=1, likes=1))
    first = await coordinator.get_trending(5)
    await seed(make_post("two", hours_ago=1, likes=100))

    again = await coordinator.get_trending(5)

    assert [i.content_id for i in again] == [i.content_id for i in first] == ["one"]


async def test_similar_posts_threshold_and_order(coordinator, seed, features):
    await seed(
        make_post("source", hours_ago=1),
        make_post("close", hours_ago=2),
        make_post("closer", hours_ago=3),
        make_post("unrelated", hours_ago=4),
        make_post("ancient", hours_ago=24 * 40),
    )
    features.similarity = {"close": 0.6, "closer": 0.9, "unrelated": 0.3, "ancient": 0.99}

    similar = await coordinator.get_similar_posts("source", 10)

    assert [i.content_id for i in similar] == ["closer", "close"]


async def test_predict_engagement(coordinator, features, predictor):
    features.engagement = {"p": 0.83}
    assert await coordinator.predict_engagement("u1", "p") == pytest.approx(0.83)

    predictor.fail = True
    assert await coordinator.predict_engagement("u1", "p") == 0.5


async def test_concurrent_misses_share_one_computation(coordinator, seed, features):
    await seed(make_post("a", hours_ago=1), make_post("b", hours_ago=2))

    pages = await asyncio.gather(
        *[coordinator.get_personalized_feed("u1", 1, 20) for _ in range(5)]
    )

    assert sorted(features.content_calls) == ["a", "b"]
    assert all([i.content_id for i in p.items] == ["a", "b"] for p in pages)
    assert coordinator._inflight == {}


async def test_different_keys_compute_separately(coordinator, seed, features):
    await seed(make_post("a", hours_ago=1), make_post("b", hours_ago=2))

    await asyncio.gather(
        coordinator.get_personalized_feed("u1", 1, 20),
        coordinator.get_personalized_feed("u1", 1, 10),
    )

    assert sorted(features.content_calls) == ["a", "a", "b", "b"]


async def test_unknown_interaction_type_still_invalidates(coordinator, feed_posts, cache, publisher):
    await coordinator.get_personalized_feed("u1", 1, 20)

    await coordinator.record_interaction("u1", "a", "click")

    assert not await cache.exists(feed_key("u1", 1, 20))
    assert publisher.events == []


async def test_negative_duration_still_invalidates(coordinator, feed_posts, cache, publisher):
    await coordinator.get_personalized_feed("u1", 1, 20)

    await coordinator.record_interaction("u1", "a", "view", -3.0)

    assert not await cache.exists(feed_key("u1", 1, 20))
    assert publisher.events == []
