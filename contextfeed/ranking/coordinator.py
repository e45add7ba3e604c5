"""
Feed cache coordinator — the entry point for every feed read and write.

  get_personalized_feed   cache-aside over retrieve → score → (boost) → page
  get_contextualized_feed boosted re-ranking of a wider personalized page
  record_interaction      publish event, then drop every cached page of the user
  refresh_feed_cache      drop cached pages + request an interest-profile refresh
  get_trending            engagement-rate ordering over the last 24h
  get_similar_posts       similarity scan over the last 30 days
  predict_engagement      one prediction, neutral 0.5 when anything fails

Cache keys:
  feed:user:{user_id}:page:{page}:size:{page_size}[:ctx:{fingerprint}]
  trending:posts:{count}

Every key of a user's feed shares the `feed:user:{user_id}:` prefix so a
single pattern delete invalidates all of its pages and contextual variants.
"""
import asyncio
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from opentelemetry import trace

from contextfeed.config import settings
from contextfeed.exceptions import InvalidFeedRequest
from contextfeed.models import POST_STATUS_ACTIVE, Post
from contextfeed.ranking.base import Cache, EngagementPredictor, EventPublisher, FeatureProvider
from contextfeed.ranking.candidates import CandidateRetriever
from contextfeed.ranking.context import ContextEnricher, context_fingerprint
from contextfeed.ranking.ranker import Ranker, build_page, sort_by_score
from contextfeed.ranking.scoring import (
    clamp,
    engagement_rate,
    hours_between,
    utcnow,
    validate_paging,
)
from contextfeed.repository import Repository, post_to_summary
from contextfeed.schemas import (
    CachedFeedPage,
    FeedItem,
    InteractionEvent,
    ScoredCandidate,
    UserContext,
)
from contextfeed.telemetry import (
    FEED_CACHE_REQUESTS,
    FEED_CANDIDATES_TOTAL,
    FEED_LATENCY,
    INTERACTIONS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FEED_KEY = "feed:user:{user_id}:page:{page}:size:{page_size}"
FEED_USER_PATTERN = "feed:user:{user_id}:*"
TRENDING_KEY = "trending:posts:{count}"

NEUTRAL_ENGAGEMENT = 0.5


def feed_key(
    user_id: str,
    page: int,
    page_size: int,
    context: Optional[UserContext] = None,
) -> str:
    key = FEED_KEY.format(user_id=user_id, page=page, page_size=page_size)
    if context is not None:
        key = f"{key}:ctx:{context_fingerprint(context)}"
    return key


def empty_page(page: int, page_size: int) -> CachedFeedPage:
    return CachedFeedPage(
        items=[], page=page, page_size=page_size, total_count=0, total_pages=0, is_fallback=True
    )


class FeedCacheCoordinator:
    def __init__(
        self,
        cache: Cache,
        retriever: CandidateRetriever,
        ranker: Ranker,
        enricher: ContextEnricher,
        posts: Repository[Post],
        features: FeatureProvider,
        predictor: EngagementPredictor,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._retriever = retriever
        self._ranker = ranker
        self._enricher = enricher
        self._posts = posts
        self._features = features
        self._predictor = predictor
        self._publisher = publisher
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}

    # ── Personalized feed ────────────────────────────────────────────────

    async def get_personalized_feed(
        self,
        user_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
        context: Optional[UserContext] = None,
    ) -> CachedFeedPage:
        page_size = page_size if page_size is not None else settings.feed_page_size
        validate_paging(page, page_size)
        start = time.perf_counter()
        key = feed_key(user_id, page, page_size, context)

        cached = await self._cache.get(key, CachedFeedPage)
        if cached is not None:
            FEED_CACHE_REQUESTS.labels(result="hit").inc()
            FEED_LATENCY.labels(cache="hit").observe(time.perf_counter() - start)
            logger.debug("Feed cache hit for %s", key)
            return cached

        # One computation per key: concurrent misses wait on the same task
        pending = self._inflight.get(key)
        if pending is not None:
            FEED_CACHE_REQUESTS.labels(result="shared").inc()
            logger.debug("Joining in-flight computation for %s", key)
            return await asyncio.shield(pending)

        FEED_CACHE_REQUESTS.labels(result="miss").inc()
        task = asyncio.ensure_future(
            self._compute_page(key, user_id, page, page_size, context, start)
        )
        self._inflight[key] = task
        task.add_done_callback(lambda _: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _compute_page(
        self,
        key: str,
        user_id: str,
        page: int,
        page_size: int,
        context: Optional[UserContext],
        start: float,
    ) -> CachedFeedPage:
        with tracer.start_as_current_span("get_personalized_feed") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("feed.page", page)
            span.set_attribute("feed.contextual", context is not None)

            try:
                with tracer.start_as_current_span("retrieve_candidates"):
                    candidates = await self._retriever.get_candidates(user_id)
                FEED_CANDIDATES_TOTAL.inc(len(candidates))
                span.set_attribute("candidates.pool", len(candidates))

                ranked = await self._ranker.score(user_id, candidates)
                if context is not None:
                    ranked = self._apply_context(ranked, context)

                result = build_page(ranked, page, page_size)
            except InvalidFeedRequest:
                raise
            except Exception as exc:
                logger.error(
                    "Error generating personalized feed for user %s: %s — serving recency feed",
                    user_id, exc,
                )
                span.set_attribute("feed.cache", "fallback")
                result = await self._fallback(page, page_size)
                FEED_LATENCY.labels(cache="fallback").observe(time.perf_counter() - start)
                return result

            await self._cache.set(key, result, ttl=settings.feed_cache_ttl)
            span.set_attribute("feed.cache", "miss")
            span.set_attribute("feed.items", len(result.items))

        FEED_LATENCY.labels(cache="miss").observe(time.perf_counter() - start)
        logger.info(
            "Generated feed for user %s: page %d, %d items of %d",
            user_id, page, len(result.items), result.total_count,
        )
        return result

    async def _fallback(self, page: int, page_size: int) -> CachedFeedPage:
        try:
            return await self._ranker.recency_page(page, page_size)
        except Exception as exc:
            logger.error("Recency fallback failed: %s", exc)
            return empty_page(page, page_size)

    def _apply_context(
        self,
        ranked: Sequence[ScoredCandidate],
        context: UserContext,
    ) -> list[ScoredCandidate]:
        boosted = []
        for candidate in ranked:
            boost = self._enricher.boost(candidate.content, context)
            boosted.append(
                candidate.model_copy(
                    update={"context_boost": boost, "score": candidate.score * boost}
                )
            )
        return sort_by_score(boosted)

    async def get_contextualized_feed(
        self,
        user_id: str,
        context: UserContext,
        count: int = 20,
    ) -> list[FeedItem]:
        """
        Re-rank a wider personalized page (count*2, at most 100 items) by the
        contextual boost and keep the best `count`.
        """
        validate_paging(1, count)
        pool_size = min(count * 2, settings.contextual_pool_max)

        try:
            base = await self.get_personalized_feed(user_id, 1, pool_size)
            boosted = [
                item.model_copy(
                    update={
                        "personalization_score":
                            item.personalization_score * self._enricher.boost(item, context)
                    }
                )
                for item in base.items
            ]
            # stable: equal scores keep the personalized order
            boosted.sort(key=lambda i: i.personalization_score, reverse=True)
            logger.info(
                "Generated contextualized feed for user %s with %d posts",
                user_id, min(count, len(boosted)),
            )
            return boosted[:count]
        except Exception as exc:
            logger.error("Error generating contextualized feed for user %s: %s", user_id, exc)

        try:
            return (await self.get_personalized_feed(user_id, 1, count)).items
        except Exception as exc:
            logger.error("Plain feed fallback failed for user %s: %s", user_id, exc)
            return []

    # ── Invalidation ─────────────────────────────────────────────────────

    async def invalidate(self, user_id: str) -> int:
        pattern = FEED_USER_PATTERN.format(user_id=user_id)
        try:
            removed = await self._cache.remove_by_pattern(pattern)
        except Exception as exc:
            logger.error("Error invalidating feed cache for user %s: %s", user_id, exc)
            return 0
        logger.debug("Invalidated %d cached feed pages for user %s", removed, user_id)
        return removed

    async def record_interaction(
        self,
        user_id: str,
        content_id: str,
        interaction_type: str,
        duration_seconds: float = 0.0,
    ) -> None:
        try:
            event = InteractionEvent(
                user_id=user_id,
                content_id=content_id,
                interaction_type=interaction_type,
                duration_seconds=duration_seconds,
                occurred_at=self._clock(),
            )
            INTERACTIONS_TOTAL.labels(type=event.interaction_type).inc()
            if self._publisher is not None:
                await self._publisher.publish_interaction(event)
        except Exception as exc:
            logger.error(
                "Error recording %s interaction for user %s on post %s: %s",
                interaction_type, user_id, content_id, exc,
            )

        await self.invalidate(user_id)
        logger.debug(
            "Recorded interaction: user %s, post %s, type %s",
            user_id, content_id, interaction_type,
        )

    async def refresh_feed_cache(self, user_id: str) -> None:
        await self.invalidate(user_id)
        if self._publisher is None:
            return
        try:
            await self._publisher.request_profile_refresh(user_id)
        except Exception as exc:
            logger.error("Error requesting profile refresh for user %s: %s", user_id, exc)
        else:
            logger.info("Refreshed feed cache for user %s", user_id)

    # ── Discovery ────────────────────────────────────────────────────────

    async def get_trending(self, count: int = 10) -> list[FeedItem]:
        validate_paging(1, count)
        key = TRENDING_KEY.format(count=count)

        cached = await self._cache.get(key, FeedItem)
        if cached is not None:
            return cached

        try:
            now = self._clock()
            since = (now - timedelta(hours=settings.trending_window_hours)).replace(tzinfo=None)
            posts = await self._posts.find(
                Post.status == POST_STATUS_ACTIVE,
                Post.created_at >= since,
                order_by=[Post.created_at.desc(), Post.post_id],
                limit=settings.trending_scan_limit,
            )
        except Exception as exc:
            logger.error("Error getting trending posts: %s", exc)
            return []

        rated = []
        for post in posts:
            summary = post_to_summary(post)
            rate = engagement_rate(
                summary.like_count,
                summary.comment_count,
                hours_between(summary.created_at, now),
            )
            rated.append(FeedItem.from_content(summary, score=rate))
        rated.sort(key=lambda i: i.personalization_score, reverse=True)
        trending = rated[:count]

        await self._cache.set(key, trending, ttl=settings.trending_cache_ttl)
        return trending

    async def get_similar_posts(self, content_id: str, count: int = 10) -> list[FeedItem]:
        validate_paging(1, count)
        try:
            since = (
                self._clock() - timedelta(days=settings.similar_lookback_days)
            ).replace(tzinfo=None)
            posts = await self._posts.find(
                Post.status == POST_STATUS_ACTIVE,
                Post.post_id != content_id,
                Post.created_at >= since,
                order_by=[Post.created_at.desc(), Post.post_id],
                limit=settings.similar_scan_limit,
            )
        except Exception as exc:
            logger.error("Error getting similar posts for %s: %s", content_id, exc)
            return []

        semaphore = asyncio.Semaphore(settings.ranking_concurrency)

        async def _similarity(post: Post) -> Optional[FeedItem]:
            async with semaphore:
                try:
                    metrics = await self._features.calculate_similarity(content_id, post.post_id)
                except Exception as exc:
                    logger.debug(
                        "Similarity %s↔%s unavailable: %s", content_id, post.post_id, exc
                    )
                    return None
            overall = metrics.get("overall", 0.0)
            if not math.isfinite(overall) or overall <= settings.similar_min_score:
                return None
            return FeedItem.from_content(post_to_summary(post), score=overall)

        results = await asyncio.gather(*[_similarity(p) for p in posts])
        similar = [r for r in results if r is not None]
        similar.sort(key=lambda i: i.personalization_score, reverse=True)
        return similar[:count]

    async def predict_engagement(self, user_id: str, content_id: str) -> float:
        try:
            user_features, content_features = await asyncio.gather(
                self._features.extract_user_features(user_id),
                self._features.extract_content_features(content_id, "post"),
            )
            engagement = await self._predictor.predict(user_features, content_features)
        except Exception as exc:
            logger.error(
                "Error predicting engagement for user %s and post %s: %s",
                user_id, content_id, exc,
            )
            return NEUTRAL_ENGAGEMENT
        if not math.isfinite(engagement):
            return NEUTRAL_ENGAGEMENT
        return clamp(engagement, 0.0, 1.0)
