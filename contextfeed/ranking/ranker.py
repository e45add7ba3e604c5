"""
Personalized ranking of a closed candidate pool.

Per candidate:
  engagement = predictor(user_features, content_features)      ∈ [0, 1]
  decay      = exp(-hours_since_post / 24)
  boost      = ln(1 + likes + 2 * comments)
  score      = engagement * decay * (1 + 0.1 * boost)

Candidates are scored concurrently and then stable-sorted by score, so the
order depends only on the scores and the retrieval order, never on which
coroutine finished first. A candidate whose features or prediction fail is
dropped from the pass; a pass that cannot score anything raises
RankingPipelineError and callers fall back to the recency feed.
"""
import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Optional, Sequence

from opentelemetry import trace

from contextfeed.config import settings
from contextfeed.exceptions import RankingPipelineError
from contextfeed.models import POST_STATUS_ACTIVE, Post
from contextfeed.ranking.base import EngagementPredictor, FeatureProvider
from contextfeed.ranking.scoring import (
    clamp,
    engagement_boost,
    final_score,
    hours_between,
    paginate,
    time_decay,
    total_pages,
    utcnow,
    validate_paging,
)
from contextfeed.repository import Repository, post_to_summary
from contextfeed.schemas import (
    CachedFeedPage,
    ContentSummary,
    FeatureVector,
    FeedItem,
    ScoredCandidate,
)
from contextfeed.telemetry import CANDIDATES_EXCLUDED_TOTAL, FALLBACK_FEEDS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_page(
    ranked: Sequence[ScoredCandidate],
    page: int,
    page_size: int,
) -> CachedFeedPage:
    return CachedFeedPage(
        items=[FeedItem.from_candidate(c) for c in paginate(ranked, page, page_size)],
        page=page,
        page_size=page_size,
        total_count=len(ranked),
        total_pages=total_pages(len(ranked), page_size),
    )


def sort_by_score(candidates: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    # sorted() is stable with reverse=True: equal scores keep retrieval order
    return sorted(candidates, key=lambda c: c.score, reverse=True)


class Ranker:
    def __init__(
        self,
        features: FeatureProvider,
        predictor: EngagementPredictor,
        posts: Repository[Post],
        concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._features = features
        self._predictor = predictor
        self._posts = posts
        self._semaphore = asyncio.Semaphore(concurrency or settings.ranking_concurrency)
        self._clock = clock

    async def _score_one(
        self,
        user_features: FeatureVector,
        candidate: ContentSummary,
        now: datetime,
    ) -> Optional[ScoredCandidate]:
        async with self._semaphore:
            try:
                content_features = await self._features.extract_content_features(
                    candidate.content_id, "post"
                )
                engagement = await self._predictor.predict(user_features, content_features)
            except Exception as exc:
                logger.warning(
                    "Dropping candidate %s from ranking: %s", candidate.content_id, exc
                )
                CANDIDATES_EXCLUDED_TOTAL.inc()
                return None

        if not math.isfinite(engagement):
            logger.warning(
                "Dropping candidate %s: non-finite engagement %r",
                candidate.content_id, engagement,
            )
            CANDIDATES_EXCLUDED_TOTAL.inc()
            return None

        engagement = clamp(engagement, 0.0, 1.0)
        decay = time_decay(hours_between(candidate.created_at, now), settings.decay_hours)
        boost = engagement_boost(candidate.like_count, candidate.comment_count)
        return ScoredCandidate(
            content=candidate,
            score=final_score(engagement, decay, boost, settings.engagement_boost_weight),
            engagement=engagement,
            time_decay=decay,
            engagement_boost=boost,
        )

    async def score(
        self,
        user_id: str,
        candidates: Sequence[ContentSummary],
    ) -> list[ScoredCandidate]:
        """Score the whole pool and return it best-first."""
        pool = tuple(candidates)   # closed before scoring starts
        if not pool:
            return []

        with tracer.start_as_current_span("rank_candidates") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("candidates.pool", len(pool))

            try:
                user_features = await self._features.extract_user_features(user_id)
            except Exception as exc:
                raise RankingPipelineError(
                    f"User features unavailable for {user_id}: {exc}"
                ) from exc

            now = self._clock()
            results = await asyncio.gather(
                *[self._score_one(user_features, c, now) for c in pool]
            )
            scored = [r for r in results if r is not None]
            span.set_attribute("candidates.scored", len(scored))

        if not scored:
            raise RankingPipelineError(
                f"All {len(pool)} candidates failed scoring for user {user_id}"
            )
        if len(scored) < len(pool):
            logger.info(
                "Ranked %d/%d candidates for user %s (%d excluded)",
                len(scored), len(pool), user_id, len(pool) - len(scored),
            )
        return sort_by_score(scored)

    async def rank(
        self,
        user_id: str,
        candidates: Sequence[ContentSummary],
        page: int,
        page_size: int,
    ) -> CachedFeedPage:
        validate_paging(page, page_size)
        ranked = await self.score(user_id, candidates)
        return build_page(ranked, page, page_size)

    async def rank_or_fallback(
        self,
        user_id: str,
        candidates: Sequence[ContentSummary],
        page: int,
        page_size: int,
    ) -> CachedFeedPage:
        validate_paging(page, page_size)
        try:
            return await self.rank(user_id, candidates, page, page_size)
        except Exception as exc:
            logger.error("Ranking failed for user %s (%s) — serving recency feed", user_id, exc)
            return await self.recency_page(page, page_size)

    async def recency_page(self, page: int, page_size: int) -> CachedFeedPage:
        """Newest-first page over all active content; no features, no model."""
        validate_paging(page, page_size)
        active = Post.status == POST_STATUS_ACTIVE
        posts = await self._posts.find(
            active,
            order_by=[Post.created_at.desc(), Post.post_id],
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        total = await self._posts.count(active)
        FALLBACK_FEEDS_TOTAL.inc()
        return CachedFeedPage(
            items=[FeedItem.from_content(post_to_summary(p)) for p in posts],
            page=page,
            page_size=page_size,
            total_count=total,
            total_pages=total_pages(total, page_size),
            is_fallback=True,
        )
