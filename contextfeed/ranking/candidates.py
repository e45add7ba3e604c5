import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import or_

from contextfeed.config import settings
from contextfeed.models import POST_STATUS_ACTIVE, Follow, Post
from contextfeed.ranking.base import Cache
from contextfeed.ranking.scoring import utcnow
from contextfeed.repository import Repository, post_to_summary
from contextfeed.schemas import ContentSummary

logger = logging.getLogger(__name__)

FOLLOWING_KEY = "user:following:{user_id}"


class CandidateRetriever:
    """
    Builds the candidate pool for one ranking pass:
    posts by followed authors ∪ posts from the last few hours, active only,
    newest first, capped so per-item scoring cost stays bounded.
    """

    def __init__(
        self,
        posts: Repository[Post],
        follows: Repository[Follow],
        cache: Cache,
        pool_limit: Optional[int] = None,
        recent_hours: Optional[int] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._posts = posts
        self._follows = follows
        self._cache = cache
        self._pool_limit = pool_limit or settings.candidate_pool_limit
        self._recent_hours = recent_hours or settings.candidate_recent_hours
        self._clock = clock

    async def get_followed_ids(self, user_id: str) -> list[str]:
        key = FOLLOWING_KEY.format(user_id=user_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        return await self.refresh_followed_ids(user_id)

    async def refresh_followed_ids(self, user_id: str) -> list[str]:
        edges = await self._follows.find(
            Follow.follower_id == user_id,
            order_by=[Follow.followee_id],
        )
        followed = [e.followee_id for e in edges]
        await self._cache.set(
            FOLLOWING_KEY.format(user_id=user_id), followed, ttl=settings.following_cache_ttl
        )
        return followed

    async def get_candidates(self, user_id: str) -> list[ContentSummary]:
        followed = await self.get_followed_ids(user_id)
        # Stored timestamps are naive UTC
        since = (self._clock() - timedelta(hours=self._recent_hours)).replace(tzinfo=None)

        eligible = Post.created_at >= since
        if followed:
            eligible = or_(Post.user_id.in_(followed), eligible)

        posts = await self._posts.find(
            Post.status == POST_STATUS_ACTIVE,
            eligible,
            order_by=[Post.created_at.desc(), Post.post_id],
            limit=self._pool_limit,
        )
        logger.debug(
            "Candidate pool for user %s: %d posts (%d followed authors)",
            user_id, len(posts), len(followed),
        )
        return [post_to_summary(p) for p in posts]
