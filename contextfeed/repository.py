"""
Generic read repository over the async SQLAlchemy session factory.

The ranking core only ever reads users, posts and follow edges; criteria are
plain SQLAlchemy column expressions, e.g.

    await posts.find(Post.status == "active", order_by=[Post.created_at.desc()], limit=200)

Each call opens its own short-lived session (snapshot read, no transaction
semantics required).
"""
import logging
from typing import Any, Generic, Optional, Sequence, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextfeed.database import Base
from contextfeed.models import Post
from contextfeed.schemas import ContentSummary, GeoPoint

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)


class Repository(Generic[T]):
    def __init__(self, model: type[T], session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.model = model
        self._session_factory = session_factory

    async def get_by_id(self, entity_id: Any) -> Optional[T]:
        async with self._session_factory() as session:
            return await session.get(self.model, entity_id)

    async def find(
        self,
        *criteria: Any,
        order_by: Sequence[Any] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[T]:
        stmt = select(self.model).where(*criteria)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            rows = await session.execute(stmt)
            return list(rows.unique().scalars().all())

    async def count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self.model).where(*criteria)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())


def post_to_summary(post: Post) -> ContentSummary:
    location = None
    if post.latitude is not None and post.longitude is not None:
        location = GeoPoint(latitude=post.latitude, longitude=post.longitude)
    return ContentSummary(
        content_id=post.post_id,
        author_id=post.user_id,
        author_username=post.author.username if post.author else None,
        body=post.content or "",
        created_at=post.created_at,
        like_count=post.like_count or 0,
        comment_count=post.comment_count or 0,
        location=location,
        has_media=post.media_key is not None,
    )
