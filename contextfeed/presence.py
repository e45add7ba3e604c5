"""
Online presence for connected users.

The online map lives in process memory and is only touched from the event
loop, so plain dict operations are atomic with respect to each other.
Last-seen timestamps go to the cache so they survive restarts and are
visible to every API replica.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from contextfeed.config import settings
from contextfeed.ranking.base import Cache
from contextfeed.ranking.scoring import utcnow

logger = logging.getLogger(__name__)

LAST_SEEN_KEY = "presence:last_seen:{user_id}"


class PresenceTracker:
    def __init__(self, cache: Cache, clock: Callable[[], datetime] = utcnow) -> None:
        self._cache = cache
        self._clock = clock
        self._online: dict[str, bool] = {}

    async def _touch(self, user_id: str) -> datetime:
        now = self._clock()
        await self._cache.set(
            LAST_SEEN_KEY.format(user_id=user_id),
            now.isoformat(),
            ttl=settings.presence_last_seen_ttl,
        )
        return now

    async def connect(self, user_id: str) -> None:
        self._online[user_id] = True
        await self._touch(user_id)
        logger.info("User %s connected", user_id)

    async def disconnect(self, user_id: str) -> None:
        self._online.pop(user_id, None)
        await self._touch(user_id)
        logger.info("User %s disconnected", user_id)

    def is_online(self, user_id: str) -> bool:
        return self._online.get(user_id, False)

    def online_users(self) -> list[str]:
        return sorted(uid for uid, online in self._online.items() if online)

    async def last_seen(self, user_id: str) -> Optional[datetime]:
        raw = await self._cache.get(LAST_SEEN_KEY.format(user_id=user_id))
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed last-seen value for user %s: %r", user_id, raw)
            return None
