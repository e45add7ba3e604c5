"""
Feed warmup worker — background task started in the API lifespan.

Every cycle (default 30 min):
  1. Load users who logged in within the last 24h (at most 100).
  2. Process them in batches of 10, concurrently within a batch.
  3. For each user: compute feed pages 1..N through the coordinator (which
     stores them in the cache) and refresh the followed-author list.
  4. Pre-compute the trending list.

Per-user failures are logged and skipped. A failed cycle is retried after
a short backoff. stop() wakes the sleep immediately; an in-flight batch
is allowed to finish.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from opentelemetry import trace

from contextfeed.config import settings
from contextfeed.models import User
from contextfeed.ranking.candidates import CandidateRetriever
from contextfeed.ranking.coordinator import FeedCacheCoordinator
from contextfeed.ranking.scoring import utcnow
from contextfeed.repository import Repository
from contextfeed.telemetry import WARMUP_RUNS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FeedWarmupWorker:
    def __init__(
        self,
        users: Repository[User],
        coordinator: FeedCacheCoordinator,
        retriever: CandidateRetriever,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._users = users
        self._coordinator = coordinator
        self._retriever = retriever
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="feed-warmup")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def active_user_ids(self) -> list[str]:
        since = (self._clock() - timedelta(hours=settings.warmup_active_hours)).replace(tzinfo=None)
        users = await self._users.find(
            User.last_login_at >= since,
            order_by=[User.last_login_at.desc(), User.user_id],
            limit=settings.warmup_max_users,
        )
        return [u.user_id for u in users]

    async def warm_user(self, user_id: str) -> bool:
        try:
            for page in range(1, settings.warmup_pages + 1):
                await self._coordinator.get_personalized_feed(
                    user_id, page, settings.feed_page_size
                )
            await self._retriever.refresh_followed_ids(user_id)
        except Exception as exc:
            logger.warning("Error warming up feed for user %s: %s", user_id, exc)
            return False
        return True

    async def warm_popular(self) -> None:
        try:
            await self._coordinator.get_trending(settings.trending_default_count)
        except Exception as exc:
            logger.error("Error warming up popular content: %s", exc)
            return
        logger.info("Popular content warmup completed")

    async def run_once(self) -> int:
        """One warmup cycle; returns the number of users warmed."""
        t0 = time.perf_counter()
        with tracer.start_as_current_span("feed_warmup") as span:
            user_ids = await self.active_user_ids()
            span.set_attribute("warmup.users", len(user_ids))

            warmed = 0
            size = settings.warmup_batch_size
            for i in range(0, len(user_ids), size):
                batch = user_ids[i: i + size]
                results = await asyncio.gather(*[self.warm_user(uid) for uid in batch])
                warmed += sum(results)

            span.set_attribute("warmup.warmed", warmed)

            await self.warm_popular()

        logger.info(
            "Feed cache warmup completed for %d/%d active users (%.1fms)",
            warmed, len(user_ids), (time.perf_counter() - t0) * 1000,
        )
        return warmed

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        logger.info(
            "Feed warmup worker started (interval=%ss)", settings.warmup_interval_seconds
        )
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                WARMUP_RUNS_TOTAL.labels(status="error").inc()
                logger.error("Error during feed cache warmup: %s", exc)
                delay = settings.warmup_retry_seconds
            else:
                WARMUP_RUNS_TOTAL.labels(status="ok").inc()
                delay = settings.warmup_interval_seconds

            if self._stop.is_set():
                break
            await self._sleep(delay)
        logger.info("Feed warmup worker stopped")
