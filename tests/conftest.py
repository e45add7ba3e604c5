import fnmatch
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import NullPool

from contextfeed.clients.redis_client import FeedCache
from contextfeed.database import init_db, make_engine, make_session_factory
from contextfeed.exceptions import UpstreamUnavailable
from contextfeed.models import Follow, Post, User
from contextfeed.repository import Repository

# Wednesday, mid-July, noon UTC
NOW = datetime(2026, 7, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls FeedCache makes."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, key):
        return int(key in self.store)

    async def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key


class StubFeatures:
    """
    Deterministic feature provider.

    content features carry an 'engagement' entry the StubPredictor returns
    as the prediction, so tests can control scores per post.
    """

    def __init__(self, engagement=None, default=0.5):
        self.engagement = engagement or {}
        self.default = default
        self.failing_content: set[str] = set()
        self.fail_user = False
        self.similarity: dict[str, float] = {}
        self.content_calls: list[str] = []

    async def extract_user_features(self, user_id):
        if self.fail_user:
            raise UpstreamUnavailable("feature store down")
        return {"follower_count": 10.0, "avg_engagement_rate": 0.2}

    async def extract_content_features(self, content_id, content_type="post"):
        self.content_calls.append(content_id)
        if content_id in self.failing_content:
            raise UpstreamUnavailable(f"no features for {content_id}")
        return {"engagement": self.engagement.get(content_id, self.default)}

    async def calculate_similarity(self, id_a, id_b):
        if id_b not in self.similarity:
            raise UpstreamUnavailable(f"no embedding for {id_b}")
        return {"overall": self.similarity[id_b]}


class StubPredictor:
    def __init__(self):
        self.fail = False

    async def predict(self, user_features, content_features):
        if self.fail:
            raise UpstreamUnavailable("ranking service down")
        return content_features["engagement"]


class RecordingPublisher:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []
        self.refreshes = []

    async def publish_interaction(self, event):
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.events.append(event)

    async def request_profile_refresh(self, user_id):
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.refreshes.append(user_id)


def make_post(
    post_id,
    user_id="author",
    hours_ago=1.0,
    likes=0,
    comments=0,
    content="",
    status="active",
    latitude=None,
    longitude=None,
    media_key=None,
):
    return Post(
        post_id=post_id,
        user_id=user_id,
        content=content,
        status=status,
        like_count=likes,
        comment_count=comments,
        latitude=latitude,
        longitude=longitude,
        media_key=media_key,
        created_at=(NOW - timedelta(hours=hours_ago)).replace(tzinfo=None),
    )


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def cache(redis):
    return FeedCache(redis)


@pytest.fixture
def features():
    return StubFeatures()


@pytest.fixture
def predictor():
    return StubPredictor()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
async def session_factory(tmp_path):
    engine = make_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'feed.db'}", pool_options={"poolclass": NullPool}
    )
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def posts_repo(session_factory):
    return Repository(Post, session_factory)


@pytest.fixture
def follows_repo(session_factory):
    return Repository(Follow, session_factory)


@pytest.fixture
def users_repo(session_factory):
    return Repository(User, session_factory)


@pytest.fixture
def seed(session_factory):
    async def _seed(*rows):
        async with session_factory() as session:
            session.add_all(rows)
            await session.commit()
    return _seed
