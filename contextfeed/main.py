"""
Context-aware Feed API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB engine (TiDB) and create tables if not present
  3. Connect to Redis (feed cache, session markers, presence)
  4. Start async HTTP clients (Feast features, ranking service)
  5. Start Kafka producer (interaction / profile-refresh events)
  6. Wire the ranking pipeline onto app.state
  7. Start the feed warmup worker
  8. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from contextfeed.config import settings
from contextfeed.database import init_db, make_engine, make_session_factory
from contextfeed.exceptions import InvalidFeedRequest
from contextfeed.models import Follow, Post, User
from contextfeed.presence import PresenceTracker
from contextfeed.ranking.candidates import CandidateRetriever
from contextfeed.ranking.context import ContextEnricher
from contextfeed.ranking.coordinator import FeedCacheCoordinator
from contextfeed.ranking.ranker import Ranker
from contextfeed.repository import Repository
from contextfeed.telemetry import setup_tracing, instrument_app
from contextfeed.warmup import FeedWarmupWorker
from contextfeed.clients.feast_client import FeastClient
from contextfeed.clients.kafka_producer import FeedEventPublisher
from contextfeed.clients.ranking_client import HeuristicPredictor, RankingClient
from contextfeed.clients.redis_client import FeedCache, close_redis, init_redis
from contextfeed.routers import feed, presence

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Context-aware Feed API (env=%s)", settings.environment)

    engine = make_engine()
    await init_db(engine)
    session_factory = make_session_factory(engine)

    redis = await init_redis()
    cache = FeedCache(redis, prefix=settings.redis_key_prefix)

    feast_client = FeastClient()
    await feast_client.start()

    ranking_client = None
    if settings.engagement_predictor == "remote":
        ranking_client = RankingClient()
        await ranking_client.start()
        predictor = ranking_client
    else:
        predictor = HeuristicPredictor()

    publisher = FeedEventPublisher()
    await publisher.start()

    posts = Repository(Post, session_factory)
    follows = Repository(Follow, session_factory)
    users = Repository(User, session_factory)

    retriever = CandidateRetriever(posts, follows, cache)
    ranker = Ranker(feast_client, predictor, posts)
    enricher = ContextEnricher(cache)
    coordinator = FeedCacheCoordinator(
        cache, retriever, ranker, enricher, posts, feast_client, predictor, publisher
    )

    app.state.enricher = enricher
    app.state.coordinator = coordinator
    app.state.presence = PresenceTracker(cache)

    warmup = FeedWarmupWorker(users, coordinator, retriever)
    if settings.warmup_enabled:
        warmup.start()

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await warmup.stop()
    await publisher.stop()
    if ranking_client is not None:
        await ranking_client.stop()
    await feast_client.stop()
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Context-aware Feed API",
    description=(
        "Personalized feed ranking: candidate retrieval, engagement "
        "prediction and contextual boosting behind a Redis page cache."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(presence.router, prefix="/presence", tags=["Presence"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
# Mounted at /metrics — scraped by Prometheus
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.exception_handler(InvalidFeedRequest)
async def invalid_feed_request_handler(request: Request, exc: InvalidFeedRequest):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
