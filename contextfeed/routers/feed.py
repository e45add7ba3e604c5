"""
Feed endpoints:
  GET  /feed                       — personalized page (optionally context-boosted)
  GET  /feed/smart                 — contextualized top-N with a context summary
  GET  /feed/trending              — engagement-rate ordering over the last 24h
  GET  /feed/{post_id}/similar     — posts similar to one post
  GET  /feed/{post_id}/prediction  — engagement prediction for one (user, post)
  POST /feed/interaction           — record an interaction, invalidate the user's feed
  POST /feed/refresh               — drop cached pages, request a profile refresh

All ranking failures are recovered inside the coordinator; only invalid
paging reaches the client (400).
"""
import logging
import time

from fastapi import APIRouter, Depends, Query, Request, status

from contextfeed.config import settings
from contextfeed.dependencies import get_coordinator, get_enricher, request_metadata
from contextfeed.ranking.context import ContextEnricher
from contextfeed.ranking.coordinator import FeedCacheCoordinator
from contextfeed.schemas import (
    CachedFeedPage,
    FeedContextSummary,
    FeedItem,
    InteractionRequest,
    PredictionResponse,
    SmartFeedResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=CachedFeedPage)
async def get_feed(
    request: Request,
    user_id: str = Query(..., description="ID of the requesting user"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.feed_page_size, ge=1, le=100),
    contextual: bool = Query(False, description="Apply request-context boosting"),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
    enricher: ContextEnricher = Depends(get_enricher),
):
    context = None
    if contextual:
        context = await enricher.build_context(user_id, request_metadata(request))
    return await coordinator.get_personalized_feed(user_id, page, page_size, context)


@router.get("/smart", response_model=SmartFeedResponse)
async def get_smart_feed(
    request: Request,
    user_id: str = Query(...),
    count: int = Query(20, ge=1, le=50),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
    enricher: ContextEnricher = Depends(get_enricher),
):
    start_time = time.time()
    context = await enricher.build_context(user_id, request_metadata(request))
    posts = await coordinator.get_contextualized_feed(user_id, context, count)

    return SmartFeedResponse(
        user_id=user_id,
        posts=posts,
        context=FeedContextSummary(
            device_type=context.device_type,
            timestamp=context.timestamp,
            has_location=context.has_location,
            weather=context.weather,
            session_minutes=round(context.session_duration.total_seconds() / 60, 2),
        ),
        latency_ms=round((time.time() - start_time) * 1000, 2),
    )


@router.get("/trending", response_model=list[FeedItem])
async def get_trending(
    count: int = Query(settings.trending_default_count, ge=1, le=100),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
):
    return await coordinator.get_trending(count)


@router.get("/{post_id}/similar", response_model=list[FeedItem])
async def get_similar(
    post_id: str,
    count: int = Query(10, ge=1, le=50),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
):
    return await coordinator.get_similar_posts(post_id, count)


@router.get("/{post_id}/prediction", response_model=PredictionResponse)
async def get_prediction(
    post_id: str,
    user_id: str = Query(...),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
):
    engagement = await coordinator.predict_engagement(user_id, post_id)
    return PredictionResponse(user_id=user_id, content_id=post_id, engagement=engagement)


@router.post("/interaction", status_code=status.HTTP_204_NO_CONTENT)
async def record_interaction(
    body: InteractionRequest,
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
):
    """
    Called by clients when a user likes, comments on, views, shares or saves
    a post. The user's cached feed pages are invalidated so the next read
    reflects the new signal.
    """
    await coordinator.record_interaction(
        body.user_id, body.content_id, body.interaction_type, body.duration_seconds
    )


@router.post("/refresh", status_code=status.HTTP_204_NO_CONTENT)
async def refresh_feed(
    user_id: str = Query(...),
    coordinator: FeedCacheCoordinator = Depends(get_coordinator),
):
    await coordinator.refresh_feed_cache(user_id)
