"""
FastAPI dependencies.

Services are built once in the lifespan and held on app.state; routers
only ever reach them through these accessors.
"""
from fastapi import Request

from contextfeed.presence import PresenceTracker
from contextfeed.ranking.context import ContextEnricher
from contextfeed.ranking.coordinator import FeedCacheCoordinator
from contextfeed.schemas import RequestMetadata

SESSION_COOKIE = "session_id"


def get_coordinator(request: Request) -> FeedCacheCoordinator:
    return request.app.state.coordinator


def get_enricher(request: Request) -> ContextEnricher:
    return request.app.state.enricher


def get_presence(request: Request) -> PresenceTracker:
    return request.app.state.presence


def request_metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        headers=dict(request.headers),
        query=dict(request.query_params),
        session_id=request.cookies.get(SESSION_COOKIE),
    )
