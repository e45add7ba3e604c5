"""
Pydantic value types for the ranking pipeline and the API layer.
Kept separate from ORM models to avoid coupling ranking to storage.
"""
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field, computed_field, field_validator

DeviceType = Literal["mobile", "tablet", "desktop", "unknown"]
InteractionType = Literal["like", "comment", "view", "share", "save"]

# Feature name → value. Values must be finite (see ranking.scoring.ensure_finite).
FeatureVector = dict[str, float]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


# ──────────────────────────── Content ─────────────────────────────────────

class GeoPoint(BaseModel):
    latitude: float
    longitude: float


class ContentSummary(BaseModel):
    """Read-time snapshot of a post; replaced by re-fetch, never mutated."""
    content_id: str
    author_id: str
    author_username: Optional[str] = None
    body: str = ""
    created_at: UtcDatetime
    like_count: int = 0
    comment_count: int = 0
    location: Optional[GeoPoint] = None
    has_media: bool = False

    class Config:
        frozen = True


class ScoredCandidate(BaseModel):
    """A candidate and its score as it moves through one ranking pass."""
    content: ContentSummary
    score: float = 0.0
    engagement: float = 0.0
    time_decay: float = 1.0
    engagement_boost: float = 0.0
    context_boost: float = 1.0


class FeedItem(ContentSummary):
    """A ranked post returned to callers."""
    personalization_score: float = 0.0

    @classmethod
    def from_candidate(cls, candidate: ScoredCandidate) -> "FeedItem":
        return cls(
            **candidate.content.model_dump(exclude={"personalization_score"}),
            personalization_score=candidate.score,
        )

    @classmethod
    def from_content(cls, content: ContentSummary, score: float = 0.0) -> "FeedItem":
        return cls(
            **content.model_dump(exclude={"personalization_score"}),
            personalization_score=score,
        )


class CachedFeedPage(BaseModel):
    items: list[FeedItem] = Field(default_factory=list)
    page: int
    page_size: int
    total_count: int
    total_pages: int
    # True when served by the recency fallback instead of the ranker
    is_fallback: bool = False

    @computed_field
    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @computed_field
    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


# ──────────────────────────── Context ─────────────────────────────────────

class WeatherSnapshot(BaseModel):
    temperature: float
    is_camping_weather: bool = False
    camping_score: float = Field(0.0, ge=0.0, le=1.0)
    condition: Optional[str] = None   # 'sunny' | 'rainy' | 'cloudy' | …
    humidity: Optional[float] = None
    wind_speed: Optional[float] = None


class UserContext(BaseModel):
    timestamp: UtcDatetime
    device_type: DeviceType = "desktop"
    session_id: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    weather: Optional[WeatherSnapshot] = None
    session_duration: timedelta = timedelta(0)
    additional_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class RequestMetadata(BaseModel):
    """Transport-neutral view of the request signals used to build a context."""
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, str] = Field(default_factory=dict)
    session_id: Optional[str] = None

    @field_validator("headers")
    @classmethod
    def _lower_header_names(cls, value: dict[str, str]) -> dict[str, str]:
        return {k.lower(): v for k, v in value.items()}

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)


# ──────────────────────────── Interactions ────────────────────────────────

class InteractionRequest(BaseModel):
    user_id: str
    content_id: str
    interaction_type: InteractionType
    duration_seconds: float = Field(0.0, ge=0.0)


class InteractionEvent(InteractionRequest):
    occurred_at: UtcDatetime


# ──────────────────────────── API responses ───────────────────────────────

class FeedContextSummary(BaseModel):
    device_type: str
    timestamp: datetime
    has_location: bool
    weather: Optional[WeatherSnapshot] = None
    session_minutes: float


class SmartFeedResponse(BaseModel):
    user_id: str
    posts: list[FeedItem]
    context: FeedContextSummary
    latency_ms: float


class PredictionResponse(BaseModel):
    user_id: str
    content_id: str
    engagement: float


class PresenceResponse(BaseModel):
    user_id: str
    online: bool
    last_seen_at: Optional[datetime] = None
