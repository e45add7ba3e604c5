"""
Scoring primitives shared by the ranker, the context enricher and the
fallback paths. Everything here is pure and deterministic.
"""
import math
from datetime import datetime, timezone
from typing import Iterable, Sequence, TypeVar

from contextfeed.exceptions import InvalidFeedRequest

T = TypeVar("T")

EARTH_RADIUS_KM = 6371.0
BOOST_MIN = 0.1
BOOST_MAX = 3.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Age in hours, never negative (clock skew puts future posts at age 0)."""
    return max(0.0, (later - earlier).total_seconds() / 3600)


def time_decay(hours_since_post: float, decay_hours: float = 24.0) -> float:
    """exp(-h/24): 1.0 for fresh content, ~0.368 after a day, never 0."""
    return math.exp(-max(0.0, hours_since_post) / decay_hours)


def engagement_boost(like_count: int, comment_count: int) -> float:
    """ln(1 + likes + 2*comments) — diminishing returns on raw popularity."""
    return math.log1p(max(0, like_count) + 2 * max(0, comment_count))


def final_score(
    engagement: float,
    decay: float,
    boost: float,
    boost_weight: float = 0.1,
) -> float:
    return engagement * decay * (1 + boost_weight * boost)


def engagement_rate(like_count: int, comment_count: int, hours_since_post: float) -> float:
    """Interactions per hour, used for trending order."""
    return (max(0, like_count) + 2 * max(0, comment_count)) / (hours_since_post + 1)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_boost(value: float) -> float:
    return clamp(value, BOOST_MIN, BOOST_MAX)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def contains_keywords(text: str | None, keywords: Iterable[str]) -> bool:
    """Case-insensitive substring match of any keyword."""
    if not text:
        return False
    lowered = text.casefold()
    return any(k.casefold() in lowered for k in keywords)


def ensure_finite(features: dict) -> dict[str, float]:
    """Keep numeric, finite feature values only."""
    clean: dict[str, float] = {}
    for name, value in features.items():
        if isinstance(value, bool):
            value = float(value)
        if not isinstance(value, (int, float)):
            continue
        if math.isfinite(value):
            clean[name] = float(value)
    return clean


def validate_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise InvalidFeedRequest(f"page must be >= 1, got {page}")
    if page_size < 1:
        raise InvalidFeedRequest(f"page_size must be >= 1, got {page_size}")


def total_pages(total_count: int, page_size: int) -> int:
    return math.ceil(total_count / page_size) if total_count else 0


def paginate(items: Sequence[T], page: int, page_size: int) -> list[T]:
    """Offset pagination; pages past the end are empty."""
    validate_paging(page, page_size)
    skip = (page - 1) * page_size
    return list(items[skip: skip + page_size])
