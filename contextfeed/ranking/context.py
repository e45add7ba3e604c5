"""
Request context construction and contextual boosting.

A UserContext is built fresh for every request from the request signals
(user agent, location headers/query, session marker) plus optional
location and weather enrichment. Each candidate then gets a multiplicative
boost from six independent factors:

  weather × time-of-day × geo-distance × device × session × season

clamped to [0.1, 3.0]. A failure anywhere in one candidate's boost yields
a neutral 1.0 for that candidate only.
"""
import hashlib
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from contextfeed.config import settings
from contextfeed.exceptions import MalformedContext
from contextfeed.ranking.base import Cache, LocationClassifier, WeatherProvider
from contextfeed.ranking.scoring import (
    clamp_boost,
    contains_keywords,
    haversine_km,
    hours_between,
    utcnow,
)
from contextfeed.schemas import ContentSummary, RequestMetadata, UserContext, WeatherSnapshot
from contextfeed.telemetry import CONTEXT_BOOST_ERRORS_TOTAL

logger = logging.getLogger(__name__)

SESSION_START_KEY = "session:start:{session_id}"

# Bilingual (English / Turkish) keyword sets, matched case-insensitively
# as substrings of the post body.
THEMES: dict[str, tuple[str, ...]] = {
    "camping": ("kamp", "camping", "çadır", "tent", "outdoor", "nature", "doğa"),
    "indoor": ("indoor", "içeride", "ev", "home", "cooking", "yemek", "recipe"),
    "hot_weather": ("swimming", "yüzme", "beach", "plaj", "water", "su", "cool", "serinlik"),
    "cold_weather": ("winter", "kış", "snow", "kar", "warm", "sıcak", "fire", "ateş"),
    "inspirational": ("beautiful", "güzel", "amazing", "muhteşem", "inspiring", "ilham", "dream", "rüya"),
    "planning": ("plan", "planning", "route", "rota", "guide", "rehber", "tip", "öneri"),
    "adventure": ("adventure", "macera", "hike", "yürüyüş", "explore", "keşif", "trek"),
    "nature": ("nature", "doğa", "forest", "orman", "mountain", "dağ", "river", "nehir"),
    "hiking": ("hike", "hiking", "yürüyüş", "trail", "patika", "mountain", "dağ"),
    "winter": ("winter", "kış", "snow", "kar", "cold", "soğuk", "cozy", "sıcak"),
}

INSPIRATIONAL_LIKE_THRESHOLD = 20


def has_theme(content: ContentSummary, theme: str) -> bool:
    return contains_keywords(content.body, THEMES[theme])


def is_inspirational(content: ContentSummary) -> bool:
    return has_theme(content, "inspirational") or content.like_count > INSPIRATIONAL_LIKE_THRESHOLD


# ─────────────────────────── Boost factors ───────────────────────────────

def weather_boost(content: ContentSummary, weather: WeatherSnapshot) -> float:
    boost = 1.0
    if weather.is_camping_weather and has_theme(content, "camping"):
        boost *= 1.0 + weather.camping_score * 0.5
    if not weather.is_camping_weather and has_theme(content, "indoor"):
        boost *= 1.3

    if weather.temperature > 25 and has_theme(content, "hot_weather"):
        boost *= 1.2
    elif weather.temperature < 10 and has_theme(content, "cold_weather"):
        boost *= 1.2
    return boost


def time_boost(content: ContentSummary, timestamp: datetime) -> float:
    boost = 1.0
    hour = timestamp.hour

    if 6 <= hour <= 10 and is_inspirational(content):
        boost *= 1.2
    if 18 <= hour <= 22 and has_theme(content, "planning"):
        boost *= 1.25
    # Saturday=5, Sunday=6
    if timestamp.weekday() >= 5 and has_theme(content, "adventure"):
        boost *= 1.15

    hours_since_post = hours_between(content.created_at, timestamp)
    if hours_since_post < 24:
        boost *= 1.0 + 0.1 * math.exp(-hours_since_post / 12)
    return boost


def distance_boost(distance_km: float) -> float:
    if distance_km < 10:
        return 2.0
    if distance_km < 50:
        return 1.5
    if distance_km < 200:
        return 1.2
    return 1.0


def location_boost(content: ContentSummary, latitude: float, longitude: float) -> float:
    if content.location is None:
        return 1.0
    return distance_boost(
        haversine_km(latitude, longitude, content.location.latitude, content.location.longitude)
    )


def device_boost(content: ContentSummary, device_type: str) -> float:
    boost = 1.0
    length = len(content.body)
    if device_type == "mobile":
        if length < 200:
            boost *= 1.1
        if content.has_media:
            boost *= 1.15
    elif device_type == "desktop":
        if length > 500:
            boost *= 1.1
    return boost


def session_boost(content: ContentSummary, session_duration: timedelta) -> float:
    boost = 1.0
    minutes = session_duration.total_seconds() / 60
    if minutes > 30 and content.like_count + content.comment_count > 10:
        boost *= 1.1
    if minutes < 5 and len(content.body) < 150:
        boost *= 1.15
    return boost


def seasonal_boost(content: ContentSummary, timestamp: datetime) -> float:
    boost = 1.0
    month = timestamp.month
    if 3 <= month <= 5 and has_theme(content, "nature"):
        boost *= 1.2
    if 6 <= month <= 8 and has_theme(content, "camping"):
        boost *= 1.3
    if 9 <= month <= 11 and has_theme(content, "hiking"):
        boost *= 1.25
    if (month == 12 or month <= 2) and has_theme(content, "winter"):
        boost *= 1.2
    return boost


# ─────────────────────────── Request parsing ─────────────────────────────

def detect_device(user_agent: str) -> str:
    ua = user_agent.lower()
    if "mobile" in ua:
        return "mobile"
    if "tablet" in ua:
        return "tablet"
    return "desktop"


def is_mobile_agent(user_agent: str) -> bool:
    ua = user_agent.lower()
    return "mobile" in ua or "android" in ua or "iphone" in ua


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def parse_coordinates(lat_raw: str, lon_raw: str) -> tuple[float, float]:
    try:
        lat, lon = float(lat_raw), float(lon_raw)
    except (TypeError, ValueError) as exc:
        raise MalformedContext(f"Unparsable coordinates {lat_raw!r}, {lon_raw!r}") from exc
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise MalformedContext(f"Non-finite coordinates {lat_raw!r}, {lon_raw!r}")
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise MalformedContext(f"Coordinates out of range {lat}, {lon}")
    return lat, lon


def location_from_request(request: RequestMetadata) -> Optional[tuple[float, float]]:
    """Headers (mobile app) take precedence over query parameters (web)."""
    lat_header, lon_header = request.header("X-Latitude"), request.header("X-Longitude")
    if lat_header and lon_header:
        raw = (lat_header, lon_header)
    elif "lat" in request.query and "lon" in request.query:
        raw = (request.query["lat"], request.query["lon"])
    else:
        return None

    try:
        return parse_coordinates(*raw)
    except MalformedContext as exc:
        logger.debug("Ignoring location signal: %s", exc)
        return None


def context_fingerprint(context: UserContext) -> str:
    """
    Short stable hash of the context signals that change boost results,
    used to keep contextual feed pages apart in the cache.
    """
    ts = context.timestamp
    minutes = context.session_duration.total_seconds() / 60
    session_bucket = "short" if minutes < 5 else "long" if minutes > 30 else "mid"
    location = (
        f"{context.latitude:.1f},{context.longitude:.1f}" if context.has_location else "-"
    )
    weather = "-"
    if context.weather is not None:
        w = context.weather
        weather = f"{int(w.is_camping_weather)}:{w.camping_score:.2f}:{round(w.temperature)}"
    raw = "|".join(
        [context.device_type, location, weather, session_bucket,
         ts.strftime("%Y-%m-%d:%H")]
    )
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:12]


# ─────────────────────────── Enrichment ──────────────────────────────────

class CoarseLocationClassifier:
    """
    Placeholder until a reverse-geocoding / timezone service is wired in:
    every coordinate is an 'outdoor_area' and the UTC offset is longitude/15
    truncated toward zero.
    """

    async def classify(self, latitude: float, longitude: float) -> dict[str, Any]:
        return {
            "location_type": "outdoor_area",
            "timezone_offset": int(longitude / 15),
        }


class ContextEnricher:
    def __init__(
        self,
        cache: Cache,
        location_classifier: Optional[LocationClassifier] = None,
        weather_provider: Optional[WeatherProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._cache = cache
        self._location_classifier = location_classifier or CoarseLocationClassifier()
        self._weather_provider = weather_provider
        self._clock = clock

    async def build_context(self, user_id: str, request: RequestMetadata) -> UserContext:
        try:
            now = self._clock()
            user_agent = request.header("User-Agent")
            context = UserContext(
                timestamp=now,
                device_type=detect_device(user_agent),
                session_id=(
                    request.session_id
                    or request.header("X-Session-Id")
                    or str(uuid.uuid4())
                ),
            )

            location = location_from_request(request)
            if location is not None:
                context.latitude, context.longitude = location
                context = await self.enrich_with_location(context)

            context.session_duration = await self._session_duration(context.session_id, now)

            context.additional_data.update(
                {
                    "user_agent": user_agent,
                    "referrer": request.header("Referer"),
                    "accept_language": request.header("Accept-Language"),
                    "is_mobile": is_mobile_agent(user_agent),
                    "time_of_day": time_of_day(now.hour),
                    "day_of_week": now.strftime("%A"),
                }
            )

            logger.debug(
                "Built user context for user %s: device=%s has_location=%s has_weather=%s",
                user_id, context.device_type, context.has_location, context.weather is not None,
            )
            return context
        except Exception as exc:
            logger.error("Error building user context for user %s: %s", user_id, exc)
            return UserContext(
                timestamp=self._clock(),
                device_type="unknown",
                session_id=str(uuid.uuid4()),
            )

    async def enrich_with_location(self, context: UserContext) -> UserContext:
        if not context.has_location:
            return context

        try:
            extra = await self._location_classifier.classify(context.latitude, context.longitude)
            context.additional_data.update(extra)
        except Exception as exc:
            logger.warning("Error enriching context with location data: %s", exc)

        if self._weather_provider is not None and context.weather is None:
            try:
                context.weather = await self._weather_provider.current(
                    context.latitude, context.longitude
                )
            except Exception as exc:
                logger.warning("Weather lookup failed: %s", exc)
        return context

    async def _session_duration(self, session_id: str, now: datetime) -> timedelta:
        key = SESSION_START_KEY.format(session_id=session_id)
        marker = await self._cache.get(key)
        if marker:
            try:
                started = datetime.fromisoformat(marker)
                if started.tzinfo is None:
                    raise MalformedContext(f"Session marker without timezone: {marker!r}")
                return max(timedelta(0), now - started)
            except (TypeError, ValueError, MalformedContext) as exc:
                logger.debug("Resetting session marker for %s: %s", session_id, exc)

        await self._cache.set(key, now.isoformat(), ttl=settings.session_marker_ttl)
        return timedelta(0)

    def boost(self, content: ContentSummary, context: UserContext) -> float:
        """Contextual multiplier in [0.1, 3.0]; 1.0 when anything goes wrong."""
        try:
            boost = 1.0
            if context.weather is not None:
                boost *= weather_boost(content, context.weather)
            boost *= time_boost(content, context.timestamp)
            if context.has_location:
                boost *= location_boost(content, context.latitude, context.longitude)
            boost *= device_boost(content, context.device_type)
            boost *= session_boost(content, context.session_duration)
            boost *= seasonal_boost(content, context.timestamp)
            if not math.isfinite(boost):
                raise ValueError(f"non-finite boost {boost!r}")
            return clamp_boost(boost)
        except Exception as exc:
            logger.warning(
                "Error calculating contextual boost for post %s: %s", content.content_id, exc
            )
            CONTEXT_BOOST_ERRORS_TOTAL.inc()
            return 1.0
