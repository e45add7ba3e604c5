"""
Engagement predictors.

RankingClient calls the ranking service (Triton / Deep FM in production, a
lightweight FastAPI mock in development) for a single (user, post) pair.
Failures surface as UpstreamUnavailable; the ranker drops that candidate.

HeuristicPredictor is a local, deterministic stand-in built from the same
features, selected with ENGAGEMENT_PREDICTOR=heuristic.
"""
import logging
import math
from typing import Optional

import httpx

from contextfeed.config import settings
from contextfeed.exceptions import UpstreamUnavailable
from contextfeed.ranking.scoring import clamp
from contextfeed.schemas import FeatureVector

logger = logging.getLogger(__name__)


class RankingClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self._base_url = base_url or settings.ranking_service_url
        self._timeout = timeout or settings.ranking_timeout_seconds
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._http = httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=transport
        )

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()

    async def predict(
        self,
        user_features: FeatureVector,
        content_features: FeatureVector,
    ) -> float:
        """
        Request body:
          { "user_features": {...}, "candidates": [{ "post_id", "post_features" }] }

        Response:
          { "scores": [{ "post_id", "score" }] }
        """
        if self._http is None:
            raise UpstreamUnavailable("Ranking client not started")

        payload = {
            "user_features": user_features,
            "candidates": [{"post_id": "candidate", "post_features": content_features}],
        }
        try:
            resp = await self._http.post("/rank", json=payload)
            resp.raise_for_status()
            score = float(resp.json()["scores"][0]["score"])
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"Ranking service unavailable: {exc}") from exc

        if not math.isfinite(score):
            raise UpstreamUnavailable(f"Ranking service returned non-finite score {score}")
        return clamp(score, 0.0, 1.0)


class HeuristicPredictor:
    """
    pEngage = 0.45 * popularity      (likes + comments, logistic squeeze)
            + 0.15 * media_bonus
            + 0.25 * user_affinity   (avg_engagement_rate, default 0.5)
            + 0.15 * reach           (author followers, logistic squeeze)

    No time feature: the ranker applies its own decay.
    """

    async def predict(
        self,
        user_features: FeatureVector,
        content_features: FeatureVector,
    ) -> float:
        interactions = content_features.get("like_count", 0.0) + content_features.get(
            "comment_count", 0.0
        )
        popularity = interactions / (interactions + 10) if interactions > 0 else 0.0
        media_bonus = 1.0 if content_features.get("has_media", 0.0) else 0.0
        affinity = clamp(user_features.get("avg_engagement_rate", 0.5), 0.0, 1.0)
        followers = content_features.get("author_follower_count", 0.0)
        reach = followers / (followers + 100) if followers > 0 else 0.0

        score = 0.45 * popularity + 0.15 * media_bonus + 0.25 * affinity + 0.15 * reach
        return round(clamp(score, 0.0, 1.0), 4)
