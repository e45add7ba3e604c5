"""
Feast Feature Server client — the FeatureProvider used by the ranker.

The Feast feature server (port 6566) exposes:
  POST /get-online-features

Request format:
  {
    "features": ["user_stats:follower_count", ...],
    "entities": { "user_id": [uid] }
  }

Response (column-oriented):
  {
    "metadata": { "feature_names": ["user_id", "follower_count", ...] },
    "results":  [ { "values": [...], "statuses": [...] }, ... ]   # one entry per column
  }

This client:
  1. Fetches one entity row per call (user or post) and keeps finite numeric
     values only — JSON-encoded vectors are split off for similarity.
  2. Computes content↔content similarity locally (cosine of embeddings).
  3. Raises UpstreamUnavailable on any HTTP / connection / payload error so the
     ranker can drop the affected candidate.
"""
import json
import logging
from typing import Optional

import httpx
import numpy as np

from contextfeed.config import settings
from contextfeed.exceptions import UpstreamUnavailable
from contextfeed.ranking.scoring import ensure_finite
from contextfeed.schemas import FeatureVector

logger = logging.getLogger(__name__)

USER_FEATURES = [
    "user_stats:follower_count",
    "user_stats:following_count",
    "user_stats:total_posts",
    "user_stats:avg_engagement_rate",
]

POST_FEATURES = [
    "post_stats:like_count",
    "post_stats:comment_count",
    "post_stats:has_media",
    "post_stats:content_length",
    "post_stats:author_follower_count",
    "post_stats:created_at_ts",
]

_ENTITY_KEYS = {"post": "post_id"}


def _parse_vector(json_str: str | None) -> np.ndarray:
    """Decode a JSON-encoded float list; return empty array on failure."""
    try:
        return np.array(json.loads(json_str or "[]"), dtype=np.float32)
    except (TypeError, ValueError):
        return np.array([], dtype=np.float32)


def _cosine_sim(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity in [−1, 1]; returns 0.0 if either vector is empty."""
    if a.size == 0 or b.size == 0 or a.size != b.size:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    return float(np.dot(a, b) / norm) if norm > 0.0 else 0.0


def _parse_response(data: dict, n_rows: int) -> list[dict]:
    """
    Convert Feast's column-oriented response into a list of row dicts.
    Column names are normalised to the bare feature name.
    """
    feature_names: list[str] = data["metadata"]["feature_names"]
    results: list[dict] = data["results"]
    rows: list[dict] = [{} for _ in range(n_rows)]
    for col_idx, fname in enumerate(feature_names):
        key = fname.split("__")[-1].split(":")[-1]
        values = results[col_idx].get("values", [])
        for row_idx in range(n_rows):
            rows[row_idx][key] = values[row_idx] if row_idx < len(values) else None
    return rows


class FeastClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self._base_url = base_url or settings.feast_server_url
        self._timeout = timeout or settings.feast_timeout_seconds
        self._http: Optional[httpx.AsyncClient] = None

    async def start(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=transport,
        )

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()

    async def _fetch_rows(self, features: list[str], entities: dict[str, list[str]]) -> list[dict]:
        if self._http is None:
            raise UpstreamUnavailable("Feast client not started")
        n_rows = len(next(iter(entities.values())))
        try:
            resp = await self._http.post(
                "/get-online-features",
                json={"features": features, "entities": entities},
            )
            resp.raise_for_status()
            return _parse_response(resp.json(), n_rows)
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise UpstreamUnavailable(f"Feast lookup failed: {exc}") from exc

    async def extract_user_features(self, user_id: str) -> FeatureVector:
        rows = await self._fetch_rows(USER_FEATURES, {"user_id": [user_id]})
        return ensure_finite(rows[0])

    async def extract_content_features(
        self, content_id: str, content_type: str = "post"
    ) -> FeatureVector:
        entity_key = _ENTITY_KEYS.get(content_type)
        if entity_key is None:
            raise ValueError(f"Unsupported content type: {content_type}")
        rows = await self._fetch_rows(POST_FEATURES, {entity_key: [content_id]})
        return ensure_finite(rows[0])

    async def calculate_similarity(self, id_a: str, id_b: str) -> dict[str, float]:
        """
        Similarity metrics in [0, 1]:
          embedding — cosine of content embeddings, shifted from [−1, 1]
          length    — 1 − relative difference in content length
          overall   — 0.8 * embedding + 0.2 * length
        """
        rows = await self._fetch_rows(
            ["post_stats:embedding_json", "post_stats:content_length"],
            {"post_id": [id_a, id_b]},
        )
        a, b = rows
        cosine = _cosine_sim(
            _parse_vector(a.get("embedding_json")),
            _parse_vector(b.get("embedding_json")),
        )
        embedding = min(1.0, max(0.0, (cosine + 1.0) / 2.0))

        len_a = float(a.get("content_length") or 0)
        len_b = float(b.get("content_length") or 0)
        longest = max(len_a, len_b)
        length = 1.0 - abs(len_a - len_b) / longest if longest > 0 else 1.0

        return {
            "embedding": embedding,
            "length": length,
            "overall": 0.8 * embedding + 0.2 * length,
        }
