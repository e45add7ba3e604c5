import json

import httpx
import pytest

from contextfeed.clients.ranking_client import HeuristicPredictor, RankingClient
from contextfeed.exceptions import UpstreamUnavailable


async def start_client(handler) -> RankingClient:
    client = RankingClient(base_url="http://ranking")
    await client.start(transport=httpx.MockTransport(handler))
    return client


async def test_predict_returns_single_score():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"scores": [{"post_id": "candidate", "score": 0.42}]})

    client = await start_client(handler)
    try:
        score = await client.predict({"follower_count": 3.0}, {"like_count": 1.0})
    finally:
        await client.stop()

    assert score == pytest.approx(0.42)
    assert seen[0]["user_features"] == {"follower_count": 3.0}
    assert seen[0]["candidates"][0]["post_features"] == {"like_count": 1.0}


async def test_predict_clamps():
    client = await start_client(
        lambda request: httpx.Response(200, json={"scores": [{"score": 1.7}]})
    )
    try:
        assert await client.predict({}, {}) == 1.0
    finally:
        await client.stop()


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(200, json={"scores": []}),
        httpx.Response(200, json={"scores": [{"score": "NaN"}]}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_predict_failures_are_upstream_unavailable(response):
    client = await start_client(lambda request: response)
    try:
        with pytest.raises(UpstreamUnavailable):
            await client.predict({}, {})
    finally:
        await client.stop()


async def test_heuristic_predictor_range_and_order():
    predictor = HeuristicPredictor()
    user = {"avg_engagement_rate": 0.4}

    cold = await predictor.predict(user, {})
    hot = await predictor.predict(
        user, {"like_count": 90.0, "comment_count": 10.0, "has_media": 1.0,
               "author_follower_count": 900.0}
    )

    assert cold == pytest.approx(0.1)
    assert 0.0 <= cold < hot <= 1.0
