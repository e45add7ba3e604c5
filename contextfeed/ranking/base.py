from typing import Any, Optional, Protocol, TypeVar

from pydantic import BaseModel

from contextfeed.schemas import FeatureVector, InteractionEvent, WeatherSnapshot

M = TypeVar("M", bound=BaseModel)


class FeatureProvider(Protocol):
    async def extract_user_features(self, user_id: str) -> FeatureVector:
        ...

    async def extract_content_features(
        self, content_id: str, content_type: str = "post"
    ) -> FeatureVector:
        ...

    async def calculate_similarity(self, id_a: str, id_b: str) -> dict[str, float]:
        """
        Named similarity metrics between two content items, each in [0, 1].
        Implementations include an 'overall' entry.
        """
        ...


class EngagementPredictor(Protocol):
    async def predict(
        self, user_features: FeatureVector, content_features: FeatureVector
    ) -> float:
        """Engagement probability in [0, 1]."""
        ...


class Cache(Protocol):
    async def get(self, key: str, model: Optional[type[M]] = None) -> Any:
        ...

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    async def remove(self, key: str) -> bool:
        ...

    async def remove_by_pattern(self, pattern: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...


class LocationClassifier(Protocol):
    async def classify(self, latitude: float, longitude: float) -> dict[str, Any]:
        """Extra context keys for a coordinate (location_type, timezone_offset)."""
        ...


class WeatherProvider(Protocol):
    async def current(self, latitude: float, longitude: float) -> Optional[WeatherSnapshot]:
        ...


class EventPublisher(Protocol):
    async def publish_interaction(self, event: InteractionEvent) -> None:
        ...

    async def request_profile_refresh(self, user_id: str) -> None:
        ...
