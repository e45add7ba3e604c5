"""
Async Kafka producer for feed events.

Publishes two event types:
  interactions     — like / comment / view / share / save on a post.
                     Consumed by: feature pipelines (engagement counters,
                     user→author affinity) and analytics.
  profile-refresh  — request to recompute a user's interest profile.
                     Consumed by: embedding-worker.
"""
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer

from contextfeed.config import settings
from contextfeed.schemas import InteractionEvent

logger = logging.getLogger(__name__)

TOPIC_PROFILE_REFRESH = "profile-refresh"


class FeedEventPublisher:
    def __init__(self, bootstrap_servers: Optional[str] = None) -> None:
        self._bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            acks="all",          # wait for all in-sync replicas
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info("Kafka producer started → %s", self._bootstrap_servers)

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()

    def _get_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise RuntimeError("Kafka producer not initialised")
        return self._producer

    async def publish_interaction(self, event: InteractionEvent) -> None:
        """
        Schema:
          { user_id, content_id, interaction_type, duration_seconds, occurred_at }

        Keyed by user_id so a user's events stay ordered within a partition.
        """
        producer = self._get_producer()
        await producer.send_and_wait(
            settings.kafka_topic_interactions,
            event.model_dump(mode="json"),
            key=event.user_id.encode("utf-8"),
        )
        logger.debug(
            "Published %s interaction for user_id=%s content_id=%s",
            event.interaction_type, event.user_id, event.content_id,
        )

    async def request_profile_refresh(self, user_id: str) -> None:
        producer = self._get_producer()
        await producer.send(TOPIC_PROFILE_REFRESH, {"user_id": user_id})
        logger.debug("Requested interest profile refresh for user_id=%s", user_id)
