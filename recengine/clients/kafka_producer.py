"""
Async Kafka producer for affinity events.

Used when ``dispatch_mode == "kafka"``: instead of running recompute jobs in
the API process, the API publishes an event and the affinity worker consumes
it.

  affinity-events  — { kind: "interaction" | "recalculate",
                       account_id: int, pub_id: int | null }

Messages are keyed by account id so one partition sees every event for an
account in order.
"""
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer

from recengine.config import settings

logger = logging.getLogger(__name__)


class AffinityEventPublisher:
    def __init__(self, topic: Optional[str] = None) -> None:
        self.topic = topic or settings.kafka_topic_affinity_events
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            key_serializer=lambda k: str(k).encode("utf-8"),
            value_serializer=lambda v: json.dumps(v).encode("utf-8"),
            acks="all",          # wait for all in-sync replicas
            enable_idempotence=True,
        )
        await self._producer.start()
        logger.info("Kafka producer started → %s", settings.kafka_bootstrap_servers)

    async def stop(self) -> None:
        if self._producer:
            await self._producer.stop()

    async def publish(self, event: dict) -> None:
        if self._producer is None:
            raise RuntimeError("Kafka producer not initialised — call start() first")
        await self._producer.send_and_wait(self.topic, event, key=event["account_id"])
        logger.debug(
            "Published %s event for account_id=%s", event["kind"], event["account_id"]
        )
