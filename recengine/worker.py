"""
Affinity Worker — Kafka consumer.

For every 'affinity-events' message:
  • interaction  → refresh the topics and authors of one publication for the
                   account (and rebuild if the account overflowed its cap)
  • recalculate  → full rebuild of the account's vectors

Jobs go through the same per-account-locked JobRunner the API uses in local
mode. Each message is awaited until its job has finished and only then is
its offset committed (auto-commit is off), so a crash mid-job redelivers the
event and the consumer never runs ahead of the jobs it has accepted. Refresh
is an upsert keyed by (account, key), so at-least-once redelivery is harmless.

The worker also owns the maintenance schedule when the API runs with
``maintenance_enabled=false``.

Run:
  python -m recengine.worker
"""
import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace

from recengine.config import EngineParams, settings
from recengine.database import AsyncSessionLocal, engine as db_engine, init_db
from recengine.engine import RecommendationEngine
from recengine.telemetry import instrument_engine, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)


async def process_message(msg: dict, engine: RecommendationEngine) -> None:
    with tracer.start_as_current_span("affinity_event") as span:
        span.set_attribute("event.kind", str(msg.get("kind")))
        span.set_attribute("account.id", str(msg.get("account_id")))
        task = engine.handle_event(msg)
        if task is not None:
            await task


async def consume(consumer, engine: RecommendationEngine) -> None:
    async for msg in consumer:
        try:
            await process_message(msg.value, engine)
        except Exception as exc:
            logger.error("Affinity event error for %s: %s", msg.value, exc)
        await consumer.commit()


async def main() -> None:
    setup_tracing(service_name="affinity-worker")
    instrument_engine(db_engine)
    await init_db()

    engine = RecommendationEngine(
        AsyncSessionLocal,
        params=EngineParams.from_settings(settings),
        max_limit=settings.max_limit,
    )

    scheduler = None
    if not settings.maintenance_enabled:
        scheduler = engine.maintenance_scheduler(
            settings.maintenance_interval_seconds,
            settings.similarity_batch_interval_seconds,
        )
        scheduler.start()

    consumer = AIOKafkaConsumer(
        settings.kafka_topic_affinity_events,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    logger.info(
        "Affinity worker listening on topic '%s'", settings.kafka_topic_affinity_events
    )

    try:
        await consume(consumer, engine)
    finally:
        await consumer.stop()
        if scheduler is not None:
            await scheduler.stop()
        await engine.runner.drain()
        await db_engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
