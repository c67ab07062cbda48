"""
Recommendation Engine API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Create engine-owned tables if not present
  3. Build the engine (affinity cache, similarity, ranking, job runner)
  4. Start the Kafka producer when dispatch_mode == "kafka"
  5. Start the maintenance scheduler (cleanup + similarity batch)
  6. Expose Prometheus /metrics endpoint

Run:
  uvicorn recengine.main:app --port 8000
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from recengine.clients.kafka_producer import AffinityEventPublisher
from recengine.config import EngineParams, settings
from recengine.database import AsyncSessionLocal, engine as db_engine, init_db
from recengine.engine import RecommendationEngine
from recengine.routers import interactions, maintenance, recommendations, users
from recengine.telemetry import instrument_app, instrument_engine, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def build_engine(publisher: AffinityEventPublisher | None = None) -> RecommendationEngine:
    return RecommendationEngine(
        AsyncSessionLocal,
        params=EngineParams.from_settings(settings),
        publisher=publisher,
        timeout=settings.recommendation_timeout_seconds,
        max_limit=settings.max_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of the database, Kafka and background jobs."""
    logger.info(
        "Starting Recommendation Engine (env=%s, dispatch=%s)",
        settings.environment, settings.dispatch_mode,
    )
    setup_tracing()
    instrument_engine(db_engine)
    await init_db()

    publisher = None
    if settings.dispatch_mode == "kafka":
        publisher = AffinityEventPublisher()
        await publisher.start()

    engine = build_engine(publisher)
    app.state.engine = engine

    scheduler = None
    if settings.maintenance_enabled:
        scheduler = engine.maintenance_scheduler(
            settings.maintenance_interval_seconds,
            settings.similarity_batch_interval_seconds,
        )
        scheduler.start()

    logger.info("Engine ready.")
    yield

    logger.info("Shutting down...")
    if scheduler is not None:
        await scheduler.stop()
    await engine.runner.drain()
    if publisher is not None:
        await publisher.stop()
    await db_engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Recommendation Engine",
        description=(
            "Topic affinity, user similarity and ranked publication "
            "recommendations over an interaction log."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(interactions.router, prefix="/interactions", tags=["Interactions"])
    app.include_router(
        recommendations.router, prefix="/recommendations", tags=["Recommendations"]
    )
    app.include_router(users.users_router, prefix="/users", tags=["Users"])
    app.include_router(users.affinities_router, prefix="/affinities", tags=["Affinities"])
    app.include_router(
        users.similarities_router, prefix="/similarities", tags=["Similarities"]
    )
    app.include_router(maintenance.router, prefix="/maintenance", tags=["Maintenance"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    app.mount("/metrics", make_asgi_app())

    # ── OTel FastAPI instrumentation ──────────────────────────────────────
    instrument_app(app)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
