"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for recompute jobs, ranking latency and fallbacks

Both are initialised once at startup. The API mounts /metrics; the worker
process only exports traces.
"""
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram

from recengine.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
RECOMMENDATION_LATENCY = Histogram(
    "recengine_recommendation_latency_seconds",
    "Latency of a getRecommendations call, per requested strategy",
    ["strategy"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

RECOMMENDATION_FALLBACKS_TOTAL = Counter(
    "recengine_recommendation_fallbacks_total",
    "Requests answered by the popularity strategy instead of the requested one",
    ["reason"],  # 'timeout' | 'error'
)

AFFINITY_UPDATES_TOTAL = Counter(
    "recengine_affinity_updates_total",
    "Affinity cache writes",
    ["mode"],  # 'rebuild' | 'refresh'
)

SIMILARITY_ROWS_WRITTEN_TOTAL = Counter(
    "recengine_similarity_rows_written_total",
    "User similarity edges written",
)

JOB_FAILURES_TOTAL = Counter(
    "recengine_job_failures_total",
    "Background per-account jobs that raised",
    ["job"],
)

ROWS_PURGED_TOTAL = Counter(
    "recengine_rows_purged_total",
    "Rows deleted by maintenance cleanup",
    ["table"],
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(service_name: str | None = None) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": service_name or settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)


def instrument_engine(engine) -> None:  # noqa: ANN001
    """Emit a span per SQL statement issued through ``engine``."""
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
