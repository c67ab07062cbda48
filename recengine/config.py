"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from dataclasses import dataclass
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # ── Database (MySQL-protocol compatible) ───────────────────────────────
    database_url: str = "mysql+aiomysql://root:@tidb:4000/recengine"
    database_echo: bool = False
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_affinity_events: str = "affinity-events"
    kafka_consumer_group: str = "affinity-worker"
    # 'local' runs recompute jobs in-process, 'kafka' hands them to the worker
    dispatch_mode: Literal["local", "kafka"] = "local"

    # ── Affinity ───────────────────────────────────────────────────────────
    lookback_days: int = 90
    decay_hours: float = 168.0
    max_score: float = 100.0
    max_topics_per_user: int = 15
    noise_floor: float = 0.1

    # ── Similarity ─────────────────────────────────────────────────────────
    strong_interest_threshold: float = 0.5
    min_shared_topics: int = 2
    min_similarity: float = 0.1
    max_similar_users: int = 50
    similarity_freshness_days: int = 7

    # ── Ranking ────────────────────────────────────────────────────────────
    collaborative_window_days: int = 30
    popularity_window_days: int = 30
    hybrid_content_ratio: float = 0.6
    hybrid_buffer: int = 5
    default_limit: int = 20
    max_limit: int = 100
    recommendation_timeout_seconds: float = 2.0

    # ── Maintenance ────────────────────────────────────────────────────────
    affinity_retention_days: int = 180
    similarity_retention_days: int = 14
    maintenance_enabled: bool = True
    maintenance_interval_seconds: int = 6 * 3600
    similarity_batch_interval_seconds: int = 3600

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "recommendation-engine"
    environment: str = "development"


settings = Settings()


@dataclass(frozen=True)
class EngineParams:
    """Numeric knobs shared by the calculators and the ranking strategies."""

    lookback_days: int = 90
    decay_hours: float = 168.0
    max_score: float = 100.0
    max_topics_per_user: int = 15
    noise_floor: float = 0.1
    strong_interest_threshold: float = 0.5
    min_shared_topics: int = 2
    min_similarity: float = 0.1
    max_similar_users: int = 50
    similarity_freshness_days: int = 7
    collaborative_window_days: int = 30
    popularity_window_days: int = 30
    hybrid_content_ratio: float = 0.6
    hybrid_buffer: int = 5
    affinity_retention_days: int = 180
    similarity_retention_days: int = 14

    @classmethod
    def from_settings(cls, s: Settings) -> "EngineParams":
        return cls(
            lookback_days=s.lookback_days,
            decay_hours=s.decay_hours,
            max_score=s.max_score,
            max_topics_per_user=s.max_topics_per_user,
            noise_floor=s.noise_floor,
            strong_interest_threshold=s.strong_interest_threshold,
            min_shared_topics=s.min_shared_topics,
            min_similarity=s.min_similarity,
            max_similar_users=s.max_similar_users,
            similarity_freshness_days=s.similarity_freshness_days,
            collaborative_window_days=s.collaborative_window_days,
            popularity_window_days=s.popularity_window_days,
            hybrid_content_ratio=s.hybrid_content_ratio,
            hybrid_buffer=s.hybrid_buffer,
            affinity_retention_days=s.affinity_retention_days,
            similarity_retention_days=s.similarity_retention_days,
        )
