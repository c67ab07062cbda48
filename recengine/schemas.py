"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from recengine.engine import Strategy
from recengine.scoring import InteractionType


# ──────────────────────────── Interactions ────────────────────────────────

class InteractionCreate(BaseModel):
    account_id: int
    pub_id: int
    type: InteractionType
    # Defaults to "now"; backfills may pass an explicit timestamp
    occurred_at: Optional[datetime] = None


class Accepted(BaseModel):
    status: str = "accepted"
    account_id: Optional[int] = None


# ──────────────────────────── Affinities ──────────────────────────────────

class TopicScoreOut(BaseModel):
    topic_id: int
    score: float


class AffinityResponse(BaseModel):
    account_id: int
    topics: list[TopicScoreOut]


class AuthorScoreOut(BaseModel):
    author_id: int
    score: float


class AuthorAffinityResponse(BaseModel):
    account_id: int
    authors: list[AuthorScoreOut]


# ──────────────────────────── Recommendations ─────────────────────────────

class RecommendationResponse(BaseModel):
    account_id: int
    strategy: Strategy
    pub_ids: list[int]
    # True when the requested strategy failed / timed out and popularity answered
    fallback: bool
    latency_ms: float


class SimilarUsersResponse(BaseModel):
    account_id: int
    similar_account_ids: list[int]


class UserStatsResponse(BaseModel):
    account_id: int
    read: int
    liked: int
    saved: int


# ──────────────────────────── Maintenance ─────────────────────────────────

class CleanupResponse(BaseModel):
    affinity_rows: int
    similarity_rows: int
