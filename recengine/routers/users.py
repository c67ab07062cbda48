"""
Per-account read / refresh endpoints:
  GET  /users/{id}/similar                 — similar accounts, strongest first
  GET  /users/{id}/stats                   — read / liked / saved counts
  GET  /affinities/{id}                    — stored topic affinity vector
  GET  /affinities/{id}/authors            — stored author affinity vector
  POST /affinities/{id}/recalculate        — background full rebuild (202)
  POST /similarities/recalculate           — background similarity job (202)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from recengine.dependencies import get_engine
from recengine.engine import RecommendationEngine
from recengine.schemas import (
    Accepted,
    AffinityResponse,
    AuthorAffinityResponse,
    AuthorScoreOut,
    SimilarUsersResponse,
    TopicScoreOut,
    UserStatsResponse,
)

logger = logging.getLogger(__name__)
users_router = APIRouter()
affinities_router = APIRouter()
similarities_router = APIRouter()


@users_router.get("/{account_id}/similar", response_model=SimilarUsersResponse)
async def get_similar_users(
    account_id: int,
    limit: int = Query(10),
    engine: RecommendationEngine = Depends(get_engine),
):
    similar = await engine.get_similar_users(account_id, limit)
    return SimilarUsersResponse(account_id=account_id, similar_account_ids=similar)


@users_router.get("/{account_id}/stats", response_model=UserStatsResponse)
async def get_user_stats(account_id: int, engine: RecommendationEngine = Depends(get_engine)):
    stats = await engine.get_user_stats(account_id)
    return UserStatsResponse(account_id=account_id, **stats)


@affinities_router.get("/{account_id}", response_model=AffinityResponse)
async def get_affinities(account_id: int, engine: RecommendationEngine = Depends(get_engine)):
    vector = await engine.get_affinities(account_id)
    topics = [
        TopicScoreOut(topic_id=t, score=s)
        for t, s in sorted(vector.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    return AffinityResponse(account_id=account_id, topics=topics)


@affinities_router.get("/{account_id}/authors", response_model=AuthorAffinityResponse)
async def get_author_affinities(
    account_id: int, engine: RecommendationEngine = Depends(get_engine)
):
    vector = await engine.get_author_affinities(account_id)
    authors = [
        AuthorScoreOut(author_id=a, score=s)
        for a, s in sorted(vector.items(), key=lambda kv: (-kv[1], kv[0]))
    ]
    return AuthorAffinityResponse(account_id=account_id, authors=authors)


@affinities_router.post(
    "/{account_id}/recalculate", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED
)
async def recalculate_affinities(
    account_id: int, engine: RecommendationEngine = Depends(get_engine)
):
    await engine.recalculate_affinities(account_id)
    logger.info("Queued affinity rebuild for account %s", account_id)
    return Accepted(account_id=account_id)


@similarities_router.post(
    "/recalculate", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED
)
async def recalculate_similarities(
    account_id: Optional[int] = Query(None, description="Omit to recompute every account"),
    engine: RecommendationEngine = Depends(get_engine),
):
    engine.recalculate_similarities(account_id)
    logger.info("Queued similarity recompute for %s", account_id or "all accounts")
    return Accepted(account_id=account_id)
