"""
Recommendation retrieval — GET /recommendations?account_id=<id>&strategy=<s>

Strategies: content | collaborative | hybrid | popularity | hybridWithFallback
            | author | topics.

Repeat ``kind`` to restrict candidates to those publication kinds. The
``topics`` strategy needs at least one ``topic`` and answers 422 without one.
Out-of-range limit / offset are clamped rather than rejected. The response
never 5xx's on a ranking failure: the engine answers from popularity and sets
``fallback=true``.
"""
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace

from recengine.config import settings
from recengine.dependencies import get_engine
from recengine.engine import RecommendationEngine, Strategy
from recengine.models import PublicationKind
from recengine.schemas import RecommendationResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.get("/", response_model=RecommendationResponse)
async def get_recommendations(
    account_id: int = Query(..., description="ID of the requesting account"),
    strategy: Strategy = Query(Strategy.HYBRID_WITH_FALLBACK),
    limit: int = Query(settings.default_limit),
    offset: int = Query(0),
    kind: Optional[list[PublicationKind]] = Query(None, description="Publication kinds to keep"),
    topic: Optional[list[int]] = Query(None, description="Topic ids for the topics strategy"),
    engine: RecommendationEngine = Depends(get_engine),
):
    if strategy is Strategy.TOPICS and not topic:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="strategy=topics needs at least one topic",
        )
    start_time = time.time()

    with tracer.start_as_current_span("get_recommendations") as span:
        span.set_attribute("account.id", account_id)
        span.set_attribute("recommendation.strategy", strategy.value)

        result = await engine.get_recommendations(
            account_id, strategy, limit, offset, kinds=kind, topic_ids=topic
        )

        latency_ms = (time.time() - start_time) * 1000
        span.set_attribute("recommendation.count", len(result.pub_ids))
        span.set_attribute("recommendation.fallback", result.fallback)

        return RecommendationResponse(
            account_id=account_id,
            strategy=result.strategy,
            pub_ids=result.pub_ids,
            fallback=result.fallback,
            latency_ms=round(latency_ms, 2),
        )
