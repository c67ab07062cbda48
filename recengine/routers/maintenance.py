"""
POST /maintenance/cleanup — purge stale affinity and similarity rows now,
outside the scheduler's cadence.
"""
import logging

from fastapi import APIRouter, Depends

from recengine.dependencies import get_engine
from recengine.engine import RecommendationEngine
from recengine.schemas import CleanupResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup(engine: RecommendationEngine = Depends(get_engine)):
    purged = await engine.run_cleanup()
    return CleanupResponse(**purged)
