"""
Interaction recording endpoints:
  POST   /interactions        — append a VIEW / LIKE / SAVE
  DELETE /interactions/saves  — remove a publication from the default collection

Both return 202: the write to the interaction log is synchronous, the
affinity refresh it triggers runs in the background.
"""
import logging

from fastapi import APIRouter, Depends, Query, status
from opentelemetry import trace

from recengine.dependencies import get_engine
from recengine.engine import RecommendationEngine
from recengine.schemas import Accepted, InteractionCreate

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def record_interaction(
    body: InteractionCreate,
    engine: RecommendationEngine = Depends(get_engine),
):
    with tracer.start_as_current_span("record_interaction") as span:
        span.set_attribute("account.id", body.account_id)
        span.set_attribute("publication.id", body.pub_id)
        span.set_attribute("interaction.type", body.type.value)

        await engine.record_interaction(body.account_id, body.pub_id, body.type, body.occurred_at)
        logger.info(
            "Recorded %s of pub %s by account %s", body.type.value, body.pub_id, body.account_id
        )
        return Accepted(account_id=body.account_id)


@router.delete("/saves", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
async def remove_save(
    account_id: int = Query(...),
    pub_id: int = Query(...),
    engine: RecommendationEngine = Depends(get_engine),
):
    removed = await engine.remove_save(account_id, pub_id)
    if not removed:
        # Nothing was saved; still idempotent from the caller's point of view
        logger.debug("Account %s had not saved pub %s", account_id, pub_id)
    return Accepted(account_id=account_id)
