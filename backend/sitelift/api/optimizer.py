"""Optimizer operator endpoints: status, toggle, manual run and manual hypotheses."""
import asyncio
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from sitelift.database import get_db
from sitelift.middleware.auth import require_admin_key
from sitelift.middleware.logging import get_logger
from sitelift.models import QueueSource
from sitelift.schemas.experiments import QueueItemOut
from sitelift.schemas.hypothesis import HypothesisCandidate
from sitelift.schemas.optimizer import ToggleRequest, ToggleResponse
from sitelift.services.errors import TransientExternalError
from sitelift.services.optimizer import ABOptimizer, build_optimizer
from sitelift.services.store import ExperimentStore

router = APIRouter(prefix="/optimizer", dependencies=[Depends(require_admin_key)])
logger = get_logger()


def get_optimizer(db: Session = Depends(get_db)) -> ABOptimizer:
    """Optimizer bound to the request's database session."""
    return build_optimizer(db)


@router.get("/{restaurant_id}")
def get_optimizer_status(restaurant_id: str, optimizer: ABOptimizer = Depends(get_optimizer)):
    """Enabled flag, counters, queue depth and the running experiment if any."""
    return optimizer.get_status(restaurant_id)


@router.post("/{restaurant_id}/toggle", response_model=ToggleResponse)
def toggle_optimizer(restaurant_id: str, request: ToggleRequest, db: Session = Depends(get_db)):
    state = ExperimentStore(db).set_enabled(restaurant_id, request.enabled)
    logger.info("optimizer_toggled", enabled=state.enabled)
    return ToggleResponse(restaurant_id=restaurant_id, enabled=state.enabled)


@router.post("/{restaurant_id}/run")
async def run_optimizer(restaurant_id: str, optimizer: ABOptimizer = Depends(get_optimizer)):
    """
    Run one optimization pass now, even if the optimizer is disabled.

    The enabled flag is left as it was.
    """
    try:
        result = await optimizer.optimize(restaurant_id, force=True)
    except TransientExternalError as e:
        logger.warning("manual_run_failed", error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    except asyncio.TimeoutError:
        logger.warning("manual_run_failed", error="timeout")
        raise HTTPException(status_code=504, detail="External service timed out")

    if result.get("conflict"):
        raise HTTPException(status_code=409, detail=result["error"])
    return result


@router.get("/{restaurant_id}/queue", response_model=List[QueueItemOut])
def get_queue(restaurant_id: str, limit: int = 10, db: Session = Depends(get_db)):
    return ExperimentStore(db).get_queue(restaurant_id, limit=min(max(limit, 1), 100))


@router.post("/{restaurant_id}/queue", response_model=QueueItemOut, status_code=201)
def queue_hypothesis(restaurant_id: str, candidate: HypothesisCandidate, db: Session = Depends(get_db)):
    """Queue an operator-written hypothesis ahead of the next experiment slot."""
    item = ExperimentStore(db).add_to_queue(restaurant_id, candidate, QueueSource.MANUAL)
    logger.info("hypothesis_queued", queue_item_id=item.id, source="manual", priority=item.priority)
    return item
