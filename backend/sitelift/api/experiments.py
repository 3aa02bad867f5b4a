"""Experiment history endpoints: list, inspect and cancel."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from sitelift.api.optimizer import get_optimizer
from sitelift.database import get_db
from sitelift.middleware.auth import require_admin_key
from sitelift.middleware.logging import get_logger
from sitelift.models import Experiment, ExperimentStatus
from sitelift.schemas.experiments import ExperimentDeleteResponse, ExperimentOut
from sitelift.services.optimizer import ABOptimizer
from sitelift.services.store import ExperimentStore

router = APIRouter(prefix="/experiments", dependencies=[Depends(require_admin_key)])
logger = get_logger()


def _get_owned_experiment(store: ExperimentStore, restaurant_id: str, experiment_id: str) -> Experiment:
    experiment = store.get_experiment(experiment_id)
    if experiment is None or experiment.restaurant_id != restaurant_id:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return experiment


@router.get("/{restaurant_id}", response_model=List[ExperimentOut])
def list_experiments(
    restaurant_id: str,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Experiments for a restaurant, newest first, with their variants."""
    if status is not None and status not in {s.value for s in ExperimentStatus}:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

    return ExperimentStore(db).list_experiments(restaurant_id, status=status, limit=limit, offset=offset)


@router.get("/{restaurant_id}/{experiment_id}", response_model=ExperimentOut)
def get_experiment(restaurant_id: str, experiment_id: str, db: Session = Depends(get_db)):
    return _get_owned_experiment(ExperimentStore(db), restaurant_id, experiment_id)


@router.delete("/{restaurant_id}/{experiment_id}", response_model=ExperimentDeleteResponse)
async def delete_experiment(
    restaurant_id: str,
    experiment_id: str,
    optimizer: ABOptimizer = Depends(get_optimizer)
):
    """
    Cancel an experiment.

    A running experiment is reverted to control first, so its treatment
    artifacts are removed before the rows go.
    """
    experiment = _get_owned_experiment(optimizer.store, restaurant_id, experiment_id)

    reverted = False
    if experiment.status == ExperimentStatus.RUNNING.value:
        reverted = await optimizer.revert_to_control(restaurant_id, experiment)

    optimizer.store.delete_experiment(experiment_id)
    logger.info("experiment_deleted", experiment_id=experiment_id, reverted=reverted)
    return ExperimentDeleteResponse(experiment_id=experiment_id, reverted=reverted)
