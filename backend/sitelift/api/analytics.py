"""Analytics endpoints: event intake from restaurant sites and traffic summaries."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Union

from sitelift.database import get_db
from sitelift.middleware.auth import require_admin_key
from sitelift.middleware.logging import get_logger
from sitelift.schemas.events import EventBatch, EventIn, EventResponse
from sitelift.services.metrics import MetricsProvider
from sitelift.services.optimizer import ABOptimizer
from sitelift.api.optimizer import get_optimizer

router = APIRouter()
logger = get_logger()


@router.post("/events", response_model=EventResponse)
def record_events(payload: Union[EventBatch, EventIn], db: Session = Depends(get_db)):
    """
    Record one event or a batch.

    Called by the tracking snippet on restaurant websites, so no API key.
    """
    events = payload.events if isinstance(payload, EventBatch) else [payload]

    metrics = MetricsProvider(db)
    for event in events:
        metrics.record_event(
            restaurant_id=event.restaurant_id,
            session_id=event.session_id,
            event_type=event.event_type,
            variant_id=event.variant_id,
            event_data=event.event_data
        )
    db.commit()

    return EventResponse(success=True, count=len(events))


@router.get("/analytics/{restaurant_id}", dependencies=[Depends(require_admin_key)])
def get_analytics(
    restaurant_id: str,
    days: int = Query(14, ge=1, le=365),
    optimizer: ABOptimizer = Depends(get_optimizer)
):
    """Traffic and funnel summary for the trailing window."""
    return optimizer.get_analytics(restaurant_id, days=days)
