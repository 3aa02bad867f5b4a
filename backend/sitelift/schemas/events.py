"""Analytics event intake schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class EventIn(BaseModel):
    """One tracked interaction from a restaurant website."""

    restaurant_id: str = Field(..., min_length=1, max_length=100, alias="restaurantId")
    session_id: str = Field(..., min_length=1, max_length=100, alias="sessionId")
    variant_id: Optional[str] = Field(None, max_length=36, alias="variantId")
    event_type: str = Field(..., min_length=1, max_length=50, alias="eventType")
    event_data: Optional[Dict[str, Any]] = Field(None, alias="eventData")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "restaurantId": "rest_123",
                "sessionId": "sess_abc",
                "variantId": "123e4567-e89b-12d3-a456-426614174000",
                "eventType": "order",
                "eventData": {"total": 42.5}
            }
        }


class EventBatch(BaseModel):
    """A batch of tracked interactions."""

    events: List[EventIn] = Field(..., min_length=1, max_length=500)


class EventResponse(BaseModel):
    """Response after recording events."""

    success: bool = True
    count: int
