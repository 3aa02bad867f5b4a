"""Experiment and queue response schemas."""
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime


class VariantOut(BaseModel):
    """One arm of an experiment with its latest stats."""

    id: str
    name: str
    is_control: bool
    change_description: Optional[str] = None
    visitors: int
    conversions: int
    revenue: float
    traffic_allocation: float
    conversion_rate: float
    revenue_per_visitor: float

    class Config:
        from_attributes = True


class ExperimentOut(BaseModel):
    """Experiment with both variants."""

    id: str
    restaurant_id: str
    hypothesis: str
    change_type: Optional[str] = None
    status: str
    winning_variant_id: Optional[str] = None
    pause_reason: Optional[str] = None
    baseline_conversion_rate: Optional[float] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    variants: List[VariantOut] = []

    class Config:
        from_attributes = True


class QueueItemOut(BaseModel):
    """A hypothesis waiting to become an experiment."""

    id: str
    hypothesis: str
    change_type: Optional[str] = None
    variant_prompt: Optional[str] = None
    variant_description: Optional[str] = None
    priority: int
    source: str
    created_at: datetime

    class Config:
        from_attributes = True


class ExperimentDeleteResponse(BaseModel):
    """Result of cancelling an experiment."""

    success: bool = True
    experiment_id: str
    reverted: bool
