"""Optimizer operator request schemas."""
from pydantic import BaseModel, Field


class ToggleRequest(BaseModel):
    """Enable or disable the optimizer for a restaurant."""

    enabled: bool = Field(..., description="Whether scheduled optimization runs")

    class Config:
        json_schema_extra = {"example": {"enabled": True}}


class ToggleResponse(BaseModel):
    """Optimizer state after a toggle."""

    restaurant_id: str
    enabled: bool
