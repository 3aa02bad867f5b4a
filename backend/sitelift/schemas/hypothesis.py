"""Hypothesis candidate schema, validated at the language-model boundary."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional

from sitelift.models.experiment import ChangeType


class HypothesisCandidate(BaseModel):
    """A candidate experiment proposed by the hypothesis source or an operator."""

    hypothesis: str = Field(..., min_length=1, max_length=2000)
    change_type: ChangeType = Field(..., alias="changeType")
    variant_prompt: str = Field(..., min_length=1, max_length=4000, alias="variantPrompt")
    variant_description: Optional[str] = Field(None, max_length=1000, alias="variantDescription")
    priority: int = Field(5, description="1 (lowest) to 10 (highest)")

    @field_validator("change_type", mode="before")
    @classmethod
    def normalize_change_type(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority(cls, v):
        if v is None:
            return 5
        try:
            value = int(round(float(v)))
        except (TypeError, ValueError):
            raise ValueError("priority must be a number")
        return min(10, max(1, value))

    class Config:
        populate_by_name = True
        str_strip_whitespace = True
        json_schema_extra = {
            "example": {
                "hypothesis": "A larger 'Order Now' button above the fold will increase orders",
                "changeType": "cta",
                "variantPrompt": "Make the primary order button twice as large and move it into the hero",
                "variantDescription": "Bigger hero CTA",
                "priority": 8
            }
        }
