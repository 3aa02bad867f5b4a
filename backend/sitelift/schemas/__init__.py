"""Pydantic schemas for request/response validation."""
from sitelift.schemas.hypothesis import HypothesisCandidate
from sitelift.schemas.events import EventIn, EventBatch, EventResponse
from sitelift.schemas.optimizer import ToggleRequest, ToggleResponse
from sitelift.schemas.experiments import VariantOut, ExperimentOut, ExperimentDeleteResponse, QueueItemOut

__all__ = [
    "HypothesisCandidate",
    "EventIn",
    "EventBatch",
    "EventResponse",
    "ToggleRequest",
    "ToggleResponse",
    "VariantOut",
    "ExperimentOut",
    "ExperimentDeleteResponse",
    "QueueItemOut",
]
