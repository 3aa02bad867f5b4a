"""Database models."""
from sitelift.models.experiment import Experiment, ExperimentStatus, ChangeType
from sitelift.models.variant import Variant
from sitelift.models.optimizer_state import OptimizerState
from sitelift.models.experiment_queue import ExperimentQueueItem, QueueSource
from sitelift.models.analytics_event import AnalyticsEvent

__all__ = [
    "Experiment",
    "ExperimentStatus",
    "ChangeType",
    "Variant",
    "OptimizerState",
    "ExperimentQueueItem",
    "QueueSource",
    "AnalyticsEvent",
]
