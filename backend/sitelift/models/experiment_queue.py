"""Experiment queue model."""
from sqlalchemy import Column, String, Integer, Text, DateTime
import uuid
import enum

from sitelift.database import Base, utcnow


class QueueSource(str, enum.Enum):
    """Where a queued hypothesis came from."""
    AI = "ai"
    MANUAL = "manual"


class ExperimentQueueItem(Base):
    """A pre-generated hypothesis waiting to become an experiment."""

    __tablename__ = "experiment_queue"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    restaurant_id = Column(String(100), nullable=False, index=True)
    hypothesis = Column(Text, nullable=False)
    change_type = Column(String(20))
    variant_prompt = Column(Text)
    variant_description = Column(Text)
    priority = Column(Integer, default=0, nullable=False)  # higher runs sooner
    source = Column(String(20), default=QueueSource.AI.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<ExperimentQueueItem {self.id} priority={self.priority}>"
