"""Optimizer state model."""
from sqlalchemy import Column, String, Integer, Boolean, Float, Date, DateTime, JSON
import uuid

from sitelift.database import Base, utcnow


class OptimizerState(Base):
    """Per-restaurant optimizer settings, counters and accumulated learnings."""

    __tablename__ = "optimizer_state"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    restaurant_id = Column(String(100), unique=True, nullable=False, index=True)
    enabled = Column(Boolean, default=False, nullable=False)

    # Weekly rate limit
    experiments_this_week = Column(Integer, default=0, nullable=False)
    week_start = Column(Date, nullable=False)

    learnings = Column(JSON, default=list, nullable=False)  # capped at 50, most recent last
    compound_changes = Column(JSON, default=list, nullable=False)  # capped at 20
    baseline_metrics = Column(JSON)  # {"conversion_rate", "visitors", "conversions", "updated_at"}

    total_experiments = Column(Integer, default=0, nullable=False)
    total_revenue_lift = Column(Float, default=0.0, nullable=False)

    last_optimization_at = Column(DateTime)
    last_digest_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<OptimizerState {self.restaurant_id} enabled={self.enabled}>"
