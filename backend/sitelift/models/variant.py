"""Variant model."""
from sqlalchemy import Column, String, Integer, Text, Boolean, Float, DateTime, ForeignKey
from sqlalchemy.orm import relationship
import uuid

from sitelift.database import Base, utcnow


class Variant(Base):
    """One arm (control or treatment) of an experiment."""

    __tablename__ = "experiment_variants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    experiment_id = Column(String(36), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    is_control = Column(Boolean, default=False, nullable=False)
    change_description = Column(Text)
    change_prompt = Column(Text)

    # Aggregated stats, refreshed from the metrics provider every cycle
    visitors = Column(Integer, default=0, nullable=False)
    conversions = Column(Integer, default=0, nullable=False)
    revenue = Column(Float, default=0.0, nullable=False)
    traffic_allocation = Column(Float, default=0.5, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    experiment = relationship("Experiment", back_populates="variants")

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.visitors if self.visitors else 0.0

    @property
    def revenue_per_visitor(self) -> float:
        return self.revenue / self.visitors if self.visitors else 0.0

    @property
    def avg_order_value(self) -> float:
        return self.revenue / self.conversions if self.conversions else 0.0

    def __repr__(self):
        return f"<Variant {self.name} control={self.is_control}>"
