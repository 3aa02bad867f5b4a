"""Experiment model."""
from sqlalchemy import Column, String, Text, Float, DateTime, Index, text
from sqlalchemy.orm import relationship
import uuid
import enum

from sitelift.database import Base, utcnow


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CONCLUDED = "concluded"
    APPLIED = "applied"


class ChangeType(str, enum.Enum):
    """Area of the website an experiment changes."""
    CTA = "cta"
    HERO = "hero"
    LAYOUT = "layout"
    COPY = "copy"
    COLOR = "color"
    MENU = "menu"


class Experiment(Base):
    """A two-arm website experiment for one restaurant."""

    __tablename__ = "experiments"
    __table_args__ = (
        # At most one running experiment per restaurant
        Index(
            "uq_experiments_running_per_restaurant",
            "restaurant_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    restaurant_id = Column(String(100), nullable=False, index=True)
    hypothesis = Column(Text, nullable=False)
    change_type = Column(String(20))
    status = Column(String(20), default=ExperimentStatus.PENDING.value, nullable=False, index=True)
    winning_variant_id = Column(String(36))
    pause_reason = Column(Text)
    baseline_conversion_rate = Column(Float)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="[Variant.is_control.desc(), Variant.name]"
    )

    @property
    def control(self):
        return next((v for v in self.variants if v.is_control), None)

    @property
    def treatment(self):
        return next((v for v in self.variants if not v.is_control), None)

    def __repr__(self):
        return f"<Experiment {self.id} status={self.status}>"
