"""Analytics event model."""
from sqlalchemy import Column, String, Float, DateTime, JSON, Index
import uuid

from sitelift.database import Base, utcnow


class AnalyticsEvent(Base):
    """Raw interaction event tracked on a restaurant website."""

    __tablename__ = "analytics_events"
    __table_args__ = (
        Index("ix_analytics_events_restaurant_created", "restaurant_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    restaurant_id = Column(String(100), nullable=False)
    session_id = Column(String(100), nullable=False)
    variant_id = Column(String(36), index=True)
    event_type = Column(String(50), nullable=False)  # pageview, click, scroll, cart_add, order, time_on_page
    value = Column(Float)  # order total for "order", seconds for "time_on_page"
    event_data = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AnalyticsEvent {self.event_type} session={self.session_id}>"
