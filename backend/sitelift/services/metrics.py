"""Metrics provider: aggregates raw analytics events into experiment inputs."""
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import case, delete, func, or_
from sqlalchemy.orm import Session

from sitelift.database import utcnow
from sitelift.models import AnalyticsEvent


class MetricsProvider:
    """Read-side aggregates over ``analytics_events``."""

    def __init__(self, db: Session):
        self.db = db

    def get_variant_metrics(self, variant_id: str) -> Dict:
        """
        Visitor, conversion and revenue totals for one variant.

        Visitors and conversions count distinct sessions with a pageview or an
        order. Revenue sums order totals.

        Returns:
            Dict with visitors, conversions, cart_adds, revenue
        """
        row = self.db.query(
            _distinct_sessions("pageview").label("visitors"),
            _distinct_sessions("order").label("conversions"),
            _distinct_sessions("cart_add").label("cart_adds"),
            func.sum(case((AnalyticsEvent.event_type == "order", AnalyticsEvent.value), else_=0)).label("revenue")
        ).filter(AnalyticsEvent.variant_id == variant_id).one()

        visitors = row.visitors or 0
        return {
            "visitors": visitors,
            # An order without a tracked pageview must not push conversions past visitors
            "conversions": min(row.conversions or 0, visitors),
            "cart_adds": row.cart_adds or 0,
            "revenue": float(row.revenue or 0)
        }

    def get_historical_conversion_rate(
        self,
        restaurant_id: str,
        days_back: int = 30,
        exclude_variant_id: Optional[str] = None
    ) -> Dict:
        """
        Site-wide conversion rate over the trailing window.

        Args:
            restaurant_id: Restaurant to aggregate
            days_back: Window length in days
            exclude_variant_id: Leave out traffic served by this variant

        Returns:
            Dict with visitors, conversions, conversion_rate
        """
        start = utcnow() - timedelta(days=days_back)

        query = self.db.query(
            _distinct_sessions("pageview").label("visitors"),
            _distinct_sessions("order").label("conversions")
        ).filter(
            AnalyticsEvent.restaurant_id == restaurant_id,
            AnalyticsEvent.created_at >= start
        )

        if exclude_variant_id:
            query = query.filter(or_(
                AnalyticsEvent.variant_id.is_(None),
                AnalyticsEvent.variant_id != exclude_variant_id
            ))

        row = query.one()
        visitors = row.visitors or 0
        conversions = row.conversions or 0

        return {
            "visitors": visitors,
            "conversions": conversions,
            "conversion_rate": conversions / visitors if visitors > 0 else 0.0
        }

    def get_traffic_summary(self, restaurant_id: str, days: int = 14, min_pageviews: int = 50) -> Dict:
        """
        Funnel summary used for hypothesis generation and the analytics endpoint.

        Returns:
            Dict with has_enough_data, event counts, funnel rates and
            avg_time_on_page
        """
        start = utcnow() - timedelta(days=days)
        window = (
            AnalyticsEvent.restaurant_id == restaurant_id,
            AnalyticsEvent.created_at >= start
        )

        counts = dict(
            self.db.query(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
            .filter(*window)
            .group_by(AnalyticsEvent.event_type)
            .all()
        )
        unique_sessions = self.db.query(
            func.count(func.distinct(AnalyticsEvent.session_id))
        ).filter(*window).scalar() or 0
        avg_time = self.db.query(func.avg(AnalyticsEvent.value)).filter(
            *window, AnalyticsEvent.event_type == "time_on_page"
        ).scalar()

        pageviews = counts.get("pageview", 0)
        orders = counts.get("order", 0)
        cart_adds = counts.get("cart_add", 0)

        return {
            "period_days": days,
            "has_enough_data": pageviews >= min_pageviews,
            "pageviews": pageviews,
            "unique_sessions": unique_sessions,
            "orders": orders,
            "cart_adds": cart_adds,
            "clicks": counts.get("click", 0),
            "conversion_rate": orders / pageviews if pageviews > 0 else 0.0,
            "add_to_cart_rate": cart_adds / pageviews if pageviews > 0 else 0.0,
            "cart_to_order_rate": orders / cart_adds if cart_adds > 0 else 0.0,
            "avg_time_on_page": float(avg_time or 0)
        }

    def record_event(
        self,
        restaurant_id: str,
        session_id: str,
        event_type: str,
        variant_id: Optional[str] = None,
        event_data: Optional[Dict] = None
    ) -> AnalyticsEvent:
        """Store one event. Order totals and time-on-page seconds land in ``value``."""
        event = AnalyticsEvent(
            restaurant_id=restaurant_id,
            session_id=session_id,
            variant_id=variant_id,
            event_type=event_type,
            value=_event_value(event_type, event_data),
            event_data=event_data
        )
        self.db.add(event)
        return event

    def purge_older_than(self, days: int) -> int:
        """Delete events older than ``days``. Returns the number removed."""
        cutoff = utcnow() - timedelta(days=days)
        result = self.db.execute(
            delete(AnalyticsEvent).where(AnalyticsEvent.created_at < cutoff)
        )
        self.db.commit()
        return result.rowcount


def _distinct_sessions(event_type: str):
    """COUNT(DISTINCT session_id) over events of one type."""
    return func.count(func.distinct(
        case((AnalyticsEvent.event_type == event_type, AnalyticsEvent.session_id))
    ))


def _event_value(event_type: str, event_data: Optional[Dict]) -> Optional[float]:
    if not event_data:
        return None
    key = {"order": "total", "time_on_page": "seconds"}.get(event_type)
    if key is None or event_data.get(key) is None:
        return None
    try:
        return float(event_data[key])
    except (TypeError, ValueError):
        return None
