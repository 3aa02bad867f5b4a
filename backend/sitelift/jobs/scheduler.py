"""Optimizer scheduler.

Background asyncio tasks started with the application:
- optimization cycle over every enabled restaurant (every 4 hours)
- analytics retention cleanup (daily)
- weekly experiment counter reset (checked hourly, fires Sunday 00:00 local)
"""
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from sitelift.config import Settings, get_settings
from sitelift.database import SessionLocal
from sitelift.services.metrics import MetricsProvider
from sitelift.services.optimizer import build_optimizer
from sitelift.services.store import ExperimentStore, week_start_for

logger = structlog.get_logger()


class OptimizerScheduler:
    """Drives ``ABOptimizer.optimize`` and housekeeping on fixed intervals."""

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        optimizer_factory: Callable = build_optimizer,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep
    ):
        self.session_factory = session_factory
        self.optimizer_factory = optimizer_factory
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._tasks: List[asyncio.Task] = []

    # ============ JOBS ============

    async def run_optimization_cycle(self) -> Dict[str, Dict]:
        """
        Optimize every enabled restaurant, one after another.

        A failure for one restaurant is logged and the cycle moves on.

        Returns:
            Result per restaurant id
        """
        db = self.session_factory()
        try:
            restaurant_ids = [s.restaurant_id for s in ExperimentStore(db).get_all_enabled()]
        finally:
            db.close()

        logger.info("optimization_cycle_started", restaurants=len(restaurant_ids))

        results = {}
        for restaurant_id in restaurant_ids:
            try:
                result = await self.optimize_restaurant(restaurant_id)
                logger.info(
                    "restaurant_optimized",
                    restaurant_id=restaurant_id,
                    action=result.get("action"),
                    skipped=result.get("skipped"),
                    reason=result.get("reason"),
                    error=result.get("error")
                )
            except Exception as e:
                logger.error(
                    "restaurant_optimization_failed",
                    restaurant_id=restaurant_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                result = {"error": str(e) or type(e).__name__}
            results[restaurant_id] = result

            await self._sleep(self.settings.restaurant_delay_seconds)

        logger.info("optimization_cycle_complete", restaurants=len(restaurant_ids))
        return results

    async def optimize_restaurant(self, restaurant_id: str, force: bool = False) -> Dict:
        """Run one optimization pass for a single restaurant on its own session."""
        db = self.session_factory()
        try:
            optimizer = self.optimizer_factory(db)
            return await optimizer.optimize(restaurant_id, force=force)
        finally:
            db.close()

    async def cleanup_old_events(self) -> Dict[str, int]:
        """Purge old analytics events and stale queued hypotheses."""
        db = self.session_factory()
        try:
            events = MetricsProvider(db).purge_older_than(self.settings.events_retention_days)
            queue_items = ExperimentStore(db).clear_stale_queue_items()
        finally:
            db.close()

        logger.info(
            "cleanup_complete",
            events_purged=events,
            queue_items_purged=queue_items,
            retention_days=self.settings.events_retention_days
        )
        return {"events": events, "queue_items": queue_items}

    async def check_weekly_reset(self, now: Optional[datetime] = None) -> Optional[int]:
        """
        Reset weekly counters during the Sunday 00:00 hour, local time.

        Returns:
            Number of restaurants reset, or None outside the reset hour
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(ZoneInfo(self.settings.timezone))

        # weekday(): Sunday=6
        if local.weekday() != 6 or local.hour != 0:
            return None

        db = self.session_factory()
        try:
            store = ExperimentStore(db, tz_name=self.settings.timezone)
            reset = store.reset_weekly_counts(week_start_for(now, self.settings.timezone))
        finally:
            db.close()

        logger.info("weekly_reset_complete", restaurants_reset=reset)
        return reset

    async def trigger_optimization(self) -> Dict[str, Dict]:
        return await self.run_optimization_cycle()

    async def trigger_cleanup(self) -> Dict[str, int]:
        return await self.cleanup_old_events()

    # ============ LIFECYCLE ============

    async def _every(self, name: str, interval: float, job: Callable[[], Awaitable], initial_delay: float):
        await self._sleep(initial_delay)
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("scheduled_job_failed", job=name, error=str(e), error_type=type(e).__name__)
            await self._sleep(interval)

    def start(self) -> None:
        """Start the background tasks. Must be called from a running event loop."""
        if self._tasks:
            return

        s = self.settings
        self._tasks = [
            asyncio.create_task(self._every(
                "optimize", s.optimize_interval_seconds, self.run_optimization_cycle,
                initial_delay=s.optimize_initial_delay_seconds
            )),
            asyncio.create_task(self._every(
                "cleanup", s.cleanup_interval_seconds, self.cleanup_old_events,
                initial_delay=s.cleanup_interval_seconds
            )),
            asyncio.create_task(self._every(
                "weekly_reset", s.weekly_reset_check_seconds, self.check_weekly_reset,
                initial_delay=s.weekly_reset_check_seconds
            )),
        ]
        logger.info(
            "scheduler_started",
            optimize_interval_hours=s.optimize_interval_seconds / 3600,
            cleanup_interval_hours=s.cleanup_interval_seconds / 3600
        )

    async def stop(self) -> None:
        """Cancel the background tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)
