"""
A/B Optimizer - autonomous experiment loop for restaurant websites.

One ``optimize`` call per restaurant per cycle:
- Thompson Sampling for traffic allocation
- Conversion and revenue significance with a combined winner
- Anomaly detection with automatic pause and revert
- A queue of pre-generated hypotheses under a weekly experiment cap
- Learnings and compound changes recorded for future hypotheses
"""
import asyncio
from datetime import timedelta
from typing import Dict, Optional

import structlog
from sqlalchemy.orm import Session

from sitelift.config import get_settings
from sitelift.database import utcnow
from sitelift.models import Experiment, QueueSource, Variant
from sitelift.services.errors import (
    ExperimentConflict,
    HypothesisGenerationError,
    OptimizerBusy,
    VariantPublishError,
)
from sitelift.services.hypotheses import get_hypothesis_source
from sitelift.services.locks import RestaurantLock, get_restaurant_lock
from sitelift.services.metrics import MetricsProvider
from sitelift.services.publisher import get_publisher
from sitelift.services.statistics import StatisticalEngine
from sitelift.services.store import ExperimentStore

logger = structlog.get_logger()


class ABOptimizer:
    """Control loop that runs, judges and rolls out website experiments."""

    def __init__(
        self,
        store: ExperimentStore,
        metrics: MetricsProvider,
        publisher,
        hypothesis_source,
        engine: Optional[StatisticalEngine] = None,
        lock: Optional[RestaurantLock] = None,
        max_experiments_per_week: int = 3,
        queue_size: int = 5,
        min_pageviews: int = 50,
        hypothesis_lookback_days: int = 14,
        baseline_lookback_days: int = 30,
        min_baseline_visitors: int = 100,
        call_timeout: float = 120.0
    ):
        self.store = store
        self.metrics = metrics
        self.publisher = publisher
        self.hypothesis_source = hypothesis_source
        self.engine = engine or StatisticalEngine()
        self.lock = lock
        self.max_experiments_per_week = max_experiments_per_week
        self.queue_size = queue_size
        self.min_pageviews = min_pageviews
        self.hypothesis_lookback_days = hypothesis_lookback_days
        self.baseline_lookback_days = baseline_lookback_days
        self.min_baseline_visitors = min_baseline_visitors
        self.call_timeout = call_timeout

    async def _call(self, coro):
        """Await an external call with the configured timeout."""
        return await asyncio.wait_for(coro, timeout=self.call_timeout)

    # ============ MAIN OPTIMIZATION LOOP ============

    async def optimize(self, restaurant_id: str, force: bool = False) -> Dict:
        """
        Run one optimization pass for a restaurant.

        Args:
            restaurant_id: Restaurant to optimize
            force: Run even if the optimizer is disabled (the flag is untouched)

        Returns:
            Structured result: ``{"skipped", "reason"}``, ``{"action", ...}``
            or ``{"error", ...}``
        """
        structlog.contextvars.bind_contextvars(restaurant_id=restaurant_id)
        try:
            state = self.store.get_or_create_optimizer_state(restaurant_id)
            if not state.enabled and not force:
                return {"skipped": True, "reason": "Optimizer disabled"}

            if self.lock is None:
                return await self._optimize(restaurant_id)

            try:
                with self.lock.hold(restaurant_id):
                    return await self._optimize(restaurant_id)
            except OptimizerBusy:
                logger.info("optimization_skipped", reason="lease_held")
                return {"skipped": True, "reason": "Optimization already in progress"}
        finally:
            structlog.contextvars.unbind_contextvars("restaurant_id")

    async def _optimize(self, restaurant_id: str) -> Dict:
        self.update_baseline_metrics(restaurant_id)

        experiment = self.store.get_running_experiment(restaurant_id)
        if experiment:
            anomaly_check = self.check_for_anomalies(restaurant_id, experiment)
            if anomaly_check["should_pause"]:
                return await self.pause_experiment(restaurant_id, experiment, anomaly_check["reason"])

            self.update_traffic_allocation(experiment)
            return await self.analyze_experiment(restaurant_id, experiment)

        await self.ensure_queue_filled(restaurant_id)
        return await self.create_experiment_from_queue(restaurant_id)

    # ============ EXPERIMENT ANALYSIS ============

    async def analyze_experiment(self, restaurant_id: str, experiment: Experiment) -> Dict:
        """Refresh variant stats from analytics and act on the verdict."""
        control, treatment = experiment.control, experiment.treatment
        if not control or not treatment:
            return {"error": "Invalid experiment setup", "experiment_id": experiment.id}

        experiment_id = experiment.id
        control_metrics = self.metrics.get_variant_metrics(control.id)
        treatment_metrics = self.metrics.get_variant_metrics(treatment.id)

        self.store.update_variant_stats(control.id, **_stats(control_metrics))
        self.store.update_variant_stats(treatment.id, **_stats(treatment_metrics))

        status = self.engine.get_experiment_status(control_metrics, treatment_metrics)
        revenue_analysis = self.engine.analyze_experiment_with_revenue(control_metrics, treatment_metrics)

        self.store.touch_last_optimization(restaurant_id)

        if status["recommendation"] == "continue":
            return {
                "action": "continue",
                "experiment_id": experiment_id,
                "status": status["status"],
                "message": status["message"],
                "control": {**control_metrics, "conversion_rate": control.conversion_rate},
                "treatment": {**treatment_metrics, "conversion_rate": treatment.conversion_rate},
                "revenue": revenue_analysis["revenue"],
                "traffic_allocation": {
                    "control": control.traffic_allocation,
                    "treatment": treatment.traffic_allocation
                }
            }

        combined = revenue_analysis["combined_winner"]
        analysis = status.get("analysis") or {}

        if combined["winner"] == "treatment":
            if not await self.apply_winner(restaurant_id, experiment, treatment, revenue_analysis):
                return {"skipped": True, "reason": "Experiment is no longer running"}

            self.store.append_learning(restaurant_id, {
                "hypothesis": experiment.hypothesis,
                "change_type": experiment.change_type,
                "change_description": treatment.change_description,
                "result": "success",
                "conversion_lift": analysis.get("relative_lift", 0),
                "revenue_lift": revenue_analysis["revenue"]["lift"],
                "p_value": analysis.get("p_value"),
                "confidence": combined["confidence"]
            })
            self.track_compound_change(restaurant_id, experiment, treatment)

            logger.info(
                "experiment_applied",
                experiment_id=experiment_id,
                conversion_lift=analysis.get("relative_lift"),
                revenue_lift=revenue_analysis["revenue"]["lift"],
                confidence=combined["confidence"]
            )
            return {
                "action": "applied",
                "experiment_id": experiment_id,
                "winner": "treatment",
                "conversion_lift": analysis.get("relative_lift"),
                "revenue_lift": revenue_analysis["revenue"]["lift"],
                "message": f"Applied winning variant: {treatment.change_description}",
                "confidence": combined["confidence"]
            }

        if combined["winner"] == "control" or status["recommendation"] == "end_experiment":
            if not await self.revert_to_control(restaurant_id, experiment):
                return {"skipped": True, "reason": "Experiment is no longer running"}

            result = "control_won" if combined["winner"] == "control" else "no_effect"
            self.store.append_learning(restaurant_id, {
                "hypothesis": experiment.hypothesis,
                "change_type": experiment.change_type,
                "result": result,
                "p_value": analysis.get("p_value"),
                "reason": combined["reason"]
            })

            logger.info("experiment_reverted", experiment_id=experiment_id, result=result)
            return {
                "action": "reverted",
                "experiment_id": experiment_id,
                "result": result,
                "reason": combined["reason"],
                "message": status["message"]
            }

        return {"action": "continue", "experiment_id": experiment_id, "status": "analyzing"}

    # ============ THOMPSON SAMPLING ============

    def update_traffic_allocation(self, experiment: Experiment) -> Optional[list]:
        """Reallocate traffic from the variants' stored stats."""
        variants = self.store.get_variants(experiment.id)
        if len(variants) < 2:
            return None

        allocations = self.engine.get_traffic_allocation([
            {"visitors": v.visitors, "conversions": v.conversions, "revenue": v.revenue}
            for v in variants
        ])
        self.store.update_all_allocations(experiment.id, allocations)
        return allocations

    # ============ ANOMALY DETECTION ============

    def check_for_anomalies(self, restaurant_id: str, experiment: Experiment) -> Dict:
        """Compare live arms against the restaurant's baseline conversion rate."""
        state = self.store.get_optimizer_state(restaurant_id)
        baseline = (state.baseline_metrics if state else None) or {}
        historical_rate = baseline.get("conversion_rate") or 0

        if not historical_rate:
            return {"should_pause": False}

        control, treatment = experiment.control, experiment.treatment
        if not control or not treatment:
            return {"should_pause": False}

        return self.engine.should_pause_experiment(
            self.metrics.get_variant_metrics(control.id),
            self.metrics.get_variant_metrics(treatment.id),
            historical_rate
        )

    async def pause_experiment(self, restaurant_id: str, experiment: Experiment, reason: str) -> Dict:
        """Revert to control immediately and mark the experiment paused."""
        experiment_id = experiment.id
        if not await self.revert_to_control(restaurant_id, experiment):
            return {"skipped": True, "reason": "Experiment is no longer running"}

        self.store.mark_paused(experiment_id, reason)
        self.store.append_learning(restaurant_id, {
            "hypothesis": experiment.hypothesis,
            "change_type": experiment.change_type,
            "result": "paused_anomaly",
            "reason": reason
        })

        logger.warning("experiment_paused", experiment_id=experiment_id, reason=reason)
        return {
            "action": "paused",
            "experiment_id": experiment_id,
            "reason": reason,
            "message": f"Experiment paused due to anomaly: {reason}"
        }

    # ============ EXPERIMENT ACTIONS ============

    async def apply_winner(
        self,
        restaurant_id: str,
        experiment: Experiment,
        treatment: Variant,
        analysis: Dict
    ) -> bool:
        """
        Promote the treatment to the live site and close the experiment.

        Returns:
            False if the experiment was no longer running

        Raises:
            VariantPublishError: If promotion fails; the experiment stays running
        """
        if experiment.status != "running":
            return False

        await self._call(self.publisher.promote_variant(restaurant_id, treatment.id))

        if not self.store.conclude_experiment(experiment.id, treatment.id):
            # Live site already serves the treatment but another pass ended the experiment
            current = self.store.get_experiment(experiment.id)
            logger.error(
                "experiment_apply_diverged",
                experiment_id=experiment.id,
                variant_id=treatment.id,
                status=current.status if current else None
            )
            return False
        self.store.mark_applied(experiment.id)
        self.store.add_revenue_lift(restaurant_id, (analysis.get("revenue") or {}).get("lift") or 0.0)
        return True

    async def revert_to_control(self, restaurant_id: str, experiment: Experiment) -> bool:
        """
        Conclude with control as the winner and delete the treatment's artifacts.

        A no-op for an experiment that is no longer running, so artifacts are
        never deleted twice.

        Returns:
            True if this call ended the experiment
        """
        experiment_id = experiment.id
        control, treatment = experiment.control, experiment.treatment

        if not self.store.conclude_experiment(experiment_id, control.id if control else None):
            logger.info("revert_skipped", experiment_id=experiment_id, reason="not_running")
            return False

        if treatment:
            try:
                await self._call(self.publisher.delete_variant(restaurant_id, treatment.id))
            except (VariantPublishError, asyncio.TimeoutError) as e:
                # Traffic already back on control; only the artifact is left behind
                logger.warning(
                    "variant_cleanup_failed",
                    experiment_id=experiment_id,
                    variant_id=treatment.id,
                    error=str(e) or type(e).__name__
                )
        return True

    # ============ EXPERIMENT QUEUE ============

    async def ensure_queue_filled(self, restaurant_id: str) -> int:
        """
        Top the hypothesis queue up to ``queue_size``.

        Returns:
            Number of hypotheses added
        """
        current = self.store.get_queue_count(restaurant_id)
        if current >= self.queue_size:
            return 0

        needed = self.queue_size - current
        traffic = self.metrics.get_traffic_summary(
            restaurant_id, days=self.hypothesis_lookback_days, min_pageviews=self.min_pageviews
        )
        if not traffic["has_enough_data"]:
            logger.info("queue_fill_skipped", reason="insufficient_data", pageviews=traffic["pageviews"])
            return 0

        state = self.store.get_or_create_optimizer_state(restaurant_id)
        existing_queue = self.store.get_queue(restaurant_id, limit=self.queue_size)

        try:
            candidates = await self._call(self.hypothesis_source.generate_hypotheses(
                restaurant_id, traffic, state.learnings or [], existing_queue, needed
            ))
        except (HypothesisGenerationError, asyncio.TimeoutError) as e:
            logger.warning("hypothesis_generation_failed", error=str(e) or type(e).__name__)
            return 0

        if not candidates:
            return 0

        added = self.store.add_batch(restaurant_id, candidates[:needed], QueueSource.AI)
        logger.info("queue_filled", added=added, queue_size=current + added)
        return added

    async def create_experiment_from_queue(self, restaurant_id: str) -> Dict:
        """Start the highest-priority queued hypothesis, within the weekly cap."""
        if not self.store.can_run_experiment(restaurant_id, self.max_experiments_per_week):
            return {
                "skipped": True,
                "reason": f"Rate limit: max {self.max_experiments_per_week} experiments per week"
            }

        queue_item = self.store.get_next_queue_item(restaurant_id)
        if queue_item is None:
            return await self.create_experiment(restaurant_id)

        item_id, source = queue_item.id, queue_item.source
        try:
            result = await self._launch_experiment(
                restaurant_id,
                hypothesis=queue_item.hypothesis,
                change_type=queue_item.change_type,
                variant_prompt=queue_item.variant_prompt,
                variant_description=queue_item.variant_description
            )
        finally:
            # A broken hypothesis must not be retried forever
            self.store.remove_from_queue(item_id)

        if result.get("action") == "created":
            result["source"] = source
        return result

    async def create_experiment(self, restaurant_id: str) -> Dict:
        """Generate one hypothesis on the spot when the queue is empty."""
        traffic = self.metrics.get_traffic_summary(
            restaurant_id, days=self.hypothesis_lookback_days, min_pageviews=self.min_pageviews
        )
        if not traffic["has_enough_data"]:
            return {"skipped": True, "reason": "Not enough analytics data"}

        state = self.store.get_or_create_optimizer_state(restaurant_id)
        try:
            candidates = await self._call(self.hypothesis_source.generate_hypotheses(
                restaurant_id, traffic, state.learnings or [], [], 1
            ))
        except (HypothesisGenerationError, asyncio.TimeoutError) as e:
            logger.warning("hypothesis_generation_failed", error=str(e) or type(e).__name__)
            candidates = []

        if not candidates:
            return {"skipped": True, "reason": "No hypothesis generated"}

        candidate = candidates[0]
        return await self._launch_experiment(
            restaurant_id,
            hypothesis=candidate.hypothesis,
            change_type=candidate.change_type.value,
            variant_prompt=candidate.variant_prompt,
            variant_description=candidate.variant_description
        )

    async def _launch_experiment(
        self,
        restaurant_id: str,
        hypothesis: str,
        change_type: Optional[str],
        variant_prompt: str,
        variant_description: Optional[str]
    ) -> Dict:
        """Create the experiment and both variants, publish the treatment, then start."""
        historical = self.metrics.get_historical_conversion_rate(
            restaurant_id, days_back=self.baseline_lookback_days
        )

        experiment = self.store.create_experiment(
            restaurant_id, hypothesis, change_type, historical["conversion_rate"]
        )
        experiment_id = experiment.id
        self.store.create_variant(experiment_id, "control", True, change_description="Original version")
        treatment = self.store.create_variant(
            experiment_id,
            "variant_a",
            False,
            change_description=variant_description,
            change_prompt=variant_prompt
        )
        treatment_id = treatment.id

        try:
            await self._call(self.publisher.generate_variant(restaurant_id, treatment_id, variant_prompt))
        except (VariantPublishError, asyncio.TimeoutError) as e:
            details = str(e) or "Variant generation timed out"
            logger.warning("variant_generation_failed", experiment_id=experiment_id, error=details)
            self.store.delete_experiment(experiment_id)
            return {"error": "Failed to generate variant", "details": details}

        try:
            self.store.start_experiment(experiment_id)
        except ExperimentConflict as e:
            logger.error("experiment_conflict", experiment_id=experiment_id, error=str(e))
            await self._discard_variant(restaurant_id, treatment_id)
            self.store.delete_experiment(experiment_id)
            return {"error": str(e), "conflict": True}

        self.store.increment_weekly_count(restaurant_id)
        self.store.touch_last_optimization(restaurant_id)

        logger.info("experiment_started", experiment_id=experiment_id, change_type=change_type)
        return {
            "action": "created",
            "experiment_id": experiment_id,
            "hypothesis": hypothesis,
            "change_type": change_type,
            "variant_description": variant_description
        }

    async def _discard_variant(self, restaurant_id: str, variant_id: str) -> None:
        try:
            await self._call(self.publisher.delete_variant(restaurant_id, variant_id))
        except (VariantPublishError, asyncio.TimeoutError) as e:
            logger.warning("variant_cleanup_failed", variant_id=variant_id, error=str(e) or type(e).__name__)

    # ============ COMPOUND LEARNING ============

    def track_compound_change(self, restaurant_id: str, experiment: Experiment, winning_variant: Variant) -> None:
        self.store.append_compound_change(restaurant_id, {
            "change_type": experiment.change_type,
            "description": winning_variant.change_description,
            "applied_at": utcnow().isoformat()
        })

    def update_baseline_metrics(self, restaurant_id: str) -> Optional[Dict]:
        """Snapshot the trailing conversion rate once there is enough traffic."""
        historical = self.metrics.get_historical_conversion_rate(
            restaurant_id, days_back=self.baseline_lookback_days
        )
        if historical["visitors"] < self.min_baseline_visitors:
            return None

        baseline = {
            "conversion_rate": historical["conversion_rate"],
            "visitors": historical["visitors"],
            "conversions": historical["conversions"],
            "updated_at": utcnow().isoformat()
        }
        self.store.update_baseline_metrics(restaurant_id, baseline)
        return baseline

    # ============ METRICS & STATUS ============

    def get_status(self, restaurant_id: str) -> Dict:
        """Operator view: counters, queue depth and the live experiment if any."""
        state = self.store.get_or_create_optimizer_state(restaurant_id)
        active = self.store.get_running_experiment(restaurant_id)
        recent = self.store.list_experiments(restaurant_id, limit=10)

        active_details = None
        if active and active.control and active.treatment:
            control, treatment = active.control, active.treatment
            status = self.engine.get_experiment_status(_arm(control), _arm(treatment))
            active_details = {
                "id": active.id,
                "hypothesis": active.hypothesis,
                "change_type": active.change_type,
                "started_at": _iso(active.started_at),
                "control": {**_arm(control), "conversion_rate": control.conversion_rate,
                            "traffic_allocation": control.traffic_allocation},
                "treatment": {**_arm(treatment), "conversion_rate": treatment.conversion_rate,
                              "traffic_allocation": treatment.traffic_allocation,
                              "description": treatment.change_description},
                "status": status["status"],
                "message": status["message"]
            }

        return {
            "restaurant_id": restaurant_id,
            "enabled": state.enabled,
            "experiments_this_week": state.experiments_this_week,
            "max_experiments_per_week": self.max_experiments_per_week,
            "total_experiments": state.total_experiments or 0,
            "total_revenue_lift": state.total_revenue_lift or 0.0,
            "last_optimization_at": _iso(state.last_optimization_at),
            "last_digest_at": _iso(state.last_digest_at),
            "learnings_count": len(state.learnings or []),
            "queued_hypotheses": self.store.get_queue_count(restaurant_id),
            "active_experiment": active_details,
            "recent_experiments": [
                {
                    "id": e.id,
                    "hypothesis": e.hypothesis,
                    "status": e.status,
                    "started_at": _iso(e.started_at),
                    "ended_at": _iso(e.ended_at)
                }
                for e in recent
            ]
        }

    def get_analytics(self, restaurant_id: str, days: int = 14) -> Dict:
        summary = self.metrics.get_traffic_summary(restaurant_id, days=days, min_pageviews=self.min_pageviews)
        start_date = utcnow() - timedelta(days=days)
        return {
            "restaurant_id": restaurant_id,
            "period": {"days": days, "start_date": start_date.isoformat()},
            **{k: v for k, v in summary.items() if k not in ("period_days", "has_enough_data")}
        }


def _stats(metrics: Dict) -> Dict:
    return {
        "visitors": metrics["visitors"],
        "conversions": metrics["conversions"],
        "revenue": metrics["revenue"]
    }


def _arm(variant: Variant) -> Dict:
    return {"visitors": variant.visitors, "conversions": variant.conversions, "revenue": variant.revenue}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def build_optimizer(db: Session, lock: Optional[RestaurantLock] = None) -> ABOptimizer:
    """Wire an optimizer to a session using application settings."""
    settings = get_settings()
    return ABOptimizer(
        store=ExperimentStore(db, tz_name=settings.timezone),
        metrics=MetricsProvider(db),
        publisher=get_publisher(
            base_url=settings.site_generator_url,
            timeout=settings.external_call_timeout_seconds
        ),
        hypothesis_source=get_hypothesis_source(),
        engine=StatisticalEngine(
            confidence_level=settings.confidence_level,
            min_sample_size=settings.min_sample_size,
            futility_multiplier=settings.futility_multiplier,
            anomaly_threshold=settings.anomaly_threshold
        ),
        lock=lock or get_restaurant_lock(),
        max_experiments_per_week=settings.max_experiments_per_week,
        queue_size=settings.queue_size,
        min_pageviews=settings.min_pageviews_for_hypotheses,
        hypothesis_lookback_days=settings.hypothesis_lookback_days,
        baseline_lookback_days=settings.baseline_lookback_days,
        min_baseline_visitors=settings.min_baseline_visitors,
        call_timeout=settings.external_call_timeout_seconds
    )
