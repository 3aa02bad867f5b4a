"""Experiment store: durable state for experiments, variants, queue and optimizer state."""
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import case, delete, exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from sitelift.database import utcnow
from sitelift.models import (
    Experiment,
    ExperimentQueueItem,
    ExperimentStatus,
    OptimizerState,
    QueueSource,
    Variant,
)
from sitelift.schemas.hypothesis import HypothesisCandidate
from sitelift.services.errors import ExperimentConflict

logger = structlog.get_logger()

MAX_LEARNINGS = 50
MAX_COMPOUND_CHANGES = 20


def week_start_for(moment: datetime, tz_name: str = "UTC") -> date:
    """
    Sunday that starts the week containing ``moment`` in the given timezone.

    Naive datetimes are treated as UTC.
    """
    tz = ZoneInfo(tz_name)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=ZoneInfo("UTC"))
    local = moment.astimezone(tz)
    # weekday(): Monday=0 ... Sunday=6
    return local.date() - timedelta(days=(local.weekday() + 1) % 7)


class ExperimentStore:
    """
    SQLAlchemy-backed store for the optimizer's entities.

    Each write commits immediately. State transitions that guard invariants
    (starting, concluding, weekly counters) are single conditional UPDATE
    statements rather than read-then-write.
    """

    def __init__(self, db: Session, tz_name: str = "UTC"):
        self.db = db
        self.tz_name = tz_name

    def current_week_start(self, now: Optional[datetime] = None) -> date:
        return week_start_for(now or utcnow(), self.tz_name)

    # ============ OPTIMIZER STATE ============

    def get_optimizer_state(self, restaurant_id: str) -> Optional[OptimizerState]:
        return self.db.query(OptimizerState).filter(
            OptimizerState.restaurant_id == restaurant_id
        ).first()

    def get_or_create_optimizer_state(self, restaurant_id: str) -> OptimizerState:
        """Get the restaurant's optimizer state, creating a disabled one on first access."""
        state = self.get_optimizer_state(restaurant_id)
        if state:
            return state

        state = OptimizerState(
            restaurant_id=restaurant_id,
            enabled=False,
            experiments_this_week=0,
            week_start=self.current_week_start(),
            learnings=[],
            compound_changes=[]
        )
        self.db.add(state)
        try:
            self.db.commit()
        except IntegrityError:
            # Created concurrently by another worker
            self.db.rollback()
            return self.get_optimizer_state(restaurant_id)

        self.db.refresh(state)
        return state

    def get_all_enabled(self) -> List[OptimizerState]:
        return self.db.query(OptimizerState).filter(
            OptimizerState.enabled == True
        ).order_by(OptimizerState.created_at.asc()).all()

    def set_enabled(self, restaurant_id: str, enabled: bool) -> OptimizerState:
        state = self.get_or_create_optimizer_state(restaurant_id)
        state.enabled = enabled
        self.db.commit()
        self.db.refresh(state)
        return state

    def can_run_experiment(self, restaurant_id: str, max_per_week: int = 3) -> bool:
        """Whether the weekly experiment cap still has room."""
        state = self.get_or_create_optimizer_state(restaurant_id)
        if state.week_start != self.current_week_start():
            return True
        return state.experiments_this_week < max_per_week

    def increment_weekly_count(self, restaurant_id: str) -> None:
        """Count a started experiment, rolling the window over if the week changed."""
        self.get_or_create_optimizer_state(restaurant_id)
        week_start = self.current_week_start()

        self.db.execute(
            update(OptimizerState)
            .where(OptimizerState.restaurant_id == restaurant_id)
            .values(
                experiments_this_week=case(
                    (OptimizerState.week_start == week_start, OptimizerState.experiments_this_week + 1),
                    else_=1
                ),
                week_start=week_start,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

    def reset_weekly_counts(self, week_start: Optional[date] = None) -> int:
        """
        Reset every restaurant's weekly counter.

        Compare-and-swap on ``week_start``: rows already in the new week are
        left alone, so repeated or concurrent resets are harmless.

        Returns:
            Number of states reset
        """
        week_start = week_start or self.current_week_start()
        result = self.db.execute(
            update(OptimizerState)
            .where(OptimizerState.week_start != week_start)
            .values(experiments_this_week=0, week_start=week_start, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return result.rowcount

    def append_learning(self, restaurant_id: str, learning: Dict) -> OptimizerState:
        state = self.get_or_create_optimizer_state(restaurant_id)
        entry = {**learning, "added_at": utcnow().isoformat()}
        state.learnings = [*(state.learnings or []), entry][-MAX_LEARNINGS:]
        self.db.commit()
        self.db.refresh(state)
        return state

    def append_compound_change(self, restaurant_id: str, change: Dict) -> OptimizerState:
        state = self.get_or_create_optimizer_state(restaurant_id)
        state.compound_changes = [*(state.compound_changes or []), change][-MAX_COMPOUND_CHANGES:]
        self.db.commit()
        self.db.refresh(state)
        return state

    def update_baseline_metrics(self, restaurant_id: str, metrics: Dict) -> OptimizerState:
        state = self.get_or_create_optimizer_state(restaurant_id)
        state.baseline_metrics = metrics
        self.db.commit()
        self.db.refresh(state)
        return state

    def add_revenue_lift(self, restaurant_id: str, lift: float) -> None:
        """Accumulate an applied winner's revenue lift and count the win."""
        self.get_or_create_optimizer_state(restaurant_id)
        self.db.execute(
            update(OptimizerState)
            .where(OptimizerState.restaurant_id == restaurant_id)
            .values(
                total_revenue_lift=OptimizerState.total_revenue_lift + lift,
                total_experiments=OptimizerState.total_experiments + 1,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()

    def touch_last_optimization(self, restaurant_id: str) -> None:
        state = self.get_or_create_optimizer_state(restaurant_id)
        state.last_optimization_at = utcnow()
        self.db.commit()

    def touch_last_digest(self, restaurant_id: str) -> None:
        """Record that a performance digest went out."""
        state = self.get_or_create_optimizer_state(restaurant_id)
        state.last_digest_at = utcnow()
        self.db.commit()

    # ============ EXPERIMENTS ============

    def create_experiment(
        self,
        restaurant_id: str,
        hypothesis: str,
        change_type: Optional[str],
        baseline_conversion_rate: Optional[float] = None
    ) -> Experiment:
        """Create a pending experiment. It only goes live through ``start_experiment``."""
        experiment = Experiment(
            restaurant_id=restaurant_id,
            hypothesis=hypothesis,
            change_type=change_type,
            status=ExperimentStatus.PENDING.value,
            baseline_conversion_rate=baseline_conversion_rate
        )
        self.db.add(experiment)
        self.db.commit()
        self.db.refresh(experiment)
        return experiment

    def create_variant(
        self,
        experiment_id: str,
        name: str,
        is_control: bool,
        change_description: Optional[str] = None,
        change_prompt: Optional[str] = None,
        traffic_allocation: float = 0.5
    ) -> Variant:
        variant = Variant(
            experiment_id=experiment_id,
            name=name,
            is_control=is_control,
            change_description=change_description,
            change_prompt=change_prompt,
            traffic_allocation=traffic_allocation
        )
        self.db.add(variant)
        self.db.commit()
        self.db.refresh(variant)
        return variant

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        return self.db.query(Experiment).filter(Experiment.id == experiment_id).first()

    def get_running_experiment(self, restaurant_id: str) -> Optional[Experiment]:
        return self.db.query(Experiment).filter(
            Experiment.restaurant_id == restaurant_id,
            Experiment.status == ExperimentStatus.RUNNING.value
        ).order_by(Experiment.started_at.desc()).first()

    def list_experiments(
        self,
        restaurant_id: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Experiment]:
        query = self.db.query(Experiment).filter(Experiment.restaurant_id == restaurant_id)
        if status:
            query = query.filter(Experiment.status == status)
        return query.order_by(Experiment.created_at.desc()).offset(offset).limit(limit).all()

    def get_variants(self, experiment_id: str) -> List[Variant]:
        """Variants of an experiment, control first."""
        return self.db.query(Variant).filter(
            Variant.experiment_id == experiment_id
        ).order_by(Variant.is_control.desc(), Variant.name).all()

    def start_experiment(self, experiment_id: str) -> Experiment:
        """
        Move a pending experiment to running.

        The transition only happens if the restaurant has no other running
        experiment, checked in the same statement.

        Raises:
            ExperimentConflict: If another experiment is already running
        """
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            raise ValueError(f"Experiment {experiment_id} not found")

        other_experiment = aliased(Experiment)
        other = select(other_experiment.id).where(
            other_experiment.restaurant_id == experiment.restaurant_id,
            other_experiment.status == ExperimentStatus.RUNNING.value,
            other_experiment.id != experiment_id
        )
        try:
            result = self.db.execute(
                update(Experiment)
                .where(
                    Experiment.id == experiment_id,
                    Experiment.status == ExperimentStatus.PENDING.value,
                    ~exists(other)
                )
                .values(status=ExperimentStatus.RUNNING.value, started_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ExperimentConflict(
                f"Restaurant {experiment.restaurant_id} already has a running experiment"
            ) from e

        if result.rowcount != 1:
            raise ExperimentConflict(
                f"Restaurant {experiment.restaurant_id} already has a running experiment"
            )

        self.db.refresh(experiment)
        return experiment

    def update_variant_allocation(self, variant_id: str, allocation: float) -> None:
        self.db.query(Variant).filter(Variant.id == variant_id).update(
            {Variant.traffic_allocation: allocation}, synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()

    def update_all_allocations(self, experiment_id: str, allocations: Iterable[float]) -> None:
        """Write allocations in the order of ``get_variants`` (control first)."""
        for variant, allocation in zip(self.get_variants(experiment_id), allocations):
            variant.traffic_allocation = allocation
        self.db.commit()

    def update_variant_stats(self, variant_id: str, visitors: int, conversions: int, revenue: float) -> None:
        visitors = max(0, int(visitors))
        conversions = min(max(0, int(conversions)), visitors)
        self.db.query(Variant).filter(Variant.id == variant_id).update(
            {
                Variant.visitors: visitors,
                Variant.conversions: conversions,
                Variant.revenue: max(0.0, float(revenue or 0))
            },
            synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()

    def conclude_experiment(self, experiment_id: str, winning_variant_id: Optional[str]) -> bool:
        """
        End a running experiment with the given winner (None for no winner).

        Returns:
            True if the experiment was running and is now concluded
        """
        result = self.db.execute(
            update(Experiment)
            .where(
                Experiment.id == experiment_id,
                Experiment.status == ExperimentStatus.RUNNING.value
            )
            .values(
                status=ExperimentStatus.CONCLUDED.value,
                winning_variant_id=winning_variant_id,
                ended_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return result.rowcount == 1

    def mark_applied(self, experiment_id: str) -> None:
        self._set_status(experiment_id, ExperimentStatus.APPLIED)

    def mark_paused(self, experiment_id: str, reason: str) -> None:
        self._set_status(experiment_id, ExperimentStatus.PAUSED, pause_reason=reason)

    def _set_status(self, experiment_id: str, status: ExperimentStatus, **fields) -> None:
        self.db.query(Experiment).filter(Experiment.id == experiment_id).update(
            {"status": status.value, **fields}, synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()

    def delete_experiment(self, experiment_id: str) -> None:
        """Delete an experiment and its variants."""
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            return
        self.db.delete(experiment)
        self.db.commit()

    # ============ QUEUE ============

    def add_to_queue(
        self,
        restaurant_id: str,
        candidate: HypothesisCandidate,
        source: Union[QueueSource, str] = QueueSource.AI
    ) -> ExperimentQueueItem:
        item = self._queue_item(restaurant_id, candidate, source)
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        return item

    def add_batch(
        self,
        restaurant_id: str,
        candidates: Iterable[HypothesisCandidate],
        source: Union[QueueSource, str] = QueueSource.AI
    ) -> int:
        """Queue several hypotheses in one transaction. Returns the count added."""
        items = [self._queue_item(restaurant_id, c, source) for c in candidates]
        self.db.add_all(items)
        self.db.commit()
        return len(items)

    def _queue_item(self, restaurant_id: str, candidate: HypothesisCandidate, source) -> ExperimentQueueItem:
        return ExperimentQueueItem(
            restaurant_id=restaurant_id,
            hypothesis=candidate.hypothesis,
            change_type=candidate.change_type.value,
            variant_prompt=candidate.variant_prompt,
            variant_description=candidate.variant_description,
            priority=candidate.priority,
            source=QueueSource(source).value
        )

    def get_next_queue_item(self, restaurant_id: str) -> Optional[ExperimentQueueItem]:
        """Highest priority first, oldest first within a priority."""
        return self.db.query(ExperimentQueueItem).filter(
            ExperimentQueueItem.restaurant_id == restaurant_id
        ).order_by(
            ExperimentQueueItem.priority.desc(),
            ExperimentQueueItem.created_at.asc()
        ).first()

    def get_queue(self, restaurant_id: str, limit: int = 10) -> List[ExperimentQueueItem]:
        return self.db.query(ExperimentQueueItem).filter(
            ExperimentQueueItem.restaurant_id == restaurant_id
        ).order_by(
            ExperimentQueueItem.priority.desc(),
            ExperimentQueueItem.created_at.asc()
        ).limit(limit).all()

    def get_queue_count(self, restaurant_id: str) -> int:
        return self.db.query(ExperimentQueueItem).filter(
            ExperimentQueueItem.restaurant_id == restaurant_id
        ).count()

    def remove_from_queue(self, item_id: str) -> bool:
        result = self.db.execute(
            delete(ExperimentQueueItem).where(ExperimentQueueItem.id == item_id)
        )
        self.db.commit()
        return result.rowcount == 1

    def clear_stale_queue_items(self, days_old: int = 30) -> int:
        """Drop queued hypotheses nobody picked up within ``days_old`` days."""
        cutoff = utcnow() - timedelta(days=days_old)
        result = self.db.execute(
            delete(ExperimentQueueItem).where(ExperimentQueueItem.created_at < cutoff)
        )
        self.db.commit()
        return result.rowcount
