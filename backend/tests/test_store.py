"""Tests for the experiment store."""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from sitelift.database import utcnow
from sitelift.models import ExperimentStatus, QueueSource
from sitelift.services.errors import ExperimentConflict
from sitelift.services.store import ExperimentStore, MAX_COMPOUND_CHANGES, MAX_LEARNINGS, week_start_for

from conftest import make_candidate


def test_week_start_is_sunday():
    # 2026-10-14 is a Wednesday
    assert week_start_for(datetime(2026, 10, 14, 12, 0)) == date(2026, 10, 11)
    assert week_start_for(datetime(2026, 10, 11, 0, 0)) == date(2026, 10, 11)
    assert week_start_for(datetime(2026, 10, 10, 23, 59)) == date(2026, 10, 4)


def test_week_start_uses_local_timezone():
    """Sunday 03:00 UTC is still Saturday evening in New York."""
    assert week_start_for(datetime(2026, 10, 11, 3, 0), "America/New_York") == date(2026, 10, 4)


def test_optimizer_state_created_disabled(store: ExperimentStore):
    state = store.get_or_create_optimizer_state("rest_1")

    assert state.enabled is False
    assert state.experiments_this_week == 0
    assert state.learnings == []
    assert store.get_or_create_optimizer_state("rest_1").id == state.id


def test_set_enabled_and_get_all_enabled(store: ExperimentStore):
    store.set_enabled("rest_1", True)
    store.set_enabled("rest_2", False)

    enabled = store.get_all_enabled()

    assert [s.restaurant_id for s in enabled] == ["rest_1"]


def test_weekly_cap(store: ExperimentStore):
    for _ in range(3):
        assert store.can_run_experiment("rest_1", max_per_week=3) is True
        store.increment_weekly_count("rest_1")

    assert store.can_run_experiment("rest_1", max_per_week=3) is False
    assert store.get_optimizer_state("rest_1").experiments_this_week == 3


def test_increment_rolls_over_stale_week(store: ExperimentStore, db: Session):
    state = store.get_or_create_optimizer_state("rest_1")
    state.experiments_this_week = 3
    state.week_start = store.current_week_start() - timedelta(days=7)
    db.commit()

    assert store.can_run_experiment("rest_1", max_per_week=3) is True
    store.increment_weekly_count("rest_1")

    state = store.get_optimizer_state("rest_1")
    assert state.experiments_this_week == 1
    assert state.week_start == store.current_week_start()


def test_reset_weekly_counts_is_compare_and_swap(store: ExperimentStore, db: Session):
    state = store.get_or_create_optimizer_state("rest_1")
    state.experiments_this_week = 2
    state.week_start = store.current_week_start() - timedelta(days=7)
    db.commit()

    assert store.reset_weekly_counts() == 1
    # Second firing in the same week touches nothing
    assert store.reset_weekly_counts() == 0
    assert store.get_optimizer_state("rest_1").experiments_this_week == 0


def test_learnings_are_capped(store: ExperimentStore):
    for i in range(MAX_LEARNINGS + 5):
        store.append_learning("rest_1", {"hypothesis": f"h{i}", "result": "no_effect"})

    learnings = store.get_optimizer_state("rest_1").learnings
    assert len(learnings) == MAX_LEARNINGS
    assert learnings[-1]["hypothesis"] == f"h{MAX_LEARNINGS + 4}"
    assert "added_at" in learnings[0]


def test_compound_changes_are_capped(store: ExperimentStore):
    for i in range(MAX_COMPOUND_CHANGES + 3):
        store.append_compound_change("rest_1", {"change_type": "cta", "description": str(i)})

    changes = store.get_optimizer_state("rest_1").compound_changes
    assert len(changes) == MAX_COMPOUND_CHANGES
    assert changes[0]["description"] == "3"


def test_add_revenue_lift_counts_applied_winners(store: ExperimentStore):
    store.add_revenue_lift("rest_1", 0.25)
    store.add_revenue_lift("rest_1", 0.5)

    state = store.get_optimizer_state("rest_1")
    assert state.total_revenue_lift == pytest.approx(0.75)
    assert state.total_experiments == 2


def test_experiment_starts_pending_then_running(store: ExperimentStore):
    experiment = store.create_experiment("rest_1", "Bigger button", "cta", 0.03)
    assert experiment.status == ExperimentStatus.PENDING.value

    store.create_variant(experiment.id, "variant_a", False, "Bigger", "Make it bigger")
    store.create_variant(experiment.id, "control", True, "Original version")

    started = store.start_experiment(experiment.id)

    assert started.status == ExperimentStatus.RUNNING.value
    assert started.started_at is not None
    variants = store.get_variants(experiment.id)
    assert [v.name for v in variants] == ["control", "variant_a"]
    assert all(v.traffic_allocation == 0.5 for v in variants)


def test_second_running_experiment_conflicts(store: ExperimentStore, running_experiment):
    running_experiment("rest_1")
    second = store.create_experiment("rest_1", "Another test", "hero")

    with pytest.raises(ExperimentConflict):
        store.start_experiment(second.id)

    assert store.get_experiment(second.id).status == ExperimentStatus.PENDING.value


def test_running_experiments_in_different_restaurants(store: ExperimentStore, running_experiment):
    running_experiment("rest_1")
    running_experiment("rest_2")

    assert store.get_running_experiment("rest_1") is not None
    assert store.get_running_experiment("rest_2") is not None


def test_conclude_only_once(store: ExperimentStore, running_experiment):
    experiment = running_experiment()
    control_id = experiment.control.id

    assert store.conclude_experiment(experiment.id, control_id) is True
    assert store.conclude_experiment(experiment.id, control_id) is False

    concluded = store.get_experiment(experiment.id)
    assert concluded.status == ExperimentStatus.CONCLUDED.value
    assert concluded.winning_variant_id == control_id
    assert concluded.ended_at is not None


def test_update_variant_stats_clamps_conversions(store: ExperimentStore, running_experiment):
    experiment = running_experiment()
    treatment_id = experiment.treatment.id

    store.update_variant_stats(treatment_id, visitors=10, conversions=15, revenue=-3)

    variant = store.get_variants(experiment.id)[1]
    assert variant.visitors == 10
    assert variant.conversions == 10
    assert variant.revenue == 0.0


def test_update_all_allocations_in_control_first_order(store: ExperimentStore, running_experiment):
    experiment = running_experiment()

    store.update_all_allocations(experiment.id, [0.3, 0.7])

    control, treatment = store.get_variants(experiment.id)
    assert control.traffic_allocation == pytest.approx(0.3)
    assert treatment.traffic_allocation == pytest.approx(0.7)


def test_delete_experiment_removes_variants(store: ExperimentStore, db: Session):
    experiment = store.create_experiment("rest_1", "Bigger button", "cta")
    store.create_variant(experiment.id, "control", True)
    experiment_id = experiment.id

    store.delete_experiment(experiment_id)

    assert store.get_experiment(experiment_id) is None
    assert store.get_variants(experiment_id) == []


def test_queue_order_priority_then_age(store: ExperimentStore, db: Session):
    store.add_to_queue("rest_1", make_candidate("low", priority=2))
    first_high = store.add_to_queue("rest_1", make_candidate("high-1", priority=9))
    second_high = store.add_to_queue("rest_1", make_candidate("high-2", priority=9))
    second_high.created_at = first_high.created_at + timedelta(seconds=1)
    db.commit()

    assert [i.hypothesis for i in store.get_queue("rest_1")] == ["high-1", "high-2", "low"]
    assert store.get_next_queue_item("rest_1").id == first_high.id
    assert store.get_queue_count("rest_1") == 3


def test_add_batch_and_remove(store: ExperimentStore):
    added = store.add_batch("rest_1", [make_candidate("a"), make_candidate("b")], QueueSource.MANUAL)
    item = store.get_next_queue_item("rest_1")

    assert added == 2
    assert item.source == "manual"
    assert store.remove_from_queue(item.id) is True
    assert store.remove_from_queue(item.id) is False
    assert store.get_queue_count("rest_1") == 1


def test_clear_stale_queue_items(store: ExperimentStore, db: Session):
    old = store.add_to_queue("rest_1", make_candidate("old"))
    store.add_to_queue("rest_1", make_candidate("fresh"))
    old.created_at = utcnow() - timedelta(days=45)
    db.commit()

    assert store.clear_stale_queue_items(days_old=30) == 1
    assert [i.hypothesis for i in store.get_queue("rest_1")] == ["fresh"]


def test_touch_last_digest(store: ExperimentStore):
    assert store.get_or_create_optimizer_state("rest_1").last_digest_at is None

    store.touch_last_digest("rest_1")

    assert store.get_optimizer_state("rest_1").last_digest_at is not None
