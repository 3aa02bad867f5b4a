"""Shared fixtures: SQLite database, fake Redis and fake collaborators."""
import os
import random
import tempfile
import uuid

# Settings are read at import time, so the environment must be ready first
_DB_PATH = os.path.join(tempfile.gettempdir(), f"sitelift-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_PATH}"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest

from sitelift.database import Base, SessionLocal, engine
from sitelift.models import AnalyticsEvent
from sitelift.schemas.hypothesis import HypothesisCandidate
from sitelift.services.errors import VariantPublishError
from sitelift.services.metrics import MetricsProvider
from sitelift.services.optimizer import ABOptimizer
from sitelift.services.statistics import StatisticalEngine
from sitelift.services.store import ExperimentStore


class FakeRedis:
    """Just enough of redis.Redis for the optimizer lease."""

    def __init__(self):
        self.data = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value.encode() if isinstance(value, str) else value
        return True

    def get(self, key):
        return self.data.get(key)

    def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    def exists(self, key):
        return int(key in self.data)

    def ping(self):
        return True

    def register_script(self, script):
        # The only script in use is the lease compare-and-delete
        def compare_and_delete(keys, args):
            token = args[0].encode() if isinstance(args[0], str) else args[0]
            if self.data.get(keys[0]) != token:
                return 0
            return self.delete(keys[0])

        return compare_and_delete


class FakePublisher:
    """Records calls instead of talking to the site generator."""

    def __init__(self):
        self.generated = []
        self.promoted = []
        self.deleted = []
        self.fail_generate = False
        self.fail_promote = False

    async def generate_variant(self, restaurant_id, variant_id, change_prompt):
        if self.fail_generate:
            raise VariantPublishError("generator unavailable")
        self.generated.append((restaurant_id, variant_id, change_prompt))
        return {"variant_id": variant_id}

    async def promote_variant(self, restaurant_id, variant_id):
        if self.fail_promote:
            raise VariantPublishError("promote failed")
        self.promoted.append((restaurant_id, variant_id))

    async def delete_variant(self, restaurant_id, variant_id):
        self.deleted.append((restaurant_id, variant_id))


class FakeHypothesisSource:
    """Returns canned candidates and remembers how it was called."""

    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error
        self.calls = []

    async def generate_hypotheses(self, restaurant_id, metrics, learnings, existing_queue, count):
        self.calls.append({
            "restaurant_id": restaurant_id,
            "metrics": metrics,
            "learnings": learnings,
            "existing_queue": list(existing_queue),
            "count": count
        })
        if self.error:
            raise self.error
        return self.candidates[:count]


def make_candidate(hypothesis="Bigger order button", change_type="cta", priority=5, **extra):
    return HypothesisCandidate(
        hypothesis=hypothesis,
        changeType=change_type,
        variantPrompt=extra.get("variant_prompt", f"Apply: {hypothesis}"),
        variantDescription=extra.get("variant_description", hypothesis),
        priority=priority
    )


@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    return ExperimentStore(db)


@pytest.fixture
def metrics(db):
    return MetricsProvider(db)


@pytest.fixture
def stats_engine():
    return StatisticalEngine(rng=random.Random(42))


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def hypothesis_source():
    return FakeHypothesisSource()


@pytest.fixture
def optimizer(store, metrics, publisher, hypothesis_source, stats_engine):
    return ABOptimizer(
        store=store,
        metrics=metrics,
        publisher=publisher,
        hypothesis_source=hypothesis_source,
        engine=stats_engine
    )


@pytest.fixture
def track(db):
    """
    Insert analytics events.

    ``track(restaurant_id, sessions=100, orders=5, variant_id=None, order_total=30.0)``
    creates ``sessions`` pageview sessions of which the first ``orders`` also order.
    """
    def _track(restaurant_id, sessions, orders=0, variant_id=None, order_total=30.0, created_at=None):
        prefix = uuid.uuid4().hex[:8]
        stamp = {"created_at": created_at} if created_at else {}
        events = []
        for i in range(sessions):
            session_id = f"{prefix}-{i}"
            events.append(AnalyticsEvent(
                restaurant_id=restaurant_id,
                session_id=session_id,
                variant_id=variant_id,
                event_type="pageview",
                **stamp
            ))
            if i < orders:
                events.append(AnalyticsEvent(
                    restaurant_id=restaurant_id,
                    session_id=session_id,
                    variant_id=variant_id,
                    event_type="order",
                    value=order_total,
                    event_data={"total": order_total},
                    **stamp
                ))
        db.add_all(events)
        db.commit()
        return events

    return _track


@pytest.fixture
def running_experiment(store):
    """A running cta experiment for rest_1 with control and treatment."""
    def _create(restaurant_id="rest_1", hypothesis="Bigger order button"):
        experiment = store.create_experiment(restaurant_id, hypothesis, "cta", 0.03)
        store.create_variant(experiment.id, "control", True, change_description="Original version")
        store.create_variant(
            experiment.id, "variant_a", False,
            change_description="Bigger button", change_prompt="Make the order button bigger"
        )
        return store.start_experiment(experiment.id)

    return _create
