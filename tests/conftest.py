# tests/conftest.py
# Shared fixtures: a controllable clock, an in-memory store driven by that clock,
# stub scorers and an engine factory wired the same way as build_engine().

import itertools
import time
from datetime import datetime, timedelta, timezone

import pytest

from decision_engine.engine.dedup import DuplicateDetector
from decision_engine.engine.fatigue import FatigueEvaluator
from decision_engine.engine.models import NotificationEvent
from decision_engine.engine.prioritizer import DecisionEngine, PriorityResolver
from decision_engine.engine.scheduler import DeferQueueScheduler
from decision_engine.engine.scorer import CircuitBreaker, ScoreAdjustment, ScorerAdapter, ScorerError
from decision_engine.engine.store import InMemoryStore

NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOON):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FixedScorer:
    def __init__(self, delta: float = 0.05, version: str = "fixed-1"):
        self.delta = delta
        self.version = version
        self.calls = 0

    def adjust(self, event, score):
        self.calls += 1
        return ScoreAdjustment(delta=self.delta, model_version=self.version)


class SlowScorer:
    def __init__(self, delay: float = 0.3):
        self.delay = delay
        self.calls = 0

    def adjust(self, event, score):
        self.calls += 1
        time.sleep(self.delay)
        return ScoreAdjustment(delta=0.5, model_version="slow-1")


class FailingScorer:
    def __init__(self):
        self.calls = 0

    def adjust(self, event, score):
        self.calls += 1
        raise ScorerError("model offline")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStore(clock=clock.time)


@pytest.fixture
def make_event(clock):
    counter = itertools.count(1)

    def _make(**overrides) -> NotificationEvent:
        n = next(counter)
        data = {
            "user_id": "u1",
            "event_type": "message",
            "channel": "push",
            "title": f"Message number {n}",
            "message": f"Body text for message {n} with nothing in common",
            "source": f"src-{n}",
            "priority_hint": "medium",
            "created_at": clock.now,
        }
        data.update(overrides)
        return NotificationEvent(**data)

    return _make


@pytest.fixture
def make_engine(store, clock):
    def _make(scorer=None, timeout_ms=50, fatigue_kwargs=None, detector_kwargs=None,
              breaker=None, **engine_kwargs) -> DecisionEngine:
        fatigue = FatigueEvaluator(store, **(fatigue_kwargs or {}))
        adapter = ScorerAdapter(scorer, timeout_ms=timeout_ms, breaker=breaker or CircuitBreaker())
        detector = engine_kwargs.pop("detector", None) or DuplicateDetector(store, **(detector_kwargs or {}))
        return DecisionEngine(
            store,
            detector=detector,
            fatigue=fatigue,
            scorer=adapter,
            resolver=PriorityResolver(adapter, fatigue),
            clock=clock,
            **engine_kwargs,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def scheduler(engine, clock):
    return DeferQueueScheduler(engine, clock=clock)
