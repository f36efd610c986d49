"""
AI Scorer Adapter — bounded, optional score adjustment.

The adapter asks a scorer for a delta under a hard deadline. The call runs on a
worker pool; when the deadline passes the future is cancelled and whatever it
returns later is discarded. A shared circuit breaker stops calling a failing
scorer for a cool-down period. Timeouts, open circuits and errors all produce
"no adjustment" with ``ai-fallback`` and never raise.
"""

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

import httpx

from decision_engine.engine.models import NotificationEvent, ReasonCode

logger = logging.getLogger(__name__)


class ScorerError(Exception):
    """The scorer returned an unusable answer."""


@dataclass
class ScoreAdjustment:
    delta: float
    model_version: str


class Scorer(Protocol):
    def adjust(self, event: NotificationEvent, score: float) -> Optional[ScoreAdjustment]: ...


class AbsentScorer:
    """No AI capability: always answers "no adjustment"."""

    def adjust(self, event: NotificationEvent, score: float) -> Optional[ScoreAdjustment]:
        return None


class HeuristicScorer:
    """
    Local stand-in for a model: nudges the score toward a per-event-type prior.
    Useful in demos and as a cheap default when no model endpoint is configured.
    """

    VERSION = "heuristic-1"

    TYPE_SCORES = {
        "message": 0.70, "security_alert": 0.95, "alert": 0.85,
        "reminder": 0.55, "update": 0.40, "promotion": 0.20, "system_event": 0.60,
    }
    WEIGHT = 0.5

    def adjust(self, event: NotificationEvent, score: float) -> Optional[ScoreAdjustment]:
        prior = self.TYPE_SCORES.get(event.event_type, 0.50)
        if event.priority_hint == "critical":
            prior = max(prior, 0.93)
        elif event.priority_hint == "low":
            prior = min(prior, 0.35)
        return ScoreAdjustment(delta=round((prior - score) * self.WEIGHT, 4), model_version=self.VERSION)


class HttpScorer:
    """
    Calls a model endpoint: POST ``{"event": ..., "score": ...}`` and expects
    ``{"delta": float, "model_version": str}``.
    """

    def __init__(self, url: str, timeout: float = 0.05, client: Optional[httpx.Client] = None):
        self.url = url
        self.client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def adjust(self, event: NotificationEvent, score: float) -> Optional[ScoreAdjustment]:
        payload = {
            "event": {
                "event_id": event.id,
                "user_id": event.user_id,
                "event_type": event.event_type,
                "channel": event.channel,
                "source": event.source,
                "priority_hint": event.priority_hint,
                "title": event.title,
                "message": event.message,
                "expires_at": event.expires_at.isoformat() if event.expires_at else None,
            },
            "score": score,
        }
        try:
            resp = self.client.post(self.url, json=payload)
            resp.raise_for_status()
            body = resp.json()
            return ScoreAdjustment(delta=float(body["delta"]), model_version=str(body["model_version"]))
        except httpx.HTTPError as e:
            raise ScorerError(f"scorer request failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ScorerError(f"malformed scorer response: {e}") from e


class CircuitBreaker:
    """Shared by every worker; opens after ``failure_threshold`` consecutive failures."""

    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 30,
                 clock: Callable[[], float] = time.monotonic):
        self.failures = 0
        self.state = "CLOSED"
        self.last_failure_time: Optional[float] = None
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._trial_in_flight = False

    def can_attempt(self) -> bool:
        with self._lock:
            if self.state == "OPEN":
                if self._clock() - self.last_failure_time >= self.reset_timeout:
                    self.state = "HALF-OPEN"
                    self._trial_in_flight = True
                    return True
                return False
            if self.state == "HALF-OPEN":
                # One trial call at a time
                if self._trial_in_flight:
                    return False
                self._trial_in_flight = True
            return True

    def record_success(self):
        with self._lock:
            self.failures = 0
            self.state = "CLOSED"
            self._trial_in_flight = False

    def record_failure(self):
        with self._lock:
            self.failures += 1
            self.last_failure_time = self._clock()
            self._trial_in_flight = False
            if self.state == "HALF-OPEN" or self.failures >= self.failure_threshold:
                if self.state != "OPEN":
                    logger.warning("AI scorer circuit breaker OPEN after %d failures", self.failures)
                self.state = "OPEN"

    @property
    def status(self):
        return self.state


@dataclass
class AIResult:
    delta: float = 0.0
    model_version: Optional[str] = None
    consulted: bool = False
    fallback_cause: Optional[str] = None
    elapsed_ms: float = 0.0
    reasons: List[str] = field(default_factory=list)


class ScorerAdapter:
    TIMEOUT_MS = 50
    MAX_DELTA = 0.15

    def __init__(self, scorer: Optional[Scorer] = None, timeout_ms: int = TIMEOUT_MS,
                 max_delta: float = MAX_DELTA, breaker: Optional[CircuitBreaker] = None,
                 max_workers: int = 8):
        self.scorer = scorer or AbsentScorer()
        self.timeout = timeout_ms / 1000.0
        self.max_delta = max_delta
        self.circuit_breaker = breaker or CircuitBreaker()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ai-scorer")

    @property
    def available(self) -> bool:
        return not isinstance(self.scorer, AbsentScorer)

    def adjust(self, event: NotificationEvent, score: float) -> AIResult:
        if not self.available:
            return self._fallback("absent")
        if not self.circuit_breaker.can_attempt():
            return self._fallback("circuit-open")

        started = time.monotonic()
        future = self._pool.submit(self.scorer.adjust, event, score)
        try:
            adjustment = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            self.circuit_breaker.record_failure()
            return self._fallback("timeout", started)
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.warning("AI scorer failed for event %s: %s", event.id, e)
            return self._fallback("error", started)

        if adjustment is None or not math.isfinite(adjustment.delta):
            self.circuit_breaker.record_failure()
            return self._fallback("invalid", started)

        self.circuit_breaker.record_success()
        delta = max(-self.max_delta, min(self.max_delta, adjustment.delta))
        return AIResult(
            delta=round(delta, 4),
            model_version=adjustment.model_version,
            consulted=True,
            elapsed_ms=(time.monotonic() - started) * 1000,
            reasons=[ReasonCode.AI_ADJUSTED],
        )

    def _fallback(self, cause: str, started: Optional[float] = None) -> AIResult:
        elapsed = (time.monotonic() - started) * 1000 if started is not None else 0.0
        if cause not in ("absent", "error"):
            logger.warning("AI scorer fallback (%s) after %.1f ms", cause, elapsed)
        return AIResult(fallback_cause=cause, elapsed_ms=elapsed,
                        reasons=[ReasonCode.AI_FALLBACK])

    def shutdown(self):
        self._pool.shutdown(wait=False, cancel_futures=True)
