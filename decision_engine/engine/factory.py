"""
Builds a fully wired engine and scheduler from ``Settings``.
"""

import logging
from typing import Optional, Tuple

from decision_engine.core.config import Settings, settings as default_settings
from decision_engine.engine.dedup import DuplicateDetector
from decision_engine.engine.fatigue import FatigueEvaluator
from decision_engine.engine.prioritizer import DecisionEngine, PriorityResolver
from decision_engine.engine.rules import RuleConfigStore
from decision_engine.engine.scheduler import DeferQueue, DeferQueueScheduler, RedisDeferQueue
from decision_engine.engine.scorer import (
    AbsentScorer,
    CircuitBreaker,
    HeuristicScorer,
    HttpScorer,
    ScorerAdapter,
)
from decision_engine.engine.store import InMemoryStore, KeyStore, RedisStore

logger = logging.getLogger(__name__)


def build_store(cfg: Settings) -> KeyStore:
    if cfg.STORE_BACKEND == "redis":
        return RedisStore.from_url(cfg.REDIS_URL)
    if cfg.STORE_BACKEND != "memory":
        raise ValueError(f"Unknown STORE_BACKEND '{cfg.STORE_BACKEND}'")
    return InMemoryStore()


def build_defer_queue(cfg: Settings, store: KeyStore):
    """The queue follows the store backend so LATER entries are shared the same way."""
    if cfg.STORE_BACKEND == "redis" and isinstance(store, RedisStore):
        return RedisDeferQueue(store.client, prefix=store.prefix)
    return DeferQueue()


def build_scorer(cfg: Settings) -> ScorerAdapter:
    if cfg.AI_SCORER == "http":
        scorer = HttpScorer(cfg.AI_URL, timeout=cfg.AI_TIMEOUT_MS / 1000.0)
    elif cfg.AI_SCORER == "heuristic":
        scorer = HeuristicScorer()
    else:
        scorer = AbsentScorer()
    return ScorerAdapter(
        scorer=scorer,
        timeout_ms=cfg.AI_TIMEOUT_MS,
        max_delta=cfg.AI_MAX_DELTA,
        breaker=CircuitBreaker(cfg.BREAKER_FAILURES, cfg.BREAKER_RESET_SECONDS),
        max_workers=cfg.AI_WORKERS,
    )


def build_engine(cfg: Optional[Settings] = None,
                 store: Optional[KeyStore] = None) -> Tuple[DecisionEngine, DeferQueueScheduler]:
    cfg = cfg or default_settings
    store = store or build_store(cfg)
    fatigue = FatigueEvaluator(
        store,
        window_seconds=cfg.FATIGUE_WINDOW_SECONDS,
        channel_caps=cfg.CHANNEL_CAPS,
        channel_cooldowns=cfg.CHANNEL_COOLDOWNS,
        bypass_cap=cfg.BYPASS_CAP,
        bypass_window=cfg.BYPASS_WINDOW_SECONDS,
    )
    adapter = build_scorer(cfg)
    engine = DecisionEngine(
        store,
        rules=RuleConfigStore.with_rules_file(cfg.RULES_FILE),
        detector=DuplicateDetector(
            store,
            exact_ttl=cfg.DEDUPE_TTL_SECONDS,
            bucket_seconds=cfg.DEDUPE_BUCKET_SECONDS,
            near_window=cfg.NEAR_DUP_WINDOW_SECONDS,
            near_threshold=cfg.NEAR_DUP_THRESHOLD,
            digest_min_events=cfg.DIGEST_MIN_EVENTS,
        ),
        fatigue=fatigue,
        scorer=adapter,
        resolver=PriorityResolver(
            adapter, fatigue,
            t_now=cfg.T_NOW, t_later=cfg.T_LATER,
            default_delay=cfg.DEFER_DEFAULT_DELAY_SECONDS,
            degraded_delay=cfg.DEGRADED_RETRY_SECONDS,
        ),
        defer_queue=build_defer_queue(cfg, store),
        failure_retry_seconds=cfg.DEGRADED_RETRY_SECONDS,
    )
    scheduler = DeferQueueScheduler(
        engine,
        max_retries=cfg.DEFER_MAX_RETRIES,
        backoff_base=cfg.DEFER_BACKOFF_BASE_SECONDS,
        backoff_max=cfg.DEFER_BACKOFF_MAX_SECONDS,
        poll_interval=cfg.DEFER_POLL_SECONDS,
    )
    logger.info("Engine built: store=%s scorer=%s", cfg.STORE_BACKEND, cfg.AI_SCORER)
    return engine, scheduler
