"""
Core Prioritization Engine — orchestrates all components.

Per event, in a fixed order: rules → duplicates → fatigue → priority resolver
(which may consult the AI scorer). LATER outcomes go to the defer queue; the
scheduler re-submits them through ``reevaluate``, which runs the same pipeline.
"""

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from decision_engine.engine.audit import AuditLog
from decision_engine.engine.dedup import DuplicateDetector, DuplicateResult
from decision_engine.engine.dispatch import Dispatcher, OutboxDispatcher
from decision_engine.engine.fatigue import FatigueEvaluator, FatigueResult
from decision_engine.engine.models import (
    Decision,
    DeferQueueEntry,
    Disposition,
    NotificationEvent,
    ReasonCode,
    SuppressionRecord,
    SuppressionType,
    utcnow,
)
from decision_engine.engine.rules import RuleConfigStore, RuleEvaluator, RuleResult
from decision_engine.engine.scheduler import DeferQueue
from decision_engine.engine.scorer import AIResult, ScorerAdapter
from decision_engine.engine.store import KeyStore, StoreUnavailable

logger = logging.getLogger(__name__)


def classify_score(score: float, t_later: float, t_now: float) -> Disposition:
    """Lower bounds are inclusive: a score on a threshold takes the more urgent outcome."""
    if score >= t_now:
        return Disposition.NOW
    if score >= t_later:
        return Disposition.LATER
    return Disposition.NEVER


def urgency_boost(event: NotificationEvent, now: datetime) -> float:
    if event.expires_at is None:
        return 0.0
    minutes = (event.expires_at - now).total_seconds() / 60
    if minutes < 10:
        return 0.30
    if minutes < 60:
        return 0.10
    return 0.0


@dataclass
class Resolution:
    disposition: Disposition
    score: float
    reasons: List[str]
    explanation: str
    scheduled_for: Optional[datetime] = None
    model_version: Optional[str] = None
    suppression_type: Optional[SuppressionType] = None
    components: Dict[str, Any] = field(default_factory=dict)
    ai: Optional[AIResult] = None


class PriorityResolver:
    T_NOW = 0.75
    T_LATER = 0.35
    DEFAULT_DELAY = 900
    DEGRADED_DELAY = 60
    DIGEST_INTERVAL = 3600

    def __init__(self, adapter: ScorerAdapter, fatigue: FatigueEvaluator,
                 t_now: float = T_NOW, t_later: float = T_LATER,
                 default_delay: int = DEFAULT_DELAY, degraded_delay: int = DEGRADED_DELAY,
                 digest_interval: int = DIGEST_INTERVAL):
        if t_later > t_now:
            raise ValueError("t_later must be <= t_now")
        self.adapter = adapter
        self.fatigue = fatigue
        self.t_now = t_now
        self.t_later = t_later
        self.default_delay = default_delay
        self.degraded_delay = degraded_delay
        self.digest_interval = digest_interval

    def next_digest_slot(self, now: datetime) -> datetime:
        slot = int(now.timestamp() // self.digest_interval) + 1
        return datetime.fromtimestamp(slot * self.digest_interval, tz=timezone.utc)

    def resolve(self, event: NotificationEvent, rules: RuleResult, dup: Optional[DuplicateResult],
                fatigue: Optional[FatigueResult], now: datetime, degraded: bool = False) -> Resolution:
        reasons = list(rules.reasons)

        # Absolute verdicts: nothing below may override them
        if rules.terminal:
            return Resolution(Disposition.NEVER, 0.0, reasons, rules.explanation,
                              suppression_type=SuppressionType.RULE_BLOCK)
        dup = dup or DuplicateResult()
        reasons += dup.reasons
        if dup.verdict == Disposition.NEVER:
            kind = SuppressionType.EXACT_DUPLICATE if dup.is_exact_duplicate else SuppressionType.NEAR_DUPLICATE
            return Resolution(Disposition.NEVER, 0.0, reasons,
                              f"Duplicate of {dup.matched_event_id or 'a recent event'}",
                              suppression_type=kind)

        fatigue = fatigue or FatigueResult()
        boost = urgency_boost(event, now)
        if boost:
            reasons.append(ReasonCode.URGENCY_BOOST)
        reasons += fatigue.reasons

        # The guardrail is only read here; a slot is reserved once the outcome is NOW
        fatigue_adj = fatigue.adjustment
        bypass = False
        if fatigue.would_block and event.is_critical:
            try:
                bypass = self.fatigue.bypass_available(event, now)
            except StoreUnavailable:
                bypass = False
            if bypass:
                fatigue_adj -= fatigue.block_penalty
                reasons.append(ReasonCode.CRITICAL_BYPASS)
            else:
                reasons.append(ReasonCode.BYPASS_GUARDRAIL)
        waiting = fatigue.cooldown_until is not None and not bypass

        intermediate = rules.base_score + boost + dup.bias + fatigue_adj
        ai = self.adapter.adjust(event, round(max(0.0, min(1.0, intermediate)), 4))
        reasons += ai.reasons

        score = round(max(0.0, min(1.0, intermediate + ai.delta)), 4)
        disposition = classify_score(score, self.t_later, self.t_now)
        notes = []

        # A cooldown is a wait: what would clear T_later without it is floored into LATER
        if waiting and disposition == Disposition.NEVER:
            unpenalised = max(0.0, min(1.0, intermediate + ai.delta - fatigue.cooldown_penalty))
            if unpenalised >= self.t_later:
                score = self.t_later
                disposition = Disposition.LATER
                notes.append("cooldown active, waiting it out")

        reasons.append({
            Disposition.NOW: ReasonCode.THRESHOLD_NOW,
            Disposition.LATER: ReasonCode.THRESHOLD_LATER,
            Disposition.NEVER: ReasonCode.THRESHOLD_NEVER,
        }[disposition])
        notes.insert(0, f"score {score:.2f} (now≥{self.t_now}, later≥{self.t_later})")

        # Demotions: a would-be NOW that must wait
        if disposition == Disposition.NOW:
            if dup.verdict == Disposition.LATER:
                disposition = Disposition.LATER
                notes.append("near-duplicate merged into digest")
            elif dup.digest_eligible and not event.is_urgent:
                disposition = Disposition.LATER
                notes.append("burst of similar events batched to digest")
            elif fatigue.hold_until is not None:
                disposition = Disposition.LATER
                notes.append("held until quiet hours end")
            elif waiting:
                disposition = Disposition.LATER
                notes.append("held until cooldown ends")
            elif degraded and not event.is_critical:
                disposition = Disposition.LATER
                notes.append("store degraded, failing toward later")

        if disposition == Disposition.NOW and bypass:
            try:
                reserved = self.fatigue.try_bypass(event, now)
            except StoreUnavailable:
                reserved = False
            if not reserved:
                bypass = False
                disposition = Disposition.LATER
                reasons.append(ReasonCode.BYPASS_GUARDRAIL)
                notes.append("bypass guardrail reached concurrently")

        if disposition == Disposition.NOW:
            try:
                committed = self.fatigue.commit(event, now, bypass=bypass)
            except StoreUnavailable:
                committed = True
                if ReasonCode.STORE_DEGRADED not in reasons:
                    reasons.append(ReasonCode.STORE_DEGRADED)
                if not event.is_critical:
                    degraded = True
                    disposition = Disposition.LATER
                    notes.append("store failed at commit, failing toward later")
            if not committed:
                disposition = Disposition.LATER
                reasons.append(ReasonCode.FATIGUE_CAP)
                fatigue.defer_until = max(filter(None, [fatigue.defer_until, self.fatigue.next_window_start(now)]))
                notes.append("window cap reached concurrently")

        resolution = Resolution(
            disposition=disposition,
            score=score,
            reasons=reasons,
            explanation="; ".join(filter(None, [rules.explanation] + notes)),
            model_version=ai.model_version,
            ai=ai,
            components={
                "base": round(rules.base_score, 4),
                "urgency": boost,
                "duplicate_bias": dup.bias,
                "fatigue": round(fatigue_adj, 4),
                "ai_delta": ai.delta,
                "final": score,
                "bypass": bypass,
            },
        )

        if disposition == Disposition.LATER:
            candidates = [now + timedelta(seconds=self.default_delay), fatigue.defer_until, fatigue.hold_until]
            if dup.verdict == Disposition.LATER or dup.digest_eligible:
                candidates.append(self.next_digest_slot(now))
            if degraded:
                candidates.append(now + timedelta(seconds=self.degraded_delay))
            scheduled = max(c for c in candidates if c is not None)
            if event.expires_at is not None and scheduled > event.expires_at:
                resolution.disposition = Disposition.NEVER
                resolution.reasons.append(ReasonCode.EXPIRES_BEFORE_SCHEDULE)
                resolution.explanation += "; would expire before it could be sent"
            else:
                resolution.scheduled_for = scheduled

        if resolution.disposition == Disposition.NEVER:
            if dup.duplicate_type == "near":
                resolution.suppression_type = SuppressionType.NEAR_DUPLICATE
            elif ReasonCode.FATIGUE_CAP in fatigue.reasons:
                resolution.suppression_type = SuppressionType.FATIGUE_CAP
            elif ReasonCode.COOLDOWN_BLOCK in fatigue.reasons or ReasonCode.COOLDOWN_PENALTY in fatigue.reasons:
                resolution.suppression_type = SuppressionType.COOLDOWN
            else:
                resolution.suppression_type = SuppressionType.LOW_SCORE
        return resolution


class DecisionEngine:
    """
    Entry points: ``evaluate`` for new events, ``reevaluate`` for defer-queue
    entries, ``get_audit_trail`` for traceability. Components are injected;
    see ``decision_engine.engine.factory.build_engine`` for the wiring.
    """

    def __init__(self, store: KeyStore, rules: Optional[RuleConfigStore] = None,
                 detector: Optional[DuplicateDetector] = None,
                 fatigue: Optional[FatigueEvaluator] = None,
                 scorer: Optional[ScorerAdapter] = None,
                 resolver: Optional[PriorityResolver] = None,
                 audit: Optional[AuditLog] = None,
                 dispatcher: Optional[Dispatcher] = None,
                 defer_queue: Optional[DeferQueue] = None,
                 clock: Callable[[], datetime] = utcnow,
                 dispatched_ttl: int = 7 * 86400,
                 failure_retry_seconds: int = 60,
                 max_tracked_events: int = 10_000):
        self.store = store
        self.rules = rules or RuleConfigStore()
        self.rule_evaluator = RuleEvaluator()
        self.dedup = detector or DuplicateDetector(store)
        self.fatigue = fatigue or FatigueEvaluator(store)
        self.scorer = scorer or ScorerAdapter()
        self.resolver = resolver or PriorityResolver(self.scorer, self.fatigue)
        self.audit = audit or AuditLog()
        self.dispatcher = dispatcher or OutboxDispatcher()
        self.defer_queue = defer_queue if defer_queue is not None else DeferQueue()
        self.clock = clock
        self.dispatched_ttl = dispatched_ttl
        self.failure_retry_seconds = failure_retry_seconds
        self.max_tracked_events = max_tracked_events
        # Recent events by id, oldest evicted first
        self._events: "OrderedDict[str, NotificationEvent]" = OrderedDict()

    # ── public operations ───────────────────────────────────

    def evaluate(self, event: NotificationEvent, now: Optional[datetime] = None) -> Decision:
        now = now or self.clock()
        self._track(event)
        decision = self._run(event, now, attempt=0)
        if decision.disposition == Disposition.LATER:
            self._enqueue(event, decision)
        return decision

    def reevaluate(self, entry: DeferQueueEntry, now: Optional[datetime] = None) -> Decision:
        """Same pipeline as ``evaluate``; queue bookkeeping is the scheduler's job."""
        now = now or self.clock()
        self._track(entry.event)
        return self._run(entry.event, now, attempt=entry.retry_count + 1, reevaluation=True)

    def get_audit_trail(self, event_id: str) -> Dict[str, Any]:
        return self.audit.get_audit_trail(event_id)

    def get_event(self, event_id: str) -> Optional[NotificationEvent]:
        return self._events.get(event_id)

    def confirm_dispatch(self, event_id: str, delivered_at: Optional[datetime] = None) -> bool:
        event = self._events.get(event_id)
        if event is None:
            return False
        self.fatigue.record_delivery(event.user_id, event.channel, delivered_at or self.clock())
        return True

    def _track(self, event: NotificationEvent):
        self._events[event.id] = event
        self._events.move_to_end(event.id)
        while len(self._events) > self.max_tracked_events:
            self._events.popitem(last=False)

    # ── pipeline ────────────────────────────────────────────

    def _run(self, event: NotificationEvent, now: datetime, attempt: int,
             reevaluation: bool = False) -> Decision:
        try:
            decision, trace, suppression = self._pipeline(event, now, attempt, reevaluation)
        except Exception:
            logger.exception("Engine failure while evaluating event %s", event.id)
            decision = Decision(
                event_id=event.id,
                user_id=event.user_id,
                disposition=Disposition.LATER,
                score=0.0,
                reasons=(ReasonCode.ENGINE_FAILURE,),
                explanation="Engine failure; event re-queued for another attempt",
                rule_version=self.rules.current().version,
                scheduled_for=now + timedelta(seconds=self.failure_retry_seconds),
                degraded=True,
                attempt=attempt,
                decided_at=now,
            )
            trace, suppression = {"engine_failure": True}, None

        self._audit(decision, trace, suppression)
        if decision.disposition == Disposition.NOW:
            self._handoff(event, decision)
        logger.info(
            "Decision %s for event %s: %s (score %.3f) %s",
            decision.id, event.id, decision.disposition.value, decision.score, ",".join(decision.reasons),
        )
        return decision

    def _pipeline(self, event: NotificationEvent, now: datetime, attempt: int, reevaluation: bool):
        snapshot = self.rules.current()
        trace: Dict[str, Any] = {"rule_version": snapshot.version, "reevaluation": reevaluation}
        degraded = False

        rule_result = self.rule_evaluator.evaluate(event, snapshot, now)
        trace["rules"] = asdict(rule_result)

        dup: Optional[DuplicateResult] = None
        fatigue: Optional[FatigueResult] = None
        dispatched = not rule_result.terminal and self._was_dispatched(event)
        if not rule_result.terminal and not dispatched:
            try:
                dup = self.dedup.check(event, now, reevaluation=reevaluation)
            except StoreUnavailable as e:
                logger.warning("Store unavailable for dedupe of %s: %s", event.id, e)
                degraded, dup = True, DuplicateResult()
            trace["duplicates"] = asdict(dup)

            if dup.verdict != Disposition.NEVER:
                try:
                    fatigue = self.fatigue.evaluate(event, now)
                except StoreUnavailable as e:
                    logger.warning("Store unavailable for fatigue of %s: %s", event.id, e)
                    degraded, fatigue = True, FatigueResult()
                trace["fatigue"] = asdict(fatigue)

        if dispatched:
            resolution = Resolution(
                Disposition.NEVER, 0.0, list(rule_result.reasons) + [ReasonCode.ALREADY_DISPATCHED],
                "A NOW decision was already issued for this event",
                suppression_type=SuppressionType.EXACT_DUPLICATE,
            )
        else:
            resolution = self.resolver.resolve(event, rule_result, dup, fatigue, now, degraded=degraded)
        reasons = resolution.reasons
        if degraded and ReasonCode.STORE_DEGRADED not in reasons:
            reasons.insert(len(rule_result.reasons), ReasonCode.STORE_DEGRADED)

        if resolution.disposition == Disposition.NOW:
            self._claim_dispatch(event, resolution, now)
        degraded = degraded or ReasonCode.STORE_DEGRADED in reasons
        if reevaluation:
            reasons.append(ReasonCode.REEVALUATION)

        trace["score"] = resolution.components
        if resolution.ai is not None:
            trace["ai"] = asdict(resolution.ai)

        decision = Decision(
            event_id=event.id,
            user_id=event.user_id,
            disposition=resolution.disposition,
            score=resolution.score,
            reasons=tuple(reasons),
            explanation=resolution.explanation or resolution.disposition.value,
            rule_version=snapshot.version,
            model_version=resolution.model_version,
            scheduled_for=resolution.scheduled_for,
            degraded=degraded,
            attempt=attempt,
            decided_at=now,
        )

        suppression = None
        if decision.disposition == Disposition.NEVER:
            ttl_end = None
            if resolution.suppression_type == SuppressionType.EXACT_DUPLICATE:
                ttl_end = now + timedelta(seconds=self.dedup.exact_ttl)
            elif resolution.suppression_type == SuppressionType.NEAR_DUPLICATE:
                ttl_end = now + timedelta(seconds=self.dedup.near_window)
            suppression = SuppressionRecord(
                event_id=event.id,
                user_id=event.user_id,
                suppression_type=resolution.suppression_type or SuppressionType.LOW_SCORE,
                reason=decision.explanation,
                ttl_end=ttl_end,
                decision_id=decision.id,
                created_at=now,
            )
        return decision, trace, suppression

    def _was_dispatched(self, event: NotificationEvent) -> bool:
        try:
            return self.store.get(f"dispatched:{event.id}") is not None
        except StoreUnavailable:
            return False

    def _claim_dispatch(self, event: NotificationEvent, resolution: Resolution, now: datetime) -> None:
        """Only one NOW per event id; a store failure here fails toward LATER except for critical."""
        try:
            claimed = self.store.set_nx(f"dispatched:{event.id}", "1", self.dispatched_ttl)
        except StoreUnavailable as e:
            logger.warning("Store unavailable claiming dispatch of %s: %s", event.id, e)
            if ReasonCode.STORE_DEGRADED not in resolution.reasons:
                resolution.reasons.append(ReasonCode.STORE_DEGRADED)
            if event.is_critical:
                return
            retry_at = now + timedelta(seconds=self.resolver.degraded_delay)
            if event.expires_at is not None and retry_at > event.expires_at:
                resolution.disposition = Disposition.NEVER
                resolution.suppression_type = SuppressionType.LOW_SCORE
                resolution.reasons.append(ReasonCode.EXPIRES_BEFORE_SCHEDULE)
                resolution.explanation += "; store unavailable and the event expires before a retry"
            else:
                resolution.disposition = Disposition.LATER
                resolution.scheduled_for = retry_at
                resolution.explanation += "; store unavailable claiming dispatch, failing toward later"
            return
        if not claimed:
            resolution.disposition = Disposition.NEVER
            resolution.suppression_type = SuppressionType.EXACT_DUPLICATE
            resolution.reasons.append(ReasonCode.ALREADY_DISPATCHED)
            resolution.explanation += "; a NOW decision was already issued for this event"

    # ── collaborator hand-offs ──────────────────────────────

    def _audit(self, decision: Decision, trace: Dict[str, Any], suppression: Optional[SuppressionRecord]):
        try:
            self.audit.record(decision, trace)
            if suppression is not None:
                self.audit.record_suppression(suppression)
        except Exception:
            logger.exception("Audit hand-off failed for decision %s", decision.id)

    def _handoff(self, event: NotificationEvent, decision: Decision):
        try:
            self.dispatcher.dispatch(event, decision)
        except Exception:
            logger.exception("Dispatch hand-off failed for event %s", event.id)

    def _enqueue(self, event: NotificationEvent, decision: Decision):
        try:
            self.defer_queue.push(DeferQueueEntry(
                event=event, scheduled_for=decision.scheduled_for, last_decision_id=decision.id,
            ))
        except StoreUnavailable:
            logger.exception("Could not queue event %s for %s", event.id, decision.scheduled_for)
