"""
Rules Engine — evaluates human-configurable rules against a published RuleConfig.

Rule sets are immutable snapshots: publishing builds a new RuleConfig with the next
version number and swaps the reference, so a decision in flight keeps the snapshot
it started with. Rules can also be loaded from a JSON file (``RULES_FILE``).
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, List, Optional

from decision_engine.engine.models import (
    CHANNELS,
    PRIORITY_LEVELS,
    NotificationEvent,
    ReasonCode,
    Rule,
    RuleConfig,
)

logger = logging.getLogger(__name__)


# Built-in default rules (in production these live in the rule-config store)
DEFAULT_RULES = [
    {
        "name": "always_send_security_alerts",
        "priority": 100,
        "conditions": [{"field": "event_type", "op": "eq", "value": "security_alert"}],
        "action": "SCORE",
        "score": 0.30,
        "reason": "Security alerts are sent immediately",
    },
    {
        "name": "always_send_critical",
        "priority": 99,
        "conditions": [{"field": "priority_hint", "op": "eq", "value": "critical"}],
        "action": "SCORE",
        "score": 0.20,
        "reason": "Critical priority is sent immediately",
    },
    {
        "name": "suppress_promos_low_priority",
        "priority": 50,
        "conditions": [
            {"field": "event_type", "op": "eq", "value": "promotion"},
            {"field": "priority_hint", "op": "in", "value": ["low", None]},
        ],
        "action": "NEVER",
        "reason": "Low-priority promotions suppressed to reduce noise",
    },
    {
        "name": "defer_updates_to_digest",
        "priority": 40,
        "conditions": [{"field": "event_type", "op": "eq", "value": "update"}],
        "action": "SCORE",
        "score": -0.10,
        "reason": "Updates lean towards the digest",
    },
]

PRIORITY_SCORES = {
    "critical": 0.95,
    "high":     0.78,
    "medium":   0.52,
    "low":      0.22,
}
DEFAULT_PRIORITY_SCORE = 0.40


def load_rules_file(path: str) -> List[dict]:
    """Accepts a JSON list of rules or ``{"rules": [...]}``."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return data.get("rules", []) if isinstance(data, dict) else data


def validate_event(event: NotificationEvent) -> Optional[str]:
    """Returns a description of the first schema defect, or None."""
    if not event.id:
        return "missing event id"
    if not event.user_id:
        return "missing user_id"
    if not event.event_type:
        return "missing event_type"
    if event.channel not in CHANNELS:
        return f"unknown channel '{event.channel}'"
    if event.priority_hint is not None and event.priority_hint not in PRIORITY_LEVELS:
        return f"unknown priority_hint '{event.priority_hint}'"
    if not event.text:
        return "empty title and message"
    if event.expires_at is not None and event.expires_at < event.created_at:
        return "expires_at is before created_at"
    return None


class RuleConfigStore:
    """Holds the currently published RuleConfig; publishing is copy-on-write."""

    def __init__(self, rules: Optional[Iterable[dict]] = None, disabled_channels: Iterable[str] = ()):
        self._lock = threading.Lock()
        initial = list(DEFAULT_RULES) if rules is None else list(rules)
        self._current = RuleConfig(
            version=1,
            rules=tuple(Rule.from_dict(r) for r in initial),
            disabled_channels=frozenset(disabled_channels),
        )

    @classmethod
    def with_rules_file(cls, rules_file: Optional[str]) -> "RuleConfigStore":
        rules = list(DEFAULT_RULES)
        if rules_file and os.path.exists(rules_file):
            rules.extend(load_rules_file(rules_file))
            logger.info("Loaded rules from %s", rules_file)
        return cls(rules)

    def current(self) -> RuleConfig:
        return self._current

    def publish(self, rules: Optional[Iterable[dict]] = None, enabled: Optional[bool] = None,
                disabled_channels: Optional[Iterable[str]] = None) -> RuleConfig:
        """Publish a new version. Arguments left as None are carried over."""
        with self._lock:
            prev = self._current
            new = RuleConfig(
                version=prev.version + 1,
                rules=prev.rules if rules is None else tuple(Rule.from_dict(r) for r in rules),
                enabled=prev.enabled if enabled is None else enabled,
                disabled_channels=(prev.disabled_channels if disabled_channels is None
                                   else frozenset(disabled_channels)),
            )
            self._current = new
        logger.info("Published rule config version %s (%d rules)", new.version, len(new.rules))
        return new

    def add_rule(self, rule: dict) -> RuleConfig:
        """Publish the current rules plus ``rule`` as a new version."""
        Rule.from_dict(rule)
        rules = [r.to_dict() for r in self._current.rules if r.name != rule["name"]]
        rules.append(rule)
        return self.publish(rules)


@dataclass
class RuleResult:
    rule_version: int
    terminal: bool = False
    reason_code: Optional[str] = None
    explanation: str = ""
    base_score: float = 0.0
    matched_rules: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)


class RuleEvaluator:
    """Pure function of (event, RuleConfig snapshot, now)."""

    def evaluate(self, event: NotificationEvent, config: RuleConfig, now: datetime) -> RuleResult:
        result = RuleResult(rule_version=config.version)

        defect = validate_event(event)
        if defect:
            return self._terminal(result, ReasonCode.INVALID_SCHEMA, f"Invalid event: {defect}")
        if event.is_expired(now):
            return self._terminal(result, ReasonCode.EXPIRED, "Event expired before processing")
        if event.channel in config.disabled_channels:
            return self._terminal(result, ReasonCode.CHANNEL_DISABLED,
                                  f"Channel '{event.channel}' is disabled")

        hint = event.priority_hint or "none"
        result.base_score = PRIORITY_SCORES.get(event.priority_hint, DEFAULT_PRIORITY_SCORE)
        result.reasons.append(f"{ReasonCode.BASE_PRIORITY}:{hint}")

        if not config.enabled:
            result.reasons.append(ReasonCode.RULES_DISABLED)
            return result

        explanations = []
        for rule in config.ordered_rules():
            if not rule.enabled or not self._matches(rule, event):
                continue
            result.matched_rules.append(rule.name)
            if rule.action == "NEVER":
                result.reasons.append(f"{ReasonCode.RULE_MATCH}:{rule.name}")
                return self._terminal(result, ReasonCode.RULE_DENY, rule.reason)
            result.base_score += rule.score
            result.reasons.append(f"{ReasonCode.RULE_MATCH}:{rule.name}")
            explanations.append(rule.reason)

        result.explanation = "; ".join(explanations)
        return result

    @staticmethod
    def _terminal(result: RuleResult, code: str, explanation: str) -> RuleResult:
        result.terminal = True
        result.reason_code = code
        result.explanation = explanation
        result.base_score = 0.0
        result.reasons.append(code)
        return result

    def _matches(self, rule: Rule, event: NotificationEvent) -> bool:
        return all(self._check(c.op, self._get_field(c.field, event), c.value) for c in rule.conditions)

    @staticmethod
    def _check(op: str, actual: Any, expected: Any) -> bool:
        if op == "eq":
            return actual == expected
        if op == "neq":
            return actual != expected
        if op == "in":
            return actual in expected
        if op == "not_in":
            return actual not in expected
        if op == "contains":
            return actual is not None and str(expected).lower() in str(actual).lower()
        if op == "exists":
            return (actual is not None) == bool(expected if expected is not None else True)
        if op in ("gte", "lte"):
            try:
                return float(actual) >= float(expected) if op == "gte" else float(actual) <= float(expected)
            except (TypeError, ValueError):
                return False
        logger.warning("Unknown rule operator '%s' treated as no match", op)
        return False

    @staticmethod
    def _get_field(name: str, event: NotificationEvent) -> Any:
        if hasattr(event, name):
            return getattr(event, name)
        return event.metadata.get(name)
