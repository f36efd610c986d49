import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


PRIORITY_LEVELS = ("critical", "high", "medium", "low")
CHANNELS = ("push", "sms", "email", "in_app")


class Disposition(str, Enum):
    NOW = "NOW"
    LATER = "LATER"
    NEVER = "NEVER"


class DeferStatus(str, Enum):
    PENDING = "pending"
    RE_EVALUATING = "re-evaluating"
    DISPATCHED = "dispatched"
    SUPPRESSED = "suppressed"
    DEAD_LETTERED = "dead-lettered"


class SuppressionType(str, Enum):
    EXACT_DUPLICATE = "exact-duplicate"
    NEAR_DUPLICATE = "near-duplicate"
    RULE_BLOCK = "rule-block"
    FATIGUE_CAP = "fatigue-cap"
    COOLDOWN = "cooldown"
    LOW_SCORE = "low-score"


class ReasonCode:
    # Rule evaluator
    INVALID_SCHEMA = "invalid-schema"
    EXPIRED = "expired"
    CHANNEL_DISABLED = "channel-disabled"
    RULE_DENY = "rule-deny"
    RULE_MATCH = "rule-match"            # rule-match:<rule_id>
    RULES_DISABLED = "rules-disabled"
    BASE_PRIORITY = "base-priority"      # base-priority:<hint>

    # Duplicate detector
    EXACT_DUPLICATE = "exact-duplicate"
    NEAR_DUPLICATE_DIGEST = "near-duplicate-digest"
    NEAR_DUPLICATE_REDUNDANT = "near-duplicate-redundant"
    NEAR_DUPLICATE_ALLOWED = "near-duplicate-allowed"
    DIGEST_ELIGIBLE = "digest-eligible"

    # Fatigue evaluator
    COOLDOWN_PENALTY = "cooldown-penalty"
    COOLDOWN_BLOCK = "cooldown-block"
    FATIGUE_CAP = "fatigue-cap"
    QUIET_HOURS = "quiet-hours"
    CRITICAL_BYPASS = "critical-bypass"
    BYPASS_GUARDRAIL = "bypass-guardrail"

    # Scorer
    AI_ADJUSTED = "ai-adjusted"
    AI_FALLBACK = "ai-fallback"

    # Resolver / engine
    URGENCY_BOOST = "urgency-boost"
    THRESHOLD_NOW = "threshold-now"
    THRESHOLD_LATER = "threshold-later"
    THRESHOLD_NEVER = "threshold-never"
    EXPIRES_BEFORE_SCHEDULE = "expires-before-schedule"
    STORE_DEGRADED = "store-degraded"
    ALREADY_DISPATCHED = "already-dispatched"
    REEVALUATION = "reevaluation"
    ENGINE_FAILURE = "engine-failure"


def content_hash(title: Optional[str], message: Optional[str]) -> str:
    text = f"{title or ''}\n{message or ''}"
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class NotificationEvent:
    """An ingested event. Immutable; re-evaluations reuse the same instance."""

    user_id: str
    event_type: str
    channel: str
    title: Optional[str] = None
    message: Optional[str] = None
    source: Optional[str] = None
    priority_hint: Optional[str] = None   # critical / high / medium / low
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    dedupe_key: Optional[str] = None
    content_hash: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        object.__setattr__(self, "created_at", as_utc(self.created_at))
        object.__setattr__(self, "expires_at", as_utc(self.expires_at))
        if not self.content_hash:
            object.__setattr__(self, "content_hash", content_hash(self.title, self.message))

    @property
    def is_critical(self) -> bool:
        return self.priority_hint == "critical"

    @property
    def is_urgent(self) -> bool:
        return self.priority_hint in ("critical", "high")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    @property
    def text(self) -> str:
        return f"{self.title or ''} {self.message or ''}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "channel": self.channel,
            "title": self.title,
            "message": self.message,
            "source": self.source,
            "priority_hint": self.priority_hint,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "dedupe_key": self.dedupe_key,
            "content_hash": self.content_hash,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        values = dict(data)
        values["created_at"] = datetime.fromisoformat(values["created_at"])
        if values.get("expires_at"):
            values["expires_at"] = datetime.fromisoformat(values["expires_at"])
        return cls(**values)


@dataclass(frozen=True)
class Decision:
    event_id: str
    user_id: str
    disposition: Disposition
    score: float
    reasons: Tuple[str, ...]
    explanation: str
    rule_version: int
    model_version: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    degraded: bool = False
    attempt: int = 0
    decided_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        object.__setattr__(self, "reasons", tuple(self.reasons))
        if not self.reasons:
            raise ValueError("a decision needs at least one reason code")
        if self.disposition == Disposition.LATER and self.scheduled_for is None:
            raise ValueError("LATER decisions require scheduled_for")
        if self.disposition != Disposition.LATER and self.scheduled_for is not None:
            raise ValueError("scheduled_for is only valid on LATER decisions")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision_id": self.id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "disposition": self.disposition.value,
            "score": self.score,
            "reasons": list(self.reasons),
            "explanation": self.explanation,
            "rule_version": self.rule_version,
            "model_version": self.model_version,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "degraded": self.degraded,
            "attempt": self.attempt,
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass
class UserChannelState:
    user_id: str
    channel: str
    window_start: datetime
    sent_count: int = 0
    cooldown_until: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None


@dataclass
class DeferQueueEntry:
    event: NotificationEvent
    scheduled_for: datetime
    status: DeferStatus = DeferStatus.PENDING
    retry_count: int = 0
    last_decision_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def user_id(self) -> str:
        return self.event.user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.id,
            "event_id": self.event_id,
            "user_id": self.user_id,
            "scheduled_for": self.scheduled_for.isoformat(),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_decision_id": self.last_decision_id,
        }

    def to_record(self) -> Dict[str, Any]:
        """Full entry, event included, for queues kept outside the process."""
        return {
            "id": self.id,
            "event": self.event.to_dict(),
            "scheduled_for": self.scheduled_for.isoformat(),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_decision_id": self.last_decision_id,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "DeferQueueEntry":
        return cls(
            event=NotificationEvent.from_dict(data["event"]),
            scheduled_for=datetime.fromisoformat(data["scheduled_for"]),
            status=DeferStatus(data["status"]),
            retry_count=int(data.get("retry_count") or 0),
            last_decision_id=data.get("last_decision_id"),
            id=data["id"],
        )


@dataclass(frozen=True)
class SuppressionRecord:
    event_id: str
    user_id: str
    suppression_type: SuppressionType
    reason: str
    ttl_end: Optional[datetime]
    decision_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class Rule:
    """``action`` is NEVER (terminal deny) or SCORE (adds ``score`` to the base)."""

    name: str
    conditions: Tuple[Condition, ...]
    action: str
    reason: str
    priority: int = 50
    score: float = 0.0
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        action = str(data["action"]).upper()
        if action not in ("NEVER", "SCORE"):
            raise ValueError(f"Unknown rule action '{data['action']}'")
        return cls(
            name=data["name"],
            conditions=tuple(Condition(c["field"], c["op"], c.get("value")) for c in data.get("conditions", [])),
            action=action,
            reason=data.get("reason", ""),
            priority=int(data.get("priority", 50)),
            score=float(data.get("score", 0.0)),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "conditions": [{"field": c.field, "op": c.op, "value": c.value} for c in self.conditions],
            "action": self.action,
            "score": self.score,
            "reason": self.reason,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class RuleConfig:
    version: int
    rules: Tuple[Rule, ...]
    enabled: bool = True
    disabled_channels: frozenset = frozenset()
    published_at: datetime = field(default_factory=utcnow)

    def ordered_rules(self) -> Tuple[Rule, ...]:
        # Highest priority first, then rule name
        return tuple(sorted(self.rules, key=lambda r: (-r.priority, r.name)))
