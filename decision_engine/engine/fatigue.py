"""
Fatigue Evaluator — cooldowns, per-window caps, quiet hours and the critical lane.

Evaluation only reads state and returns a signed score adjustment; it never decides.
State changes happen in ``commit`` (an atomic increment-then-compare on the window
counter once the resolver has reached NOW), in ``try_bypass`` (the critical-lane
guardrail) and in ``record_delivery`` (dispatch confirmation).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from decision_engine.engine.models import NotificationEvent, ReasonCode, UserChannelState
from decision_engine.engine.store import KeyStore

logger = logging.getLogger(__name__)


def _parse_clock(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        return time(hour=value % 24)
    hour, _, minute = str(value).partition(":")
    return time(hour=int(hour), minute=int(minute or 0))


@dataclass(frozen=True)
class QuietHours:
    start: time
    end: time
    tz: ZoneInfo

    @classmethod
    def from_metadata(cls, value: Any, default: Optional["QuietHours"] = None) -> Optional["QuietHours"]:
        """
        Accepts ``{"start": "22:00", "end": "07:00", "timezone": "Europe/Paris"}``
        or ``True`` (use the default window).
        """
        if value is True:
            return default
        if not isinstance(value, dict):
            return None
        try:
            return cls(
                start=_parse_clock(value["start"]),
                end=_parse_clock(value["end"]),
                tz=ZoneInfo(value.get("timezone", "UTC")),
            )
        except (KeyError, ValueError, ZoneInfoNotFoundError) as e:
            logger.warning("Ignoring malformed quiet hours %r: %s", value, e)
            return None

    def active(self, now: datetime) -> bool:
        t = now.astimezone(self.tz).time()
        if self.start <= self.end:
            return self.start <= t < self.end
        # Wraps midnight, e.g. 22:00-07:00
        return t >= self.start or t < self.end

    def end_after(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        candidate = local.replace(hour=self.end.hour, minute=self.end.minute, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        return candidate.astimezone(timezone.utc)


@dataclass
class FatigueResult:
    adjustment: float = 0.0
    reasons: List[str] = field(default_factory=list)
    would_block: bool = False          # critical event that cooldown/cap would otherwise block
    block_penalty: float = 0.0         # part of ``adjustment`` lifted by a critical bypass
    cooldown_until: Optional[datetime] = None   # set when the event should wait out a cooldown
    cooldown_penalty: float = 0.0      # part of ``adjustment`` owed to that cooldown
    hold_until: Optional[datetime] = None
    defer_until: Optional[datetime] = None
    state: Optional[UserChannelState] = None


class FatigueEvaluator:
    WINDOW_SECONDS = 86400

    DAILY_CHANNEL_CAPS = {
        "push":   20,
        "sms":    5,
        "email":  10,
        "in_app": 50,
    }

    CHANNEL_COOLDOWNS = {
        "push":   60,
        "sms":    300,
        "email":  120,
        "in_app": 0,
    }

    BYPASS_CAP = 3
    BYPASS_WINDOW = 3600

    COOLDOWN_BLOCK = -1.0
    COOLDOWN_PENALTY = -0.25
    CAP_PENALTY = 0.30
    CAP_PENALTY_STEP = 0.05
    QUIET_PENALTY = -0.10

    def __init__(self, store: KeyStore, window_seconds: int = WINDOW_SECONDS,
                 channel_caps: Optional[Dict[str, int]] = None,
                 channel_cooldowns: Optional[Dict[str, int]] = None,
                 bypass_cap: int = BYPASS_CAP, bypass_window: int = BYPASS_WINDOW,
                 default_quiet_hours: Optional[QuietHours] = None):
        self.store = store
        self.window_seconds = window_seconds
        self.channel_caps = dict(self.DAILY_CHANNEL_CAPS if channel_caps is None else channel_caps)
        self.channel_cooldowns = dict(self.CHANNEL_COOLDOWNS if channel_cooldowns is None else channel_cooldowns)
        self.bypass_cap = bypass_cap
        self.bypass_window = bypass_window
        self.default_quiet_hours = default_quiet_hours or QuietHours(time(22), time(7), ZoneInfo("UTC"))

    # ── keys ────────────────────────────────────────────────

    def _window_index(self, now: datetime) -> int:
        return int(now.timestamp() // self.window_seconds)

    def _count_key(self, event_or_user, channel: str, now: datetime) -> str:
        user_id = getattr(event_or_user, "user_id", event_or_user)
        return f"fatigue:count:{user_id}:{channel}:{self._window_index(now)}"

    @staticmethod
    def _cooldown_key(user_id: str, channel: str) -> str:
        return f"fatigue:cooldown:{user_id}:{channel}"

    @staticmethod
    def _last_sent_key(user_id: str, channel: str) -> str:
        return f"fatigue:last:{user_id}:{channel}"

    @staticmethod
    def _bypass_key(user_id: str, channel: str) -> str:
        return f"fatigue:bypass:{user_id}:{channel}"

    def cap_for(self, channel: str) -> int:
        return self.channel_caps.get(channel, 20)

    # ── state ───────────────────────────────────────────────

    def state(self, user_id: str, channel: str, now: datetime) -> UserChannelState:
        window_start = datetime.fromtimestamp(self._window_index(now) * self.window_seconds, tz=timezone.utc)
        cooldown = self.store.get(self._cooldown_key(user_id, channel))
        last_sent = self.store.get(self._last_sent_key(user_id, channel))
        return UserChannelState(
            user_id=user_id,
            channel=channel,
            window_start=window_start,
            sent_count=self.store.get_count(self._count_key(user_id, channel, now)),
            cooldown_until=datetime.fromtimestamp(float(cooldown), tz=timezone.utc) if cooldown else None,
            last_sent_at=datetime.fromtimestamp(float(last_sent), tz=timezone.utc) if last_sent else None,
        )

    def next_window_start(self, now: datetime) -> datetime:
        return datetime.fromtimestamp((self._window_index(now) + 1) * self.window_seconds, tz=timezone.utc)

    # ── evaluation ──────────────────────────────────────────

    def evaluate(self, event: NotificationEvent, now: datetime) -> FatigueResult:
        state = self.state(event.user_id, event.channel, now)
        result = FatigueResult(state=state)

        # (a) cooldown: low and unprioritised events are blocked outright, the rest wait
        if state.cooldown_until and now < state.cooldown_until:
            if event.is_critical:
                result.would_block = True
                result.block_penalty += self.COOLDOWN_BLOCK
                result.adjustment += self.COOLDOWN_BLOCK
                result.cooldown_penalty = self.COOLDOWN_BLOCK
                result.cooldown_until = state.cooldown_until
                result.reasons.append(ReasonCode.COOLDOWN_BLOCK)
            elif event.priority_hint in (None, "low"):
                result.adjustment += self.COOLDOWN_BLOCK
                result.reasons.append(ReasonCode.COOLDOWN_BLOCK)
            else:
                result.adjustment += self.COOLDOWN_PENALTY
                result.cooldown_penalty = self.COOLDOWN_PENALTY
                result.cooldown_until = state.cooldown_until
                result.reasons.append(ReasonCode.COOLDOWN_PENALTY)
            result.defer_until = state.cooldown_until

        # (b) per-window cap
        cap = self.cap_for(event.channel)
        if state.sent_count >= cap:
            over = state.sent_count - cap
            penalty = -min(1.0, self.CAP_PENALTY + self.CAP_PENALTY_STEP * over)
            result.adjustment += penalty
            result.reasons.append(ReasonCode.FATIGUE_CAP)
            if event.is_critical:
                result.would_block = True
                result.block_penalty += penalty
            next_window = self.next_window_start(now)
            result.defer_until = max(filter(None, [result.defer_until, next_window]))

        # (c) quiet hours
        if not event.is_urgent:
            quiet = QuietHours.from_metadata(event.metadata.get("quiet_hours"), self.default_quiet_hours)
            if quiet and quiet.active(now):
                result.adjustment += self.QUIET_PENALTY
                result.hold_until = quiet.end_after(now)
                result.reasons.append(ReasonCode.QUIET_HOURS)

        result.adjustment = round(result.adjustment, 4)
        return result

    # ── mutations ───────────────────────────────────────────

    def bypass_available(self, event: NotificationEvent, now: datetime) -> bool:
        """Read-only check of the guardrail; ``try_bypass`` does the reservation."""
        members = self.store.window_members(
            self._bypass_key(event.user_id, event.channel), now.timestamp(), self.bypass_window,
        )
        return event.id in members or len(set(members)) < self.bypass_cap

    def try_bypass(self, event: NotificationEvent, now: datetime) -> bool:
        """Consume one slot of the critical-lane guardrail (rolling window)."""
        return self.store.window_add(
            self._bypass_key(event.user_id, event.channel), event.id, now.timestamp(),
            self.bypass_window, cap=self.bypass_cap,
        )

    def commit(self, event: NotificationEvent, now: datetime, bypass: bool = False) -> bool:
        """
        Reserve a send in the active window. Returns False when the cap was reached
        by a concurrent worker in the meantime. A granted bypass counts the send
        without enforcing the cap.
        """
        key = self._count_key(event, event.channel, now)
        ttl = self.window_seconds + 60
        if bypass:
            self.store.incr(key, ttl)
        elif not self.store.increment_if_under(key, self.cap_for(event.channel), ttl):
            return False

        cooldown = self.channel_cooldowns.get(event.channel, 0)
        if cooldown > 0:
            until = now.timestamp() + cooldown
            self.store.set(self._cooldown_key(event.user_id, event.channel), str(until), cooldown)
        return True

    def record_delivery(self, user_id: str, channel: str, delivered_at: datetime) -> None:
        self.store.set(self._last_sent_key(user_id, channel), str(delivered_at.timestamp()),
                       self.window_seconds * 7)
