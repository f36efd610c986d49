"""
Defer-Queue Scheduler — re-submits LATER events at their scheduled time.

Entry lifecycle:
    pending → re-evaluating → dispatched | suppressed | pending (rescheduled) | dead-lettered

Re-evaluation goes through the engine's public ``reevaluate`` entry point, so the
pipeline itself stays free of callbacks; this module is only the loop driver.
``DeferQueue`` keeps entries in process; ``RedisDeferQueue`` shares them between
workers and survives restarts.
"""

import heapq
import itertools
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import redis

from decision_engine.engine.models import (
    Decision,
    DeferQueueEntry,
    DeferStatus,
    Disposition,
    ReasonCode,
    utcnow,
)
from decision_engine.engine.store import StoreUnavailable

if TYPE_CHECKING:
    from decision_engine.engine.prioritizer import DecisionEngine

logger = logging.getLogger(__name__)


class DeferQueue:
    """In-memory, thread-safe queue ordered by ``scheduled_for``."""

    def __init__(self):
        self._lock = threading.Lock()
        self._heap: list = []
        self._entries: Dict[str, DeferQueueEntry] = {}
        self._seq = itertools.count()

    def push(self, entry: DeferQueueEntry) -> DeferQueueEntry:
        with self._lock:
            self._entries[entry.id] = entry
            heapq.heappush(self._heap, (entry.scheduled_for, next(self._seq), entry.id))
        return entry

    def claim_due(self, now: datetime, limit: Optional[int] = None) -> List[DeferQueueEntry]:
        """Moves due pending entries to re-evaluating and returns them."""
        claimed = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                if limit is not None and len(claimed) >= limit:
                    break
                scheduled_for, _, entry_id = heapq.heappop(self._heap)
                entry = self._entries.get(entry_id)
                # Stale heap item from an earlier schedule
                if entry is None or entry.status != DeferStatus.PENDING or entry.scheduled_for != scheduled_for:
                    continue
                entry.status = DeferStatus.RE_EVALUATING
                claimed.append(entry)
        return claimed

    def reschedule(self, entry: DeferQueueEntry, scheduled_for: datetime) -> None:
        with self._lock:
            entry.scheduled_for = scheduled_for
            entry.status = DeferStatus.PENDING
            heapq.heappush(self._heap, (scheduled_for, next(self._seq), entry.id))

    def mark(self, entry: DeferQueueEntry, status: DeferStatus) -> None:
        with self._lock:
            entry.status = status

    def get(self, entry_id: str) -> Optional[DeferQueueEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def entries(self, status: Optional[DeferStatus] = None) -> List[DeferQueueEntry]:
        with self._lock:
            items = list(self._entries.values())
        if status is not None:
            items = [e for e in items if e.status == status]
        return sorted(items, key=lambda e: e.scheduled_for)

    def dead_letters(self) -> List[DeferQueueEntry]:
        return self.entries(DeferStatus.DEAD_LETTERED)

    def __len__(self) -> int:
        return len(self.entries(DeferStatus.PENDING))


_CLAIM_DUE = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local claimed = {}
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    local raw = redis.call('HGET', KEYS[2], id)
    if raw then
        local entry = cjson.decode(raw)
        entry['status'] = ARGV[3]
        raw = cjson.encode(entry)
        redis.call('HSET', KEYS[2], id, raw)
        table.insert(claimed, raw)
    end
end
return claimed
"""


class RedisDeferQueue:
    """
    Shared, durable defer queue: entries live in a hash as JSON and pending ids
    sit in a sorted set scored by ``scheduled_for``. Claiming is one Lua script,
    so two scheduler processes never re-evaluate the same entry.
    """

    def __init__(self, client: "redis.Redis", prefix: str = "nde:"):
        self.client = client
        self.due_key = f"{prefix}defer:due"
        self.entries_key = f"{prefix}defer:entries"
        self._claim = client.register_script(_CLAIM_DUE)

    @staticmethod
    def _dump(entry: DeferQueueEntry) -> str:
        return json.dumps(entry.to_record())

    def _write(self, entry: DeferQueueEntry, pending: bool) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.hset(self.entries_key, entry.id, self._dump(entry))
            if pending:
                pipe.zadd(self.due_key, {entry.id: entry.scheduled_for.timestamp()})
            else:
                pipe.zrem(self.due_key, entry.id)
            pipe.execute()
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e

    def push(self, entry: DeferQueueEntry) -> DeferQueueEntry:
        self._write(entry, pending=True)
        return entry

    def claim_due(self, now: datetime, limit: Optional[int] = None) -> List[DeferQueueEntry]:
        try:
            raw = self._claim(
                keys=[self.due_key, self.entries_key],
                args=[now.timestamp(), -1 if limit is None else limit, DeferStatus.RE_EVALUATING.value],
            )
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e
        return [DeferQueueEntry.from_record(json.loads(item)) for item in raw]

    def reschedule(self, entry: DeferQueueEntry, scheduled_for: datetime) -> None:
        entry.scheduled_for = scheduled_for
        entry.status = DeferStatus.PENDING
        self._write(entry, pending=True)

    def mark(self, entry: DeferQueueEntry, status: DeferStatus) -> None:
        entry.status = status
        self._write(entry, pending=status == DeferStatus.PENDING)

    def get(self, entry_id: str) -> Optional[DeferQueueEntry]:
        try:
            raw = self.client.hget(self.entries_key, entry_id)
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e
        return DeferQueueEntry.from_record(json.loads(raw)) if raw else None

    def entries(self, status: Optional[DeferStatus] = None) -> List[DeferQueueEntry]:
        try:
            raw = self.client.hvals(self.entries_key)
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e
        items = [DeferQueueEntry.from_record(json.loads(r)) for r in raw]
        if status is not None:
            items = [e for e in items if e.status == status]
        return sorted(items, key=lambda e: e.scheduled_for)

    def dead_letters(self) -> List[DeferQueueEntry]:
        return self.entries(DeferStatus.DEAD_LETTERED)

    def __len__(self) -> int:
        try:
            return int(self.client.zcard(self.due_key))
        except redis.RedisError as e:
            raise StoreUnavailable(str(e)) from e


class DeferQueueScheduler:
    MAX_RETRIES = 5
    BACKOFF_BASE = 300
    BACKOFF_MAX = 86400

    def __init__(self, engine: "DecisionEngine", queue: Optional[DeferQueue] = None,
                 max_retries: int = MAX_RETRIES, backoff_base: int = BACKOFF_BASE,
                 backoff_max: int = BACKOFF_MAX, poll_interval: float = 1.0,
                 on_dead_letter: Optional[Callable[[DeferQueueEntry, Decision], None]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.queue = queue if queue is not None else engine.defer_queue
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self.on_dead_letter = on_dead_letter
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def backoff(self, retry_count: int) -> timedelta:
        seconds = self.backoff_base * (2 ** max(0, retry_count - 1))
        return timedelta(seconds=min(self.backoff_max, seconds))

    def run_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Decision]:
        now = now or self.clock()
        return [self.process(entry, now) for entry in self.queue.claim_due(now, limit)]

    def process(self, entry: DeferQueueEntry, now: datetime) -> Decision:
        decision = self.engine.reevaluate(entry, now)
        entry.last_decision_id = decision.id
        failed = ReasonCode.ENGINE_FAILURE in decision.reasons

        if decision.disposition == Disposition.NOW and not failed:
            self.queue.mark(entry, DeferStatus.DISPATCHED)
            logger.info("Deferred event %s dispatched on attempt %d", entry.event_id, decision.attempt)
        elif decision.disposition == Disposition.NEVER:
            self.queue.mark(entry, DeferStatus.SUPPRESSED)
            logger.info("Deferred event %s suppressed: %s", entry.event_id, ",".join(decision.reasons))
        else:
            entry.retry_count += 1
            if entry.retry_count > self.max_retries:
                self.queue.mark(entry, DeferStatus.DEAD_LETTERED)
                logger.warning(
                    "Deferred event %s dead-lettered after %d re-evaluations",
                    entry.event_id, entry.retry_count - 1,
                    extra={"event_id": entry.event_id, "user_id": entry.user_id},
                )
                self._alert(entry, decision)
            else:
                scheduled = now + self.backoff(entry.retry_count)
                if decision.scheduled_for and decision.scheduled_for > scheduled:
                    scheduled = decision.scheduled_for
                self.queue.reschedule(entry, scheduled)
                logger.info("Deferred event %s rescheduled to %s (retry %d)",
                            entry.event_id, scheduled.isoformat(), entry.retry_count)
        return decision

    def _alert(self, entry: DeferQueueEntry, decision: Decision) -> None:
        if self.on_dead_letter is None:
            return
        try:
            self.on_dead_letter(entry, decision)
        except Exception:
            logger.exception("Dead-letter alert hook failed for entry %s", entry.id)

    # ── background loop ─────────────────────────────────────

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="defer-scheduler", daemon=True)
        self._thread.start()
        logger.info("Defer-queue scheduler started (poll every %.1fs)", self.poll_interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_due()
            except Exception:
                logger.exception("Defer-queue tick failed")
            self._stop.wait(self.poll_interval)
