import json
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import redis

from decision_engine.engine.models import DeferQueueEntry, DeferStatus, Disposition, ReasonCode
from decision_engine.engine.scheduler import DeferQueue, DeferQueueScheduler, RedisDeferQueue
from decision_engine.engine.store import StoreUnavailable


def at(hour, minute=0):
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


def run_next(scheduler, clock):
    entry = min(scheduler.queue.entries(DeferStatus.PENDING), key=lambda e: e.scheduled_for)
    clock.now = entry.scheduled_for
    return scheduler.run_due()


@pytest.mark.parametrize("retry, seconds", [(1, 300), (2, 600), (3, 1200), (5, 4800), (12, 86400)])
def test_backoff_doubles_up_to_max(scheduler, retry, seconds):
    assert scheduler.backoff(retry) == timedelta(seconds=seconds)


def test_queue_claims_due_entries_in_order(make_event):
    queue = DeferQueue()
    late = queue.push(DeferQueueEntry(make_event(), at(13)))
    early = queue.push(DeferQueueEntry(make_event(), at(12, 30)))
    queue.push(DeferQueueEntry(make_event(), at(18)))

    claimed = queue.claim_due(at(14))
    assert [e.id for e in claimed] == [early.id, late.id]
    assert all(e.status == DeferStatus.RE_EVALUATING for e in claimed)
    assert len(queue) == 1


def test_queue_claim_limit(make_event):
    queue = DeferQueue()
    for minute in (1, 2, 3):
        queue.push(DeferQueueEntry(make_event(), at(12, minute)))
    assert len(queue.claim_due(at(13), limit=2)) == 2
    assert len(queue.claim_due(at(13))) == 1


def test_rescheduled_entry_is_claimed_once(make_event):
    queue = DeferQueue()
    entry = queue.push(DeferQueueEntry(make_event(), at(12, 10)))
    queue.claim_due(at(12, 10))
    queue.reschedule(entry, at(12, 20))
    assert queue.claim_due(at(12, 15)) == []
    assert queue.claim_due(at(12, 20)) == [entry]
    assert queue.claim_due(at(12, 30)) == []


def test_entries_not_due_are_left_alone(engine, scheduler, make_event):
    engine.evaluate(make_event())
    assert scheduler.run_due() == []
    assert engine.defer_queue.entries()[0].status == DeferStatus.PENDING


def test_entry_still_later_is_rescheduled_with_backoff(engine, scheduler, make_event):
    engine.evaluate(make_event())
    [decision] = run_next(scheduler, scheduler.clock)
    entry = engine.defer_queue.entries()[0]
    assert decision.disposition == Disposition.LATER
    assert entry.status == DeferStatus.PENDING
    assert entry.retry_count == 1
    assert entry.last_decision_id == decision.id
    # Default 15-minute delay from the decision outranks the first 5-minute backoff
    assert entry.scheduled_for == at(12, 30)


def test_rule_change_suppresses_deferred_entry(engine, scheduler, make_event, clock):
    engine.evaluate(make_event(event_type="newsletter"))
    engine.rules.add_rule({"name": "no_newsletters", "action": "NEVER",
                           "conditions": [{"field": "event_type", "op": "eq", "value": "newsletter"}]})
    [decision] = run_next(scheduler, clock)
    assert decision.disposition == Disposition.NEVER
    assert engine.defer_queue.entries()[0].status == DeferStatus.SUPPRESSED


def test_entry_is_dead_lettered_after_max_retries(engine, make_event, clock):
    alerts = []
    scheduler = DeferQueueScheduler(engine, max_retries=2, clock=clock,
                                    on_dead_letter=lambda entry, decision: alerts.append(entry))
    engine.evaluate(make_event())
    for _ in range(3):
        run_next(scheduler, clock)

    [entry] = engine.defer_queue.dead_letters()
    assert entry.retry_count == 3
    assert alerts == [entry]
    assert len(engine.audit.decisions_for(entry.event_id)) == 4
    assert engine.defer_queue.entries(DeferStatus.PENDING) == []


def test_failing_alert_hook_does_not_break_the_tick(engine, make_event, clock):
    def explode(entry, decision):
        raise RuntimeError("pager down")

    scheduler = DeferQueueScheduler(engine, max_retries=0, clock=clock, on_dead_letter=explode)
    engine.evaluate(make_event())
    [decision] = run_next(scheduler, clock)
    assert decision.disposition == Disposition.LATER
    assert len(engine.defer_queue.dead_letters()) == 1


def test_engine_failure_on_retry_is_rescheduled(engine, scheduler, make_event, clock, monkeypatch):
    engine.evaluate(make_event())

    def broken(event, now, reevaluation=False):
        raise RuntimeError("boom")

    monkeypatch.setattr(engine.dedup, "check", broken)
    [decision] = run_next(scheduler, clock)
    entry = engine.defer_queue.entries()[0]
    assert ReasonCode.ENGINE_FAILURE in decision.reasons
    assert entry.status == DeferStatus.PENDING
    assert entry.retry_count == 1


def test_background_loop_processes_due_entries(engine, make_event, clock):
    scheduler = DeferQueueScheduler(engine, poll_interval=0.01, clock=clock)
    engine.evaluate(make_event(), now=clock.now - timedelta(minutes=15))
    scheduler.start()
    try:
        deadline = time.monotonic() + 2
        while time.monotonic() < deadline and not engine.defer_queue.entries()[0].retry_count:
            time.sleep(0.01)
    finally:
        scheduler.stop()
    assert engine.defer_queue.entries()[0].retry_count == 1


# ─── Redis-backed queue ─────────────────────────────────────


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def redis_queue(client):
    return RedisDeferQueue(client, prefix="t:")


def stored(entry, status=None):
    record = entry.to_record()
    if status is not None:
        record["status"] = status.value
    return json.dumps(record)


class TestRedisDeferQueue:
    def test_push_writes_entry_and_due_score(self, redis_queue, client, make_event):
        entry = DeferQueueEntry(make_event(metadata={"quiet_hours": True}), at(12, 15))
        redis_queue.push(entry)
        pipe = client.pipeline.return_value
        pipe.hset.assert_called_once_with("t:defer:entries", entry.id, stored(entry))
        pipe.zadd.assert_called_once_with("t:defer:due", {entry.id: at(12, 15).timestamp()})
        pipe.execute.assert_called_once()

    def test_claim_runs_script_and_rebuilds_entries(self, redis_queue, client, make_event, clock):
        entry = DeferQueueEntry(make_event(expires_at=at(18)), at(12, 15), retry_count=2)
        script = client.register_script.return_value
        script.return_value = [stored(entry, DeferStatus.RE_EVALUATING)]

        [claimed] = redis_queue.claim_due(at(12, 20), limit=10)
        script.assert_called_once_with(
            keys=["t:defer:due", "t:defer:entries"],
            args=[at(12, 20).timestamp(), 10, "re-evaluating"],
        )
        assert claimed.id == entry.id
        assert claimed.status == DeferStatus.RE_EVALUATING
        assert claimed.retry_count == 2
        assert claimed.event == entry.event

    def test_terminal_status_leaves_the_due_set(self, redis_queue, client, make_event):
        entry = DeferQueueEntry(make_event(), at(12, 15))
        redis_queue.mark(entry, DeferStatus.DISPATCHED)
        pipe = client.pipeline.return_value
        pipe.zrem.assert_called_once_with("t:defer:due", entry.id)
        assert json.loads(pipe.hset.call_args[0][2])["status"] == "dispatched"

    def test_entries_filter_by_status(self, redis_queue, client, make_event):
        pending = DeferQueueEntry(make_event(), at(13))
        dead = DeferQueueEntry(make_event(), at(12), status=DeferStatus.DEAD_LETTERED)
        client.hvals.return_value = [stored(pending), stored(dead)]
        assert [e.id for e in redis_queue.entries()] == [dead.id, pending.id]
        assert [e.id for e in redis_queue.dead_letters()] == [dead.id]

    def test_len_counts_due_set(self, redis_queue, client):
        client.zcard.return_value = 3
        assert len(redis_queue) == 3

    def test_redis_errors_become_store_unavailable(self, redis_queue, client, make_event):
        client.register_script.return_value.side_effect = redis.TimeoutError("timed out")
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("refused")
        with pytest.raises(StoreUnavailable):
            redis_queue.claim_due(at(12))
        with pytest.raises(StoreUnavailable):
            redis_queue.push(DeferQueueEntry(make_event(), at(12)))

    def test_engine_keeps_deciding_when_queue_is_down(self, make_engine, make_event, client):
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("refused")
        engine = make_engine(defer_queue=RedisDeferQueue(client))
        decision = engine.evaluate(make_event())
        assert decision.disposition == Disposition.LATER
        assert engine.get_audit_trail(decision.event_id)["evaluations"]

    def test_scheduler_writes_back_rescheduled_entry(self, make_engine, make_event, client, clock):
        engine = make_engine(defer_queue=RedisDeferQueue(client, prefix="t:"))
        scheduler = DeferQueueScheduler(engine, clock=clock)
        entry = DeferQueueEntry(make_event(), clock.now)
        client.register_script.return_value.return_value = [stored(entry, DeferStatus.RE_EVALUATING)]
        [decision] = scheduler.run_due()
        pipe = client.pipeline.return_value
        written = json.loads(pipe.hset.call_args[0][2])
        assert written["id"] == entry.id
        assert written["last_decision_id"] == decision.id
