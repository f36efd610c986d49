#!/usr/bin/env python3
"""
Notification Decision Engine — scripted walkthrough.

Run: python -m decision_engine.demo [--interactive]
"""

import argparse
import time
from datetime import datetime, timedelta, timezone

from decision_engine.core.config import Settings
from decision_engine.core.logging import setup_logging
from decision_engine.engine.factory import build_engine
from decision_engine.engine.models import Disposition, NotificationEvent
from decision_engine.engine.scorer import ScoreAdjustment

CYAN  = "\033[96m"
GREEN = "\033[92m"
BOLD  = "\033[1m"
DIM   = "\033[2m"
RESET = "\033[0m"

ICONS = {Disposition.NOW: "✅ NOW", Disposition.LATER: "⏰ LATER", Disposition.NEVER: "🚫 NEVER"}


class SlowScorer:
    """Takes longer than the adapter's deadline."""

    def adjust(self, event, score):
        time.sleep(0.5)
        return ScoreAdjustment(delta=0.1, model_version="slow-1")


def banner(text):
    print(f"\n{CYAN}{BOLD}{'─'*55}")
    print(f"  {text}")
    print(f"{'─'*55}{RESET}")


def show(decision):
    print(f"  Decision : {ICONS[decision.disposition]}")
    print(f"  Score    : {decision.score:.3f}")
    print(f"  Reasons  : {', '.join(decision.reasons)}")
    print(f"  Why      : {decision.explanation}")
    if decision.scheduled_for:
        print(f"  Scheduled: {decision.scheduled_for.isoformat()}")
    if decision.model_version:
        print(f"  Model    : {decision.model_version}")


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--interactive", action="store_true", help="pause between scenarios")
    args = parser.parse_args(argv)

    def pause():
        if args.interactive:
            input(f"\n{DIM}Press ENTER to continue...{RESET}")

    setup_logging("WARNING")
    engine, scheduler = build_engine(Settings(AI_SCORER="heuristic"))
    now = datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)

    banner("SCENARIO 1 — Critical security alert")
    show(engine.evaluate(NotificationEvent(
        user_id="user_001", event_type="security_alert", channel="push",
        title="New login from Mumbai, India", message="Your account was accessed from a new device.",
        source="auth_service", priority_hint="critical",
    ), now))
    pause()

    banner("SCENARIO 2 — Same dedupe_key again")
    for _ in range(2):
        decision = engine.evaluate(NotificationEvent(
            user_id="user_002", event_type="message", channel="push",
            title="Sarah: Hey, are you free tomorrow?", message="Sarah sent you a message.",
            source="messaging_service", priority_hint="medium", dedupe_key="msg_sarah_001",
        ), now)
    show(decision)
    pause()

    banner("SCENARIO 3 — Reminder during quiet hours")
    show(engine.evaluate(NotificationEvent(
        user_id="user_004", event_type="reminder", channel="push",
        title="Team standup in 15 minutes", message="Don't forget your 9 AM standup.",
        source="calendar_service", priority_hint="medium",
        metadata={"quiet_hours": {"start": "11:00", "end": "14:00", "timezone": "UTC"}},
    ), now))
    pause()

    banner("SCENARIO 4 — User at the sms cap")
    for i in range(7):
        decision = engine.evaluate(NotificationEvent(
            user_id="user_003", event_type="alert", channel="sms", priority_hint="high",
            title=f"Build #{i} finished", message=f"Pipeline run {i} completed with warnings",
            source=f"ci_{i}",
        ), now + timedelta(minutes=10 * i))
    show(decision)
    pause()

    banner("SCENARIO 5 — AI scorer slower than its deadline")
    engine.scorer.scorer = SlowScorer()
    started = time.monotonic()
    decision = engine.evaluate(NotificationEvent(
        user_id="user_005", event_type="alert", channel="email", priority_hint="high",
        title="Payment failed", message="Your subscription payment failed. Please update billing.",
        source="billing_service",
    ), now)
    show(decision)
    print(f"  Latency  : {(time.monotonic() - started) * 1000:.0f} ms")
    pause()

    banner("SCENARIO 6 — Deferred events re-evaluated")
    processed = scheduler.run_due(now + timedelta(days=1))
    for decision in processed:
        print(f"  {decision.event_id[:8]} → {ICONS[decision.disposition]} ({', '.join(decision.reasons[-2:])})")

    banner("DONE — Audit summary")
    stats = engine.audit.stats()
    print(f"""
  Total decisions     : {stats['total_evaluated']}
  ✅  NOW              : {stats['by_action']['NOW']}
  ⏰  LATER            : {stats['by_action']['LATER']}
  🚫  NEVER            : {stats['by_action']['NEVER']}
  Suppression rate    : {stats['suppression_rate']}%
""")
    print(f"{GREEN}{BOLD}API server:{RESET} uvicorn decision_engine.api.server:app --port 8000\n")
    engine.scorer.shutdown()


if __name__ == "__main__":
    main()
