"""
Audit Log — in-memory collaborator simulating the audit store.
In production: write to notification_decisions / notification_suppressions tables.

Decisions are append-only; a re-evaluated event gets a new Decision linked by event id.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional

from decision_engine.engine.models import Decision, Disposition, SuppressionRecord

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self):
        self._lock = threading.Lock()
        self._log: List[Decision] = []
        self._suppressions: List[SuppressionRecord] = []
        self._traces: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def record(self, decision: Decision, trace: Optional[Dict[str, Any]] = None):
        with self._lock:
            self._log.append(decision)
            self._traces[decision.event_id].append({
                "decision": decision.to_dict(),
                "checks": dict(trace or {}),
            })

    def record_suppression(self, record: SuppressionRecord):
        with self._lock:
            self._suppressions.append(record)

    def get_audit_trail(self, event_id: str) -> Dict[str, Any]:
        with self._lock:
            evaluations = list(self._traces.get(event_id, []))
            suppressions = [s for s in self._suppressions if s.event_id == event_id]
        return {
            "event_id": event_id,
            "evaluations": evaluations,
            "suppressions": [
                {
                    "type": s.suppression_type.value,
                    "reason": s.reason,
                    "ttl_end": s.ttl_end.isoformat() if s.ttl_end else None,
                    "decision_id": s.decision_id,
                    "created_at": s.created_at.isoformat(),
                }
                for s in suppressions
            ],
        }

    def has_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._traces

    def decisions_for(self, event_id: str) -> List[Decision]:
        with self._lock:
            return [d for d in self._log if d.event_id == event_id]

    def get_user_history(self, user_id: str, disposition: Optional[str] = None, limit: int = 50) -> List[Decision]:
        with self._lock:
            results = [d for d in self._log if d.user_id == user_id]
        if disposition:
            results = [d for d in results if d.disposition.value == disposition.upper()]
        return results[-limit:]

    def get_all(self) -> List[Decision]:
        with self._lock:
            return list(self._log)

    def suppressions(self) -> List[SuppressionRecord]:
        with self._lock:
            return list(self._suppressions)

    def stats(self) -> dict:
        decisions = self.get_all()
        total = len(decisions)
        by_action = {d.value: 0 for d in Disposition}
        for d in decisions:
            by_action[d.disposition.value] += 1
        return {
            "total_evaluated": total,
            "by_action": by_action,
            "degraded": sum(1 for d in decisions if d.degraded),
            "suppression_rate": round(by_action["NEVER"] / max(total, 1) * 100, 1),
            "deferred_rate": round(by_action["LATER"] / max(total, 1) * 100, 1),
        }
