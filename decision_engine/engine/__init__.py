from decision_engine.engine.models import Decision, Disposition, NotificationEvent, ReasonCode
from decision_engine.engine.prioritizer import DecisionEngine, PriorityResolver, classify_score

__all__ = [
    "Decision",
    "DecisionEngine",
    "Disposition",
    "NotificationEvent",
    "PriorityResolver",
    "ReasonCode",
    "classify_score",
]
