"""
Dispatcher collaborator. Channel providers live outside the engine; the engine only
hands NOW decisions over. The outbox keeps every hand-off so nothing is dropped
when a provider is down.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Protocol

from decision_engine.engine.models import Decision, NotificationEvent, utcnow

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, event: NotificationEvent, decision: Decision) -> None: ...


@dataclass
class OutboxItem:
    event: NotificationEvent
    decision: Decision
    queued_at: datetime = field(default_factory=utcnow)


class OutboxDispatcher:
    """Queues hand-offs for a delivery worker to drain."""

    def __init__(self):
        self._lock = threading.Lock()
        self._outbox: List[OutboxItem] = []

    def dispatch(self, event: NotificationEvent, decision: Decision) -> None:
        with self._lock:
            self._outbox.append(OutboxItem(event=event, decision=decision))
        logger.info("Queued %s for delivery on %s", event.id, event.channel)

    def drain(self) -> List[OutboxItem]:
        with self._lock:
            items, self._outbox = self._outbox, []
        return items

    def pending(self) -> List[OutboxItem]:
        with self._lock:
            return list(self._outbox)
