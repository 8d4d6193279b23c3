from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    """A status change or decision, as handed to the notification sink."""

    kind: str                      # "status_change" | "decision" | "withdrawn" | "closed"
    item_id: str
    old_status: Optional[str]
    new_status: Optional[str]
    actor: Optional[str]
    timestamp: str
    request_id: Optional[str] = None
    detail: Optional[str] = None


class NotificationSink(Protocol):
    def notify(self, event: StatusEvent) -> None:
        ...


class LoggingSink:
    def __init__(self, logger_name: str = "mdr_registry.events"):
        self.log = logging.getLogger(logger_name)

    def notify(self, event: StatusEvent) -> None:
        self.log.info(
            "%s item=%s %s -> %s by %s request=%s",
            event.kind, event.item_id, event.old_status, event.new_status, event.actor, event.request_id,
        )


class CollectingSink:
    """Keeps every event in memory; handy for embedding applications and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[StatusEvent] = []

    def notify(self, event: StatusEvent) -> None:
        with self._lock:
            self.events.append(event)


def deliver(sink: Optional[NotificationSink], event: StatusEvent) -> bool:
    """Best-effort delivery. Runs after the governance commit; failures are logged, never raised."""
    if sink is None:
        return False
    try:
        sink.notify(event)
    except Exception:
        logger.exception("notification sink failed for %s on %s", event.kind, event.item_id)
        return False
    return True
