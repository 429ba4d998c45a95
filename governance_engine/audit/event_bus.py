"""
Event Bus for the Governance Engine.

Publishes domain events (overdue campaigns, new drift alerts, SoD
violations, completed compliance checks) to in-process subscribers and,
optionally, to a daily JSONL event log for external policy automation.
"""

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from ..models import GovernanceEvent

logger = logging.getLogger(__name__)

ACCESS_REVIEW_OVERDUE = "access_review.overdue"
ACCESS_REVIEW_COMPLETED = "access_review.completed"
DRIFT_ALERT_CREATED = "drift.alert_created"
SOD_VIOLATION_CREATED = "sod.violation_created"
OVERPRIVILEGED_RECORD_CREATED = "overprivileged.record_created"
COMPLIANCE_CHECK_COMPLETED = "compliance.check_completed"

EVENT_NAMES = [
    ACCESS_REVIEW_OVERDUE,
    ACCESS_REVIEW_COMPLETED,
    DRIFT_ALERT_CREATED,
    SOD_VIOLATION_CREATED,
    OVERPRIVILEGED_RECORD_CREATED,
    COMPLIANCE_CHECK_COMPLETED,
]

Handler = Callable[[GovernanceEvent], None]

DEFAULT_HISTORY_SIZE = 1000


class EventBus:
    """
    Fire-and-forget event publisher.

    A failing subscriber is logged and never propagates into the caller.
    Only the most recent ``history_size`` events are kept in memory; the
    event log is the durable record.
    """

    def __init__(self, event_log_dir: Optional[Union[str, Path]] = None,
                 history_size: int = DEFAULT_HISTORY_SIZE):
        self.event_log_dir = Path(event_log_dir) if event_log_dir else None
        if self.event_log_dir:
            self.event_log_dir.mkdir(parents=True, exist_ok=True)

        self._subscribers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()
        self.history: Deque[GovernanceEvent] = deque(maxlen=history_size)

    def subscribe(self, name: str, handler: Handler):
        """Register a handler for an event name, or "*" for all events."""
        with self._lock:
            self._subscribers.setdefault(name, []).append(handler)

    def emit(self, name: str, tenant_id: str, payload: Optional[Dict[str, Any]] = None) -> GovernanceEvent:
        """
        Publish an event.

        Args:
            name: Event name, e.g. "drift.alert_created"
            tenant_id: Tenant the event belongs to
            payload: JSON-serializable event data

        Returns:
            The emitted GovernanceEvent
        """
        event = GovernanceEvent(name=name, tenant_id=tenant_id, payload=payload or {})

        with self._lock:
            self.history.append(event)
            handlers = list(self._subscribers.get(name, [])) + list(self._subscribers.get("*", []))

        self._write(event)

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler for {name} failed: {e}")

        logger.info(f"Emitted {name} for tenant {tenant_id}")
        return event

    def events(self, name: Optional[str] = None, tenant_id: Optional[str] = None) -> List[GovernanceEvent]:
        """Recent events emitted by this process, optionally filtered."""
        with self._lock:
            events = list(self.history)
        if name:
            events = [e for e in events if e.name == name]
        if tenant_id:
            events = [e for e in events if e.tenant_id == tenant_id]
        return events

    def _write(self, event: GovernanceEvent):
        if not self.event_log_dir:
            return

        log_file = self.event_log_dir / f"events_{event.emitted_at.strftime('%Y-%m-%d')}.jsonl"
        try:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(event.model_dump(mode="json")) + "\n")
        except OSError as e:
            logger.error(f"Failed to write event {event.id} to {log_file}: {e}")
