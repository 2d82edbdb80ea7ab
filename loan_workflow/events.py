"""
Event System Module

Publish/subscribe dispatcher for loan workflow events. The workflow core
never notifies anyone itself; the hosting service publishes one event per
audit entry after a successful save, and notification code subscribes.
"""

from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .audit import AuditAction, AuditEntry


@dataclass
class WorkflowEvent:
    """Payload delivered to subscribers"""
    action: AuditAction
    loan_id: str
    application_id: str
    stage: str
    actor: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'loan_id': self.loan_id,
            'application_id': self.application_id,
            'stage': self.stage,
            'actor': self.actor,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_audit_entry(cls, loan, entry: AuditEntry) -> 'WorkflowEvent':
        return cls(
            action=entry.action,
            loan_id=loan.id,
            application_id=loan.application_id,
            stage=loan.current_stage.value,
            actor=entry.actor,
            data=entry.changes,
            timestamp=entry.timestamp,
            event_id=entry.id
        )


Handler = Callable[[WorkflowEvent], None]


class EventDispatcher:
    """Central event dispatcher: publish/subscribe"""

    def __init__(self):
        self._handlers: Dict[AuditAction, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loanflow.events")

    def subscribe(self, action: AuditAction, handler: Handler) -> None:
        """Subscribe to a specific action"""
        with self._lock:
            self._handlers.setdefault(action, []).append(handler)
            self.logger.debug(f"Subscribed handler {_name(handler)} to {action.value}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_name(handler)}")

    def unsubscribe(self, action: AuditAction, handler: Handler) -> None:
        with self._lock:
            try:
                self._handlers.get(action, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_name(handler)} was not subscribed to {action.value}")

    def publish(self, event: WorkflowEvent) -> None:
        """
        Publish event to all subscribers

        A failing handler is logged and skipped; the loan has already been
        saved, so subscribers cannot undo the operation.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.action, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.action.value} for loan {event.application_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(f"Error in event handler {_name(handler)} for {event.action.value}: {e}")

    def handler_count(self, action: Optional[AuditAction] = None) -> int:
        with self._lock:
            if action:
                return len(self._handlers.get(action, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()


def _name(handler: Handler) -> str:
    return getattr(handler, '__name__', repr(handler))
