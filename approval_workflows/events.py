"""
Event System Module

Publish/subscribe dispatcher for workflow transitions. Delivery is
fire-and-forget from the engine's side: a failing handler is logged and never
fails the transition that produced the event. Handlers may see the same event
more than once and must apply it idempotently.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .models import Workflow, WorkflowStep


class WorkflowEvent(Enum):
    """Workflow transitions collaborators can subscribe to"""
    WORKFLOW_CREATED = "workflow.created"
    STEP_DECIDED = "workflow.step_decided"
    STEP_ESCALATED = "workflow.step_escalated"
    WORKFLOW_COMPLETED = "workflow.completed"
    SLA_BREACHED = "workflow.sla_breached"


@dataclass
class EventPayload:
    """Payload for workflow events"""
    event_type: WorkflowEvent
    workflow_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value,
            'workflow_id': self.workflow_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        return cls(
            event_type=WorkflowEvent(data['event_type']),
            workflow_id=data['workflow_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


Handler = Callable[[EventPayload], None]


class EventDispatcher:
    """Central event dispatcher (publish/subscribe)"""

    def __init__(self):
        self._handlers: Dict[WorkflowEvent, List[Handler]] = {}
        self._global_handlers: List[Handler] = []
        self._lock = RLock()
        self.logger = logging.getLogger("approvals.events")

    def subscribe(self, event_type: WorkflowEvent, handler: Handler) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_name(handler)}")

    def unsubscribe(self, event_type: WorkflowEvent, handler: Handler) -> None:
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for workflow:{event.workflow_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # Delivery failures never propagate into the engine's transition
                self.logger.exception(
                    f"Error in event handler {_name(handler)} for {event.event_type.value}"
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[WorkflowEvent] = None) -> int:
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            return sum(len(h) for h in self._handlers.values()) + len(self._global_handlers)


def _name(handler: Handler) -> str:
    return getattr(handler, '__name__', repr(handler))


def create_workflow_event(event_type: WorkflowEvent, workflow: Workflow,
                          step: Optional[WorkflowStep] = None,
                          timestamp: Optional[datetime] = None, **extra: Any) -> EventPayload:
    """Build an event carrying the workflow summary and, optionally, one step"""
    data: Dict[str, Any] = {
        'workflow_type': workflow.workflow_type,
        'reference_type': workflow.reference_type,
        'reference_id': workflow.reference_id,
        'status': workflow.status.value,
        'current_step': workflow.current_step,
        'initiated_by': workflow.initiated_by,
        'version': workflow.version,
    }
    if step is not None:
        data['step'] = {
            'step_number': step.step_number,
            'name': step.name,
            'status': step.status.value,
            'eligible_actor': step.eligible_actor.describe(),
            'decided_by': step.decided_by,
            'comment': step.comment,
            'due_at': step.due_at.isoformat() if step.due_at else None,
        }
    data.update(extra)
    payload = EventPayload(event_type=event_type, workflow_id=workflow.id, data=data)
    if timestamp is not None:
        payload.timestamp = timestamp
    return payload
