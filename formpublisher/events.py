"""Lifecycle events and progress snapshots.

Components report what happened through immutable LifecycleEvent records
dispatched by an EventEmitter (observer pattern). Publish and withdraw also
deliver a ProgressSnapshot to their caller every time a step changes status,
so a UI can render the step list without sharing mutable state with the
orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from dateutil.parser import isoparse

from formpublisher.types import (
    SYSTEM_ACTOR,
    Actor,
    EventType,
    OperationKind,
    StepId,
    StepStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LifecycleEvent:
    """A single event in the form lifecycle.

    Attributes:
        event_id: Globally unique event identifier (e.g., "evt_01H8...")
        type: Event type from EventType enum
        tenant: Store the event belongs to
        ts: UTC timestamp when the event occurred
        actor: Actor who triggered this event
        payload: Optional event-specific data

    Examples:
        >>> from datetime import datetime, timezone
        >>> event = LifecycleEvent(
        ...     event_id="evt_001",
        ...     type=EventType.VERSION_SAVED,
        ...     tenant="store_1",
        ...     ts=datetime.now(timezone.utc),
        ...     payload={"versionId": "ver_1"},
        ... )
        >>> event.actor.kind.value
        'system'
    """
    event_id: str
    type: EventType
    tenant: str
    ts: datetime
    actor: Actor = SYSTEM_ACTOR
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, EventType):
            object.__setattr__(self, "type", EventType(self.type))

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization (ISO 8601 timestamp)."""
        result: Dict[str, Any] = {
            "eventId": self.event_id,
            "type": self.type.value,
            "tenant": self.tenant,
            "ts": self.ts.isoformat(),
            "actor": self.actor.to_dict(),
        }
        if self.payload is not None:
            result["payload"] = self.payload
        return result

    def to_jsonl(self) -> str:
        """Single-line JSON, suitable for appending to an audit log."""
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleEvent":
        return cls(
            event_id=data["eventId"],
            type=EventType(data["type"]),
            tenant=data["tenant"],
            ts=isoparse(data["ts"]),
            actor=Actor.from_dict(data["actor"]),
            payload=data.get("payload"),
        )


@dataclass(frozen=True)
class StepView:
    """Read-only view of one step inside a ProgressSnapshot."""
    id: StepId
    label: str
    status: StepStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id.value,
            "label": self.label,
            "status": self.status.value,
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable state of a publish/withdraw operation at one moment.

    Attributes:
        operation: Which operation is running
        tenant: Store the operation runs for
        steps: Ordered step views
        sequence: Monotonic counter within the operation (0 = initial list)
    """
    operation: OperationKind
    tenant: str
    steps: Tuple[StepView, ...] = field(default_factory=tuple)
    sequence: int = 0

    def status_of(self, step_id: StepId) -> StepStatus:
        for step in self.steps:
            if step.id == step_id:
                return step.status
        raise KeyError(step_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "tenant": self.tenant,
            "sequence": self.sequence,
            "steps": [s.to_dict() for s in self.steps],
        }


EventListener = Callable[[LifecycleEvent], None]
"""Event listener callback. Called synchronously in registration order."""

ProgressListener = Callable[[ProgressSnapshot], None]
"""Receives every ProgressSnapshot of one publish/withdraw call."""


class EventEmitter:
    """Event emitter for managing event listeners and dispatching events.

    Features:
    - Type-specific subscriptions (listen to specific event types)
    - Wildcard subscriptions (listen to all events)
    - Synchronous dispatch (listeners called in registration order)
    - Error isolation (a failing listener is logged and skipped)

    Examples:
        >>> emitter = EventEmitter()
        >>> seen = []
        >>> emitter.on(EventType.VERSION_SAVED, seen.append)
        >>> payload = {"versionId": "ver_1"}
        >>> _ = emitter.emit_new(EventType.VERSION_SAVED, "store_1", payload)
        >>> seen[0].payload
        {'versionId': 'ver_1'}
    """

    def __init__(self):
        self._listeners: Dict[EventType, List[EventListener]] = {}
        self._any_listeners: List[EventListener] = []

    def on(self, event_type: EventType, listener: EventListener) -> None:
        """Subscribe to a specific event type."""
        self._listeners.setdefault(event_type, []).append(listener)

    def on_any(self, listener: EventListener) -> None:
        """Subscribe to all event types (wildcard subscription)."""
        self._any_listeners.append(listener)

    def off(self, event_type: EventType, listener: EventListener) -> None:
        """Unsubscribe from a specific event type. Unknown listeners are ignored."""
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_any(self, listener: EventListener) -> None:
        if listener in self._any_listeners:
            self._any_listeners.remove(listener)

    def emit(self, event: LifecycleEvent) -> None:
        """Dispatch an event to type-specific listeners, then wildcard listeners.

        Listener exceptions are logged and do not reach the caller or the
        remaining listeners.
        """
        listeners = list(self._listeners.get(event.type, [])) + self._any_listeners
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {event.type.value}")

    def emit_new(
        self,
        event_type: EventType,
        tenant: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> LifecycleEvent:
        """Build a LifecycleEvent with a fresh id and timestamp, emit and return it."""
        event = LifecycleEvent(
            event_id=new_event_id(),
            type=event_type,
            tenant=tenant,
            ts=utcnow(),
            actor=actor or SYSTEM_ACTOR,
            payload=payload,
        )
        self.emit(event)
        return event

    def clear(self) -> None:
        self._listeners.clear()
        self._any_listeners.clear()

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        """Count listeners for one type, or all listeners (including wildcard)."""
        if event_type is not None:
            return len(self._listeners.get(event_type, []))
        typed = sum(len(ls) for ls in self._listeners.values())
        return len(self._any_listeners) + typed


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:16]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "LifecycleEvent",
    "StepView",
    "ProgressSnapshot",
    "EventListener",
    "ProgressListener",
    "EventEmitter",
    "new_event_id",
    "utcnow",
]
