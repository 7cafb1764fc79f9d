"""Change events handed to the broadcast and audit collaborators.

After a mutation commits, the core emits a PlanEvent describing it. Delivery is
fire-and-forget: a failing sink is logged and skipped, the mutation stands.
"""
import enum
import logging
from datetime import datetime
from typing import Any, Optional, Protocol
from uuid import UUID

from pydantic import BaseModel, Field

from .models import utcnow

logger = logging.getLogger("planner-core.events")


class EventType(str, enum.Enum):
    """Kinds of change, named as they travel on the wire."""

    PLAN_CREATED = "plan.created"
    PLAN_UPDATED = "plan.updated"
    PLAN_DELETED = "plan.deleted"

    NODE_CREATED = "node.created"
    NODE_UPDATED = "node.updated"
    NODE_DELETED = "node.deleted"
    NODE_MOVED = "node.moved"
    NODE_STATUS_CHANGED = "node.status_changed"

    AGENT_REQUESTED = "collaboration.agent_requested"
    AGENT_ASSIGNED = "collaboration.user_assigned"
    AGENT_UNASSIGNED = "collaboration.user_unassigned"

    DECISION_REQUESTED = "collaboration.decision_requested"
    DECISION_RESOLVED = "collaboration.decision_resolved"
    DECISION_CANCELLED = "collaboration.decision_cancelled"

    COLLABORATOR_ADDED = "collaborator.added"
    COLLABORATOR_REMOVED = "collaborator.removed"


class PlanEvent(BaseModel):
    """A single change to a plan."""

    plan_id: UUID
    event_type: EventType
    node_ids: list[UUID] = Field(default_factory=list)
    actor_id: Optional[UUID] = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class EventSink(Protocol):
    """Anything that accepts plan events."""

    def publish(self, event: PlanEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes each event to the log."""

    def __init__(self, name: str = "planner-core.audit"):
        self._logger = logging.getLogger(name)

    def publish(self, event: PlanEvent) -> None:
        self._logger.info(
            f"{event.event_type.value} plan={event.plan_id} actor={event.actor_id} "
            f"nodes={[str(n) for n in event.node_ids]}"
        )


class RecordingEventSink:
    """Keeps events in memory; used by tests and local tooling."""

    def __init__(self):
        self.events: list[PlanEvent] = []

    def publish(self, event: PlanEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[PlanEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


class EventDispatcher:
    """Fans events out to broadcast and audit sinks."""

    def __init__(self):
        self._sinks: list[EventSink] = []

    def register(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def unregister(self, sink: EventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def emit(self, event: PlanEvent) -> None:
        for sink in list(self._sinks):
            try:
                sink.publish(event)
            except Exception as e:
                logger.error(
                    f"Event sink {type(sink).__name__} failed for {event.event_type.value}: {e}",
                    exc_info=True,
                )


dispatcher = EventDispatcher()
dispatcher.register(LoggingEventSink())


def emit(
    plan_id: UUID,
    event_type: EventType,
    node_ids: Optional[list[UUID]] = None,
    actor_id: Optional[UUID] = None,
    **data: Any,
) -> PlanEvent:
    """Build and dispatch a PlanEvent."""
    event = PlanEvent(
        plan_id=plan_id,
        event_type=event_type,
        node_ids=node_ids or [],
        actor_id=actor_id,
        data=data,
    )
    dispatcher.emit(event)
    return event
