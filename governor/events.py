"""
Domain events emitted by the governance engine.

Events raised inside a unit of work are queued on the session and only
dispatched after the transaction commits (see ``db.session_scope``), so
collaborators never observe a change that was rolled back.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_PENDING_KEY = "governor.pending_events"


class EventType(str, Enum):
    TASK_TRANSITIONED = "task.transitioned"
    TASK_READY = "task.ready"

    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_APPROVED = "approval.approved"
    APPROVAL_DENIED = "approval.denied"
    APPROVAL_EXPIRED = "approval.expired"
    APPROVAL_CANCELED = "approval.canceled"

    LOOP_DETECTED = "loop.detected"
    AGENT_QUARANTINED = "agent.quarantined"
    AGENT_RELEASED = "agent.released"

    SPEND_RECORDED = "budget.spend_recorded"
    BUDGET_EXCEEDED = "budget.exceeded"

    OPERATOR_MODE_CHANGED = "operator.mode_changed"


@dataclass
class GovernanceEvent:
    """Standardized event for activity/notification collaborators."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.TASK_TRANSITIONED
    task_id: str | None = None
    agent_id: str | None = None
    actor_type: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "actor_type": self.actor_type,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[GovernanceEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: GovernanceEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler %r failed for %s", handler, event.type.value)


event_bus = EventEmitter()


def queue_event(session: AsyncSession, event: GovernanceEvent) -> GovernanceEvent:
    """Attach an event to the session; it is emitted once the session commits."""
    session.info.setdefault(_PENDING_KEY, []).append(event)
    return event


def pending_events(session: AsyncSession) -> list[GovernanceEvent]:
    return list(session.info.get(_PENDING_KEY, []))


def discard_pending(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)


async def dispatch_pending(session: AsyncSession, emitter: EventEmitter | None = None) -> int:
    """Emit and clear every event queued on the session."""
    events: list[GovernanceEvent] = session.info.pop(_PENDING_KEY, [])
    bus = emitter or event_bus
    for event in events:
        await bus.emit(event)
    return len(events)


# =============================================================================
# Built-in handlers
# =============================================================================


async def persist_event_handler(event: GovernanceEvent) -> None:
    """Handler that persists events to the activity log."""
    from .db import get_session
    from .models import ActivityLog

    async with get_session() as session:
        session.add(
            ActivityLog(
                event_type=event.type.value,
                task_id=event.task_id,
                agent_id=event.agent_id,
                actor_type=event.actor_type,
                description=event.message,
                details=event.data,
                created_at=event.timestamp,
            )
        )


async def publish_event_handler(event: GovernanceEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not event.task_id and not event.agent_id:
        return

    from .redis_client import get_redis_client

    redis = get_redis_client()
    if event.task_id:
        channel = f"channel:task:{event.task_id}"
    else:
        channel = f"channel:agent:{event.agent_id}"
    await redis.publish(channel, json.dumps(event.to_dict(), default=str))


def install_default_handlers(emitter: EventEmitter | None = None) -> None:
    """Register the persistence, pub/sub and routing handlers per settings."""
    from .config import settings
    from .router import ready_signal_handler

    bus = emitter or event_bus
    bus.on_event(persist_event_handler)
    if settings.redis_events_enabled:
        bus.on_event(publish_event_handler)
    if settings.redis_queue_enabled:
        bus.on_event(ready_signal_handler)
