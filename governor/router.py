"""Executor routing: map ready tasks to a backend and enqueue them on Redis Streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, cast

from .config import settings
from .events import EventType, GovernanceEvent
from .models import TaskType
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


class Executor(StrEnum):
    CURSOR = "CURSOR"
    OPENCLAW_AGENT = "OPENCLAW_AGENT"


# Work types that are not task types but may be named explicitly by callers.
CODE_CHANGE = "CODE_CHANGE"

ROUTING_RULES: dict[str, Executor] = {
    CODE_CHANGE: Executor.CURSOR,
    TaskType.ENGINEERING.value: Executor.CURSOR,
}
DEFAULT_EXECUTOR = Executor.OPENCLAW_AGENT

STREAM_PREFIX = "stream:jobs:"


class QueueFullError(RuntimeError):
    """Raised when a Redis job stream reaches capacity."""


@dataclass(frozen=True)
class JobPayload:
    task_id: str
    task_type: str
    executor: str
    agent_id: str | None = None
    project_id: str | None = None
    schema_version: str = "1.0"
    retry_count: int = 0

    def to_dict(self) -> dict[str, str]:
        payload: dict[str, str] = {
            "schema_version": str(self.schema_version),
            "task_id": str(self.task_id),
            "task_type": str(self.task_type),
            "executor": str(self.executor),
            "retry_count": str(self.retry_count),
        }
        if self.agent_id:
            payload["agent_id"] = str(self.agent_id)
        if self.project_id:
            payload["project_id"] = str(self.project_id)
        return payload


def route_task(task_type: str | None) -> Executor:
    """Pick the execution backend for a task type."""
    return ROUTING_RULES.get((task_type or "").upper(), DEFAULT_EXECUTOR)


def stream_for_executor(executor: Executor | str) -> str:
    return f"{STREAM_PREFIX}{str(executor).lower()}"


async def _ensure_capacity(stream: str) -> None:
    redis = get_redis_client()
    length = await redis.xlen(stream)
    if length >= settings.redis_queue_max_depth:
        raise QueueFullError(f"Stream {stream} at capacity ({length})")


async def enqueue_job(payload: JobPayload) -> str:
    """Enqueue a job on the executor's Redis stream."""
    stream = stream_for_executor(payload.executor)
    await _ensure_capacity(stream)

    redis = get_redis_client()
    msg_id = await redis.xadd(stream, cast(dict[Any, Any], payload.to_dict()))
    logger.info("Enqueued task %s on %s (%s)", payload.task_id, stream, msg_id)
    return msg_id


async def ready_signal_handler(event: GovernanceEvent) -> None:
    """Event handler: route every ``task.ready`` event to its executor stream."""
    if event.type != EventType.TASK_READY or not event.task_id:
        return
    task_type = event.data.get("task_type")
    executor = route_task(task_type)
    await enqueue_job(
        JobPayload(
            task_id=event.task_id,
            task_type=str(task_type or ""),
            executor=executor.value,
            agent_id=event.agent_id,
            project_id=event.data.get("project_id"),
        )
    )
