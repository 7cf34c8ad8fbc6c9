"""
Loop detection sweep.

Finds runaway automation and stops it: comment storms and review ping-pong
force the task to BLOCKED, repeated identical tool failures quarantine the
agent and block its work. Every correction is one SYSTEM transition through
the state machine plus one alert, and nothing is ever unblocked here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import alerts, db
from .config import Settings, settings
from .errors import ErrorCode
from .events import EventType, GovernanceEvent, queue_event
from .models import (
    ActorType,
    Agent,
    AgentStatus,
    AlertSeverity,
    Message,
    Task,
    TaskStatus,
    TaskTransition,
    ToolCall,
    utcnow,
)
from .operator import quarantine_agent
from .state_machine import Actor, attempt_transition

logger = logging.getLogger(__name__)

COMMENT_STORM = "comment_storm"
REVIEW_LOOP = "review_loop"
REPEATED_TOOL_FAILURE = "repeated_tool_failure"

# Statuses SYSTEM may move to BLOCKED.
BLOCKABLE_STATUSES = (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.NEEDS_APPROVAL)


@dataclass(frozen=True)
class LoopThresholds:
    comment_storm_max_messages: int = 20
    comment_storm_window: timedelta = timedelta(minutes=10)
    review_loop_max_cycles: int = 3
    review_loop_window: timedelta = timedelta(minutes=60)
    tool_failure_max_consecutive: int = 5

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> LoopThresholds:
        config = config or settings
        return cls(
            comment_storm_max_messages=config.comment_storm_max_messages,
            comment_storm_window=timedelta(minutes=config.comment_storm_window_minutes),
            review_loop_max_cycles=config.review_loop_max_cycles,
            review_loop_window=timedelta(minutes=config.review_loop_window_minutes),
            tool_failure_max_consecutive=config.tool_failure_max_consecutive,
        )


@dataclass
class LoopDetection:
    reason: str
    alert_id: str
    task_ids: list[str] = field(default_factory=list)
    agent_id: str | None = None


@dataclass
class LoopSweepReport:
    detections: list[LoopDetection] = field(default_factory=list)

    def count(self, reason: str) -> int:
        return sum(1 for d in self.detections if d.reason == reason)

    @property
    def blocked_task_ids(self) -> list[str]:
        return [task_id for d in self.detections for task_id in d.task_ids]

    @property
    def quarantined_agent_ids(self) -> list[str]:
        return [d.agent_id for d in self.detections if d.reason == REPEATED_TOOL_FAILURE and d.agent_id]


_HEX_RE = re.compile(r"\b0x[0-9a-f]+\b|\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b")
_NUM_RE = re.compile(r"\d+")
_WS_RE = re.compile(r"\s+")


def error_signature(tool: str, error: str | None) -> str:
    """Stable signature of a tool failure: ids, addresses and numbers are masked."""
    text = (error or "unknown").lower()
    text = _HEX_RE.sub("#", text)
    text = _NUM_RE.sub("#", text)
    text = _WS_RE.sub(" ", text).strip()
    return f"{tool}:{text[:200]}"


# =============================================================================
# Helpers
# =============================================================================


async def _last_unblock(session: AsyncSession, task_id: str) -> TaskTransition | None:
    result = await session.execute(
        select(TaskTransition)
        .where(
            TaskTransition.task_id == task_id,
            TaskTransition.from_status == TaskStatus.BLOCKED,
        )
        .order_by(TaskTransition.created_at.desc(), TaskTransition.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _window(session: AsyncSession, task_id: str, now: datetime, span: timedelta) -> tuple[datetime, str]:
    """Window start for a task and the anchor that makes forced keys deterministic."""
    start = now - span
    unblock = await _last_unblock(session, task_id)
    if unblock is None:
        return start, "initial"
    return max(start, unblock.created_at), unblock.id


async def _force_block(
    session: AsyncSession,
    task: Task,
    reason: str,
    anchor: str,
) -> bool:
    result = await attempt_transition(
        session,
        task.id,
        TaskStatus.BLOCKED,
        Actor.system("loop-detector"),
        idempotency_key=f"loop:{reason}:{task.id}:{anchor}",
        reason=reason,
    )
    if not result.ok:
        logger.warning("Could not block task %s for %s: %s", task.id, reason, result.message)
    return result.ok and not result.replayed


def _loop_event(
    reason: str, task_id: str | None, agent_id: str | None, project_id: str | None, detail: str
) -> GovernanceEvent:
    return GovernanceEvent(
        type=EventType.LOOP_DETECTED,
        task_id=task_id,
        agent_id=agent_id,
        actor_type=ActorType.SYSTEM.value,
        message=f"Loop detected ({reason}): {detail}",
        data={"project_id": project_id, "reason": reason, "error_code": ErrorCode.LOOP_DETECTED.value},
    )


async def _correct_task(
    session: AsyncSession,
    report: LoopSweepReport,
    task: Task,
    reason: str,
    anchor: str,
    title: str,
    detail: str,
    metadata: dict,
) -> None:
    if not await _force_block(session, task, reason, anchor):
        return
    alert = await alerts.create_alert(
        session,
        type=alerts.LOOP_DETECTED,
        kind=reason,
        title=title,
        description=detail,
        severity=AlertSeverity.WARNING,
        project_id=task.project_id,
        task_id=task.id,
        metadata=metadata,
    )
    queue_event(session, _loop_event(reason, task.id, None, task.project_id, detail))
    report.detections.append(LoopDetection(reason=reason, alert_id=alert.id, task_ids=[task.id]))


# =============================================================================
# Detectors
# =============================================================================


async def _detect_comment_storms(
    session: AsyncSession, report: LoopSweepReport, thresholds: LoopThresholds, now: datetime
) -> None:
    limit = thresholds.comment_storm_max_messages
    candidates = await session.execute(
        select(Message.task_id)
        .where(Message.created_at >= now - thresholds.comment_storm_window)
        .group_by(Message.task_id)
        .having(func.count(Message.id) > limit)
    )
    for task_id in candidates.scalars().all():
        task = await db.get_task_by_id(session, task_id)
        if task is None or task.status not in BLOCKABLE_STATUSES:
            continue
        start, anchor = await _window(session, task.id, now, thresholds.comment_storm_window)
        count = await session.scalar(
            select(func.count(Message.id)).where(Message.task_id == task.id, Message.created_at >= start)
        )
        if (count or 0) <= limit:
            continue
        await _correct_task(
            session,
            report,
            task,
            COMMENT_STORM,
            anchor,
            "Comment storm detected",
            f"{count} messages in {int(thresholds.comment_storm_window.total_seconds() // 60)} minutes",
            {"message_count": count, "threshold": limit},
        )


async def _detect_review_loops(
    session: AsyncSession, report: LoopSweepReport, thresholds: LoopThresholds, now: datetime
) -> None:
    cycles = thresholds.review_loop_max_cycles
    bounce = (TaskTransition.from_status == TaskStatus.REVIEW) & (
        TaskTransition.to_status == TaskStatus.IN_PROGRESS
    )
    candidates = await session.execute(
        select(TaskTransition.task_id)
        .where(bounce, TaskTransition.created_at >= now - thresholds.review_loop_window)
        .group_by(TaskTransition.task_id)
        .having(func.count(TaskTransition.id) >= cycles)
    )
    for task_id in candidates.scalars().all():
        task = await db.get_task_by_id(session, task_id)
        if task is None or task.status not in BLOCKABLE_STATUSES:
            continue
        start, anchor = await _window(session, task.id, now, thresholds.review_loop_window)
        count = await session.scalar(
            select(func.count(TaskTransition.id)).where(
                TaskTransition.task_id == task.id, bounce, TaskTransition.created_at >= start
            )
        )
        if (count or 0) < cycles:
            continue
        await _correct_task(
            session,
            report,
            task,
            REVIEW_LOOP,
            anchor,
            "Review loop detected",
            f"{count} review bounces in {int(thresholds.review_loop_window.total_seconds() // 60)} minutes",
            {"bounce_count": count, "threshold": cycles},
        )


async def _recent_calls(session: AsyncSession, agent: Agent, limit: int) -> list[ToolCall]:
    query = select(ToolCall).where(ToolCall.agent_id == agent.id)
    if agent.released_at is not None:
        query = query.where(ToolCall.created_at > agent.released_at)
    result = await session.execute(query.order_by(ToolCall.created_at.desc(), ToolCall.id.desc()).limit(limit))
    return list(result.scalars().all())


async def _detect_tool_failures(
    session: AsyncSession, report: LoopSweepReport, thresholds: LoopThresholds, now: datetime
) -> None:
    limit = thresholds.tool_failure_max_consecutive
    candidates = await session.execute(
        select(Agent)
        .where(
            Agent.status != AgentStatus.QUARANTINED,
            Agent.id.in_(
                select(ToolCall.agent_id)
                .where(ToolCall.succeeded.is_(False))
                .group_by(ToolCall.agent_id)
                .having(func.count(ToolCall.id) >= limit)
            ),
        )
        .order_by(Agent.id)
    )
    for agent in candidates.scalars().all():
        calls = await _recent_calls(session, agent, limit)
        if len(calls) < limit or any(c.succeeded for c in calls):
            continue
        signatures = {c.error_signature for c in calls}
        if len(signatures) != 1:
            continue

        signature = signatures.pop()
        detail = f"{limit} consecutive failures: {signature}"
        agent = await quarantine_agent(
            session, agent.id, reason=detail, actor_type=ActorType.SYSTEM, actor_id="loop-detector"
        )
        agent.error_streak = (agent.error_streak or 0) + 1

        blocked: list[str] = []
        tasks = await db.list_tasks(session, project_id=agent.project_id, statuses=BLOCKABLE_STATUSES)
        for task in tasks:
            if agent.id not in (task.assignee_ids or []):
                continue
            if await _force_block(session, task, REPEATED_TOOL_FAILURE, f"{agent.id}:{calls[0].id}"):
                blocked.append(task.id)

        alert = await alerts.create_alert(
            session,
            type=alerts.LOOP_DETECTED,
            kind=REPEATED_TOOL_FAILURE,
            title="Repeated tool failure",
            description=f"Agent {agent.name} quarantined after {detail}",
            severity=AlertSeverity.CRITICAL,
            project_id=agent.project_id,
            agent_id=agent.id,
            metadata={"error_signature": signature, "blocked_task_ids": blocked, "threshold": limit},
        )
        queue_event(session, _loop_event(REPEATED_TOOL_FAILURE, None, agent.id, agent.project_id, detail))
        report.detections.append(
            LoopDetection(reason=REPEATED_TOOL_FAILURE, alert_id=alert.id, task_ids=blocked, agent_id=agent.id)
        )


async def detect_loops(
    session: AsyncSession,
    *,
    thresholds: LoopThresholds | None = None,
    now: datetime | None = None,
) -> LoopSweepReport:
    """Run every detector once inside the caller's transaction."""
    thresholds = thresholds or LoopThresholds.from_settings()
    now = now or utcnow()
    report = LoopSweepReport()

    await _detect_comment_storms(session, report, thresholds, now)
    await _detect_review_loops(session, report, thresholds, now)
    await _detect_tool_failures(session, report, thresholds, now)

    if report.detections:
        logger.info(
            "Loop sweep: %d comment storms, %d review loops, %d tool failure quarantines",
            report.count(COMMENT_STORM),
            report.count(REVIEW_LOOP),
            report.count(REPEATED_TOOL_FAILURE),
        )
    return report
