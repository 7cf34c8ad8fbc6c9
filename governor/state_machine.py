"""
Task status state machine.

Every status change goes through :func:`attempt_transition`, which validates
the edge against ``TRANSITION_RULES``, writes the new status under a row lock
and appends exactly one ``TaskTransition``. Retries with the same idempotency
key replay the stored outcome instead of writing again.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import ErrorCode, error_for
from .events import EventType, GovernanceEvent, queue_event
from .models import (
    ActorType,
    AgentStatus,
    Task,
    TaskStatus,
    TaskTransition,
    status_writer,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is asking for a change."""

    type: ActorType
    id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ActorType(self.type))

    @classmethod
    def agent(cls, agent_id: str) -> Actor:
        return cls(ActorType.AGENT, agent_id)

    @classmethod
    def human(cls, user_id: str | None = None) -> Actor:
        return cls(ActorType.HUMAN, user_id)

    @classmethod
    def system(cls, name: str = "governor") -> Actor:
        return cls(ActorType.SYSTEM, name)


@dataclass(frozen=True)
class TransitionRule:
    """One allowed edge. ``required`` lists artifact groups; any name in a group satisfies it."""

    from_status: TaskStatus
    to_status: TaskStatus
    actors: frozenset[ActorType]
    required: tuple[tuple[str, ...], ...] = ()


AGENT = ActorType.AGENT
HUMAN = ActorType.HUMAN
SYSTEM = ActorType.SYSTEM


def _rules(
    from_status: TaskStatus,
    targets: Iterable[TaskStatus],
    actors: Iterable[ActorType],
    required: tuple[tuple[str, ...], ...] = (),
) -> list[TransitionRule]:
    allowed = frozenset(actors)
    return [TransitionRule(from_status, to, allowed, required) for to in targets]


S = TaskStatus

TRANSITION_RULES: tuple[TransitionRule, ...] = tuple(
    _rules(S.INBOX, [S.ASSIGNED], [AGENT, HUMAN, SYSTEM], (("assignee_ids",),))
    + _rules(S.INBOX, [S.CANCELED], [HUMAN])
    + _rules(S.ASSIGNED, [S.IN_PROGRESS], [AGENT, HUMAN], (("work_plan",),))
    + _rules(S.ASSIGNED, [S.INBOX, S.CANCELED], [HUMAN])
    + _rules(
        S.IN_PROGRESS,
        [S.REVIEW],
        [AGENT, HUMAN],
        (("deliverable",), ("self_review", "checklist")),
    )
    + _rules(S.IN_PROGRESS, [S.BLOCKED], [AGENT, HUMAN, SYSTEM])
    + _rules(S.IN_PROGRESS, [S.NEEDS_APPROVAL], [SYSTEM])
    + _rules(S.IN_PROGRESS, [S.CANCELED], [HUMAN])
    + _rules(S.REVIEW, [S.IN_PROGRESS], [AGENT, HUMAN])
    + _rules(S.REVIEW, [S.DONE], [HUMAN], (("approval_record",),))
    + _rules(S.REVIEW, [S.BLOCKED, S.NEEDS_APPROVAL], [HUMAN, SYSTEM])
    + _rules(S.REVIEW, [S.CANCELED], [HUMAN])
    + _rules(
        S.NEEDS_APPROVAL,
        [S.INBOX, S.ASSIGNED, S.IN_PROGRESS, S.REVIEW, S.CANCELED],
        [HUMAN],
    )
    + _rules(S.NEEDS_APPROVAL, [S.DONE], [HUMAN], (("approval_record",),))
    + _rules(S.NEEDS_APPROVAL, [S.BLOCKED], [HUMAN, SYSTEM])
    + _rules(S.BLOCKED, [S.ASSIGNED, S.IN_PROGRESS, S.CANCELED], [HUMAN])
    + _rules(S.BLOCKED, [S.NEEDS_APPROVAL], [HUMAN, SYSTEM])
)

_RULES_BY_EDGE: dict[tuple[TaskStatus, TaskStatus], TransitionRule] = {
    (rule.from_status, rule.to_status): rule for rule in TRANSITION_RULES
}


def find_rule(from_status: TaskStatus | str, to_status: TaskStatus | str) -> TransitionRule | None:
    return _RULES_BY_EDGE.get((TaskStatus(from_status), TaskStatus(to_status)))


def allowed_targets(from_status: TaskStatus | str) -> list[TaskStatus]:
    """Statuses reachable in one step from ``from_status``."""
    source = TaskStatus(from_status)
    return [rule.to_status for rule in TRANSITION_RULES if rule.from_status == source]


@dataclass
class TransitionResult:
    """Outcome of a transition request."""

    ok: bool
    task_id: str
    from_status: TaskStatus | None = None
    to_status: TaskStatus | None = None
    error: ErrorCode | None = None
    message: str = ""
    transition_id: str | None = None
    replayed: bool = False
    deferred: bool = False
    approval_id: str | None = None
    missing: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls, task_id: str, transition: TaskTransition, *, replayed: bool = False) -> TransitionResult:
        return cls(
            ok=True,
            task_id=task_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
            transition_id=transition.id,
            replayed=replayed,
        )

    @classmethod
    def failed(
        cls,
        task_id: str,
        error: ErrorCode,
        message: str,
        *,
        from_status: TaskStatus | None = None,
        to_status: TaskStatus | None = None,
        missing: Iterable[str] = (),
    ) -> TransitionResult:
        return cls(
            ok=False,
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            error=error,
            message=message,
            missing=tuple(missing),
        )

    @classmethod
    def pending_approval(
        cls, task_id: str, from_status: TaskStatus, to_status: TaskStatus, approval_id: str
    ) -> TransitionResult:
        return cls(
            ok=True,
            task_id=task_id,
            from_status=from_status,
            to_status=to_status,
            deferred=True,
            approval_id=approval_id,
            message="Awaiting human approval",
        )

    def raise_for_error(self) -> TransitionResult:
        if not self.ok and self.error is not None:
            raise error_for(self.error, self.message)
        return self


# =============================================================================
# Validation
# =============================================================================


def artifact_present(value: Any) -> bool:
    """None, blank strings and empty collections count as absent."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) > 0
    return True


def _artifact_value(task: Task, artifacts: Mapping[str, Any], name: str) -> Any:
    value = artifacts.get(name)
    if name == "assignee_ids" and not artifact_present(value):
        return task.assignee_ids
    return value


def missing_artifacts(rule: TransitionRule, task: Task, artifacts: Mapping[str, Any]) -> list[str]:
    missing: list[str] = []
    for group in rule.required:
        if not any(artifact_present(_artifact_value(task, artifacts, name)) for name in group):
            missing.append(" or ".join(group))
    return missing


async def _actor_quarantined(session: AsyncSession, actor: Actor) -> bool:
    if actor.type != ActorType.AGENT or not actor.id:
        return False
    agent = await db.get_agent_by_id(session, actor.id)
    return agent is not None and agent.status == AgentStatus.QUARANTINED


async def validate_transition(
    session: AsyncSession,
    task: Task,
    to_status: TaskStatus | str,
    actor: Actor,
    artifacts: Mapping[str, Any] | None = None,
) -> TransitionResult | None:
    """Structural check of a transition. Returns the failure, or None when valid."""
    target = TaskStatus(to_status)
    current = task.status
    artifacts = artifacts or {}

    if current.is_terminal:
        return TransitionResult.failed(
            task.id,
            ErrorCode.ALREADY_TERMINAL,
            f"Task is {current.value} and cannot change",
            from_status=current,
            to_status=target,
        )

    rule = find_rule(current, target)
    if rule is None:
        return TransitionResult.failed(
            task.id,
            ErrorCode.INVALID_TRANSITION,
            f"No transition from {current.value} to {target.value}",
            from_status=current,
            to_status=target,
        )

    if actor.type not in rule.actors:
        return TransitionResult.failed(
            task.id,
            ErrorCode.ACTOR_NOT_ALLOWED,
            f"{actor.type.value} may not move a task from {current.value} to {target.value}",
            from_status=current,
            to_status=target,
        )
    if await _actor_quarantined(session, actor):
        return TransitionResult.failed(
            task.id,
            ErrorCode.ACTOR_NOT_ALLOWED,
            f"Agent {actor.id} is quarantined",
            from_status=current,
            to_status=target,
        )

    missing = missing_artifacts(rule, task, artifacts)
    if missing:
        return TransitionResult.failed(
            task.id,
            ErrorCode.MISSING_ARTIFACT,
            f"Missing required artifacts: {', '.join(missing)}",
            from_status=current,
            to_status=target,
            missing=missing,
        )
    return None


async def replay_transition(
    session: AsyncSession, task_id: str, idempotency_key: str
) -> TransitionResult | None:
    """Stored outcome for an idempotency key, or None if the key is unused."""
    existing = await db.get_transition_by_key(session, idempotency_key)
    if existing is None:
        return None
    if existing.task_id != task_id:
        return TransitionResult.failed(
            task_id,
            ErrorCode.INVALID_TRANSITION,
            f"Idempotency key {idempotency_key!r} already used for task {existing.task_id}",
        )
    return TransitionResult.success(task_id, existing, replayed=True)


# =============================================================================
# Apply
# =============================================================================


def json_safe(artifacts: Mapping[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(dict(artifacts), default=str))


def _apply(task: Task, target: TaskStatus, artifacts: Mapping[str, Any], reason: str | None) -> None:
    now = utcnow()
    source = task.status

    with status_writer():
        task.status = target

    assignees = artifacts.get("assignee_ids")
    if artifact_present(assignees):
        task.assignee_ids = [str(a) for a in assignees]
    extra = {k: v for k, v in artifacts.items() if k != "assignee_ids"}
    if extra:
        task.artifacts = {**(task.artifacts or {}), **json_safe(extra)}

    if target == TaskStatus.IN_PROGRESS and task.started_at is None:
        task.started_at = now
    if target.is_terminal:
        task.completed_at = now
    if target == TaskStatus.BLOCKED:
        task.blocked_reason = reason or "blocked"
    elif source == TaskStatus.BLOCKED:
        task.blocked_reason = None


async def attempt_transition(
    session: AsyncSession,
    task_id: str,
    to_status: TaskStatus | str,
    actor: Actor,
    artifacts: Mapping[str, Any] | None = None,
    *,
    idempotency_key: str,
    reason: str | None = None,
) -> TransitionResult:
    """Validate and apply one status change inside the caller's transaction."""
    if not idempotency_key:
        raise ValueError("idempotency_key is required")
    target = TaskStatus(to_status)
    artifacts = dict(artifacts or {})

    replay = await replay_transition(session, task_id, idempotency_key)
    if replay is not None:
        return replay

    task = await db.require_task(session, task_id, for_update=True)

    # A concurrent caller with the same key may have committed while we waited on the lock.
    replay = await replay_transition(session, task_id, idempotency_key)
    if replay is not None:
        return replay

    failure = await validate_transition(session, task, target, actor, artifacts)
    if failure is not None:
        logger.debug("Rejected transition for task %s: %s", task_id, failure.message)
        return failure

    source = task.status
    _apply(task, target, artifacts, reason)

    transition = TaskTransition(
        task_id=task.id,
        project_id=task.project_id,
        from_status=source,
        to_status=target,
        actor_type=actor.type,
        actor_id=actor.id,
        reason=reason,
        artifacts_snapshot=json_safe(artifacts),
        idempotency_key=idempotency_key,
        created_at=utcnow(),
    )
    session.add(transition)
    await session.flush()

    queue_event(
        session,
        GovernanceEvent(
            type=EventType.TASK_TRANSITIONED,
            task_id=task.id,
            agent_id=actor.id if actor.type == ActorType.AGENT else None,
            actor_type=actor.type.value,
            message=f"{source.value} -> {target.value}",
            data={
                "project_id": task.project_id,
                "from_status": source.value,
                "to_status": target.value,
                "transition_id": transition.id,
                "reason": reason,
            },
        ),
    )
    if target == TaskStatus.IN_PROGRESS and task.assignee_ids:
        queue_event(
            session,
            GovernanceEvent(
                type=EventType.TASK_READY,
                task_id=task.id,
                agent_id=task.assignee_ids[0],
                actor_type=actor.type.value,
                message=f"Task ready: {task.title}",
                data={
                    "project_id": task.project_id,
                    "task_type": task.type,
                    "assignee_ids": list(task.assignee_ids),
                },
            ),
        )

    logger.info(
        "Task %s: %s -> %s by %s", task.id, source.value, target.value, actor.type.value
    )
    return TransitionResult.success(task.id, transition)
