"""
Governed transition entry point.

Composes the pieces in order: idempotent replay, structural check, policy,
approval deferral, budget, and finally the state machine write.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import approvals, budget, db
from .errors import ErrorCode
from .models import ActorType, ApprovalStatus, PolicyOutcome, RiskLevel, TaskStatus
from .operator import OperatorOperation
from .policy import PolicyAction, evaluate, task_type_risk
from .state_machine import (
    Actor,
    TransitionResult,
    attempt_transition,
    json_safe,
    replay_transition,
    validate_transition,
)

logger = logging.getLogger(__name__)

TRANSITION_ACTION = "task_transition"

# Targets whose default risk follows the task type; everything else is GREEN.
_TYPED_RISK_TARGETS = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.DONE})


def default_risk(task_type: str | None, to_status: TaskStatus) -> RiskLevel:
    return task_type_risk(task_type) if to_status in _TYPED_RISK_TARGETS else RiskLevel.GREEN


def _approval_key(idempotency_key: str) -> str:
    return f"gate:{idempotency_key}"


async def request_transition(
    session: AsyncSession,
    task_id: str,
    to_status: TaskStatus | str,
    actor: Actor,
    artifacts: Mapping[str, Any] | None = None,
    *,
    idempotency_key: str,
    estimated_cost: Decimal | int | str = Decimal("0"),
    risk_level: RiskLevel | str | None = None,
    action_type: str = TRANSITION_ACTION,
    reason: str | None = None,
) -> TransitionResult:
    """Request a status change subject to policy, approval and budget."""
    target = TaskStatus(to_status)
    artifacts = dict(artifacts or {})
    cost = Decimal(str(estimated_cost or 0))

    replay = await replay_transition(session, task_id, idempotency_key)
    if replay is not None:
        return replay

    task = await db.require_task(session, task_id, for_update=True)

    deferred = await approvals.get_by_idempotency_key(session, _approval_key(idempotency_key))
    if deferred is not None:
        if deferred.status == ApprovalStatus.PENDING:
            return TransitionResult.pending_approval(task.id, task.status, target, deferred.id)
        if deferred.status != ApprovalStatus.APPROVED:
            return TransitionResult.failed(
                task.id,
                ErrorCode.APPROVAL_EXPIRED
                if deferred.status == ApprovalStatus.EXPIRED
                else ErrorCode.POLICY_BLOCKED,
                f"Approval {deferred.id} is {deferred.status.value}",
                from_status=task.status,
                to_status=target,
            )

    failure = await validate_transition(session, task, target, actor, artifacts)
    if failure is not None:
        return failure

    if actor.type == ActorType.SYSTEM:
        return await attempt_transition(
            session, task.id, target, actor, artifacts, idempotency_key=idempotency_key, reason=reason
        )

    approved = deferred is not None or await approvals.approval_satisfies(
        session, artifacts.get("approval_record"), task.id
    )
    if not approved:
        risk = RiskLevel(risk_level) if risk_level else default_risk(task.type, target)
        decision = await evaluate(
            session,
            PolicyAction(
                action_type=action_type,
                risk_level=risk,
                estimated_cost=cost,
                actor_agent_id=actor.id if actor.type == ActorType.AGENT else None,
                actor_type=actor.type,
                project_id=task.project_id,
                operation=OperatorOperation.TRANSITION,
            ),
        )
        if decision.outcome == PolicyOutcome.DENY:
            return TransitionResult.failed(
                task.id,
                ErrorCode.POLICY_BLOCKED,
                decision.reason,
                from_status=task.status,
                to_status=target,
            )
        if decision.outcome == PolicyOutcome.REQUIRE_APPROVAL and actor.type == ActorType.AGENT:
            approval = await approvals.request(
                session,
                actor.id or "",
                action_type,
                f"Move task '{task.title}' from {task.status.value} to {target.value}",
                risk,
                cost,
                task_id=task.id,
                project_id=task.project_id,
                justification=reason or decision.reason,
                payload={
                    "task_id": task.id,
                    "from_status": task.status.value,
                    "to_status": target.value,
                    "actor_id": actor.id,
                    "artifacts": json_safe(artifacts),
                    "idempotency_key": idempotency_key,
                    "estimated_cost": str(cost),
                    "reason": reason,
                    "triggered_rules": decision.triggered_rules,
                },
                idempotency_key=_approval_key(idempotency_key),
            )
            logger.info("Transition of task %s deferred pending approval %s", task.id, approval.id)
            return TransitionResult.pending_approval(task.id, task.status, target, approval.id)

    if actor.type == ActorType.AGENT and actor.id and cost > 0:
        allowance = await budget.authorize(session, actor.id, task.id, cost)
        if not allowance.allowed:
            return TransitionResult.failed(
                task.id,
                ErrorCode.BUDGET_EXCEEDED,
                allowance.reason,
                from_status=task.status,
                to_status=target,
            )

    return await attempt_transition(
        session, task.id, target, actor, artifacts, idempotency_key=idempotency_key, reason=reason
    )


async def resume_approved(session: AsyncSession, approval_id: str) -> TransitionResult:
    """Apply the transition an approved approval was holding back."""
    approval = await approvals.require_approval(session, approval_id)
    payload = approval.payload or {}
    task_id = payload.get("task_id") or approval.task_id
    if not task_id or "to_status" not in payload or "idempotency_key" not in payload:
        raise ValueError(f"Approval {approval_id} does not carry a deferred transition")

    if approval.status != ApprovalStatus.APPROVED:
        error = (
            ErrorCode.APPROVAL_EXPIRED
            if approval.status == ApprovalStatus.EXPIRED
            else ErrorCode.POLICY_BLOCKED
        )
        return TransitionResult.failed(task_id, error, f"Approval is {approval.status.value}")

    artifacts = dict(payload.get("artifacts") or {})
    artifacts["approval_record"] = approval.id
    return await request_transition(
        session,
        task_id,
        payload["to_status"],
        Actor.agent(payload["actor_id"]) if payload.get("actor_id") else Actor.human(approval.decided_by),
        artifacts,
        idempotency_key=payload["idempotency_key"],
        estimated_cost=payload.get("estimated_cost") or "0",
        reason=payload.get("reason"),
    )
