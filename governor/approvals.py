"""Approval gate: human decision records for risky actions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .config import settings
from .errors import ApprovalNotFoundError, ErrorCode, error_for
from .events import EventType, GovernanceEvent, queue_event
from .models import ActorType, Approval, ApprovalStatus, RiskLevel, Task, utcnow

logger = logging.getLogger(__name__)


class DecisionOutcome(StrEnum):
    APPROVE = "APPROVE"
    DENY = "DENY"


@dataclass
class DecisionResult:
    ok: bool
    approval_id: str
    status: ApprovalStatus
    error: ErrorCode | None = None
    message: str = ""

    @classmethod
    def success(cls, approval: Approval, message: str = "") -> DecisionResult:
        return cls(ok=True, approval_id=approval.id, status=approval.status, message=message)

    @classmethod
    def failed(cls, approval: Approval, error: ErrorCode, message: str) -> DecisionResult:
        return cls(ok=False, approval_id=approval.id, status=approval.status, error=error, message=message)

    def raise_for_error(self) -> DecisionResult:
        if not self.ok and self.error is not None:
            raise error_for(self.error, self.message)
        return self


def _event(approval: Approval, event_type: EventType, actor_type: ActorType, message: str) -> GovernanceEvent:
    return GovernanceEvent(
        type=event_type,
        task_id=approval.task_id,
        agent_id=approval.requestor_agent_id,
        actor_type=actor_type.value,
        message=message,
        data={
            "approval_id": approval.id,
            "project_id": approval.project_id,
            "action_type": approval.action_type,
            "risk_level": approval.risk_level.value,
            "status": approval.status.value,
        },
    )


async def get_by_idempotency_key(session: AsyncSession, key: str) -> Approval | None:
    result = await session.execute(
        select(Approval)
        .where(Approval.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_approval(session: AsyncSession, approval_id: str, *, for_update: bool = False) -> Approval:
    if for_update:
        approval = await db.get_for_update(session, Approval, approval_id)
    else:
        approval = await session.get(Approval, approval_id)
    if approval is None:
        raise ApprovalNotFoundError(f"Approval not found: {approval_id}")
    return approval


async def request(
    session: AsyncSession,
    requestor_agent_id: str,
    action_type: str,
    action_summary: str,
    risk_level: RiskLevel | str = RiskLevel.YELLOW,
    estimated_cost: Decimal | None = None,
    ttl: timedelta | None = None,
    *,
    task_id: str | None = None,
    project_id: str | None = None,
    justification: str = "",
    payload: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> Approval:
    """Open a PENDING approval, or return the one already opened under ``idempotency_key``."""
    if idempotency_key:
        existing = await get_by_idempotency_key(session, idempotency_key)
        if existing is not None:
            return existing

    if project_id is None and task_id is not None:
        task = await db.get_task_by_id(session, task_id)
        project_id = task.project_id if task else None
    if project_id is None:
        agent = await db.get_agent_by_id(session, requestor_agent_id)
        project_id = agent.project_id if agent else None

    now = now or utcnow()
    approval = Approval(
        project_id=project_id,
        task_id=task_id,
        requestor_agent_id=requestor_agent_id,
        action_type=action_type,
        action_summary=action_summary,
        risk_level=RiskLevel(risk_level),
        justification=justification,
        estimated_cost=estimated_cost,
        payload=payload or {},
        idempotency_key=idempotency_key,
        status=ApprovalStatus.PENDING,
        expires_at=now + (ttl if ttl is not None else timedelta(minutes=settings.approval_ttl_minutes)),
        created_at=now,
    )
    session.add(approval)
    await session.flush()
    queue_event(
        session,
        _event(approval, EventType.APPROVAL_REQUESTED, ActorType.AGENT, f"Approval requested: {action_summary}"),
    )
    return approval


async def decide(
    session: AsyncSession,
    approval_id: str,
    decided_by: str,
    outcome: DecisionOutcome | str,
    reason: str | None = None,
    *,
    now: datetime | None = None,
) -> DecisionResult:
    """Record a human decision on a PENDING approval."""
    outcome = DecisionOutcome(outcome)
    now = now or utcnow()
    approval = await require_approval(session, approval_id, for_update=True)

    if approval.status == ApprovalStatus.EXPIRED:
        return DecisionResult.failed(approval, ErrorCode.APPROVAL_EXPIRED, "Approval has expired")
    if approval.status != ApprovalStatus.PENDING:
        return DecisionResult.failed(
            approval, ErrorCode.ALREADY_DECIDED, f"Approval is already {approval.status.value}"
        )
    if now > approval.expires_at:
        approval.status = ApprovalStatus.EXPIRED
        queue_event(session, _event(approval, EventType.APPROVAL_EXPIRED, ActorType.SYSTEM, "Approval expired"))
        return DecisionResult.failed(approval, ErrorCode.APPROVAL_EXPIRED, "Approval has expired")

    approval.decided_by = decided_by
    approval.decided_at = now
    approval.reason = reason

    if outcome == DecisionOutcome.APPROVE:
        approval.status = ApprovalStatus.APPROVED
        queue_event(
            session,
            _event(approval, EventType.APPROVAL_APPROVED, ActorType.HUMAN, f"Approved by {decided_by}"),
        )
        return DecisionResult.success(approval)

    approval.status = ApprovalStatus.DENIED
    if approval.task_id:
        task = await db.get_for_update(session, Task, approval.task_id)
        if task is not None:
            task.blocked_reason = reason or f"Approval denied: {approval.action_summary}"
    queue_event(
        session,
        _event(approval, EventType.APPROVAL_DENIED, ActorType.HUMAN, f"Denied by {decided_by}: {reason or ''}"),
    )
    return DecisionResult.success(approval)


async def cancel(
    session: AsyncSession,
    approval_id: str,
    reason: str | None = None,
    *,
    canceled_by: str | None = None,
    now: datetime | None = None,
) -> DecisionResult:
    approval = await require_approval(session, approval_id, for_update=True)
    if approval.status != ApprovalStatus.PENDING:
        return DecisionResult.failed(
            approval, ErrorCode.ALREADY_DECIDED, f"Approval is already {approval.status.value}"
        )
    approval.status = ApprovalStatus.CANCELED
    approval.decided_by = canceled_by
    approval.decided_at = now or utcnow()
    approval.reason = reason
    queue_event(session, _event(approval, EventType.APPROVAL_CANCELED, ActorType.HUMAN, "Approval canceled"))
    return DecisionResult.success(approval)


async def expire_stale(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Flip every overdue PENDING approval to EXPIRED. Safe to run concurrently."""
    now = now or utcnow()
    result = await session.execute(
        update(Approval)
        .where(Approval.status == ApprovalStatus.PENDING, Approval.expires_at < now)
        .values(status=ApprovalStatus.EXPIRED)
        .returning(
            Approval.id,
            Approval.task_id,
            Approval.requestor_agent_id,
            Approval.project_id,
            Approval.action_type,
        )
        .execution_options(synchronize_session=False)
    )
    rows = result.all()
    for row in rows:
        queue_event(
            session,
            GovernanceEvent(
                type=EventType.APPROVAL_EXPIRED,
                task_id=row.task_id,
                agent_id=row.requestor_agent_id,
                actor_type=ActorType.SYSTEM.value,
                message="Approval expired",
                data={"approval_id": row.id, "project_id": row.project_id, "action_type": row.action_type},
            ),
        )
    if rows:
        logger.info("Expired %d stale approvals", len(rows))
    return len(rows)


async def list_pending(session: AsyncSession, project_id: str | None = None) -> list[Approval]:
    query = select(Approval).where(Approval.status == ApprovalStatus.PENDING)
    if project_id:
        query = query.where(Approval.project_id == project_id)
    result = await session.execute(query.order_by(Approval.created_at))
    return list(result.scalars().all())


async def approval_satisfies(session: AsyncSession, approval_id: Any, task_id: str) -> bool:
    """Whether ``approval_id`` names an APPROVED approval for ``task_id``."""
    if not isinstance(approval_id, str) or not approval_id.strip():
        return False
    approval = await session.get(Approval, approval_id.strip(), populate_existing=True)
    return (
        approval is not None
        and approval.status == ApprovalStatus.APPROVED
        and approval.task_id == task_id
    )
