"""Operator run modes and the explicit agent quarantine override."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .events import EventType, GovernanceEvent, queue_event
from .models import (
    ActorType,
    Agent,
    AgentStatus,
    OperatorControl,
    OperatorMode,
    PolicyOutcome,
    utcnow,
)

logger = logging.getLogger(__name__)


class OperatorOperation(StrEnum):
    RUN_START = "RUN_START"
    TRANSITION = "TRANSITION"
    TOOL_CALL = "TOOL_CALL"


class ControlSource(StrEnum):
    PROJECT = "PROJECT"
    GLOBAL = "GLOBAL"
    DEFAULT = "DEFAULT"


@dataclass(frozen=True)
class EffectiveOperatorControl:
    mode: OperatorMode
    source: ControlSource
    reason: str | None = None
    updated_at: datetime | None = None
    updated_by: str | None = None


@dataclass(frozen=True)
class OperatorGateDecision:
    outcome: PolicyOutcome
    reason: str


async def set_operator_mode(
    session: AsyncSession,
    mode: OperatorMode | str,
    *,
    project_id: str | None = None,
    reason: str | None = None,
    updated_by: str | None = None,
) -> OperatorControl:
    """Record a new operator mode for a project, or globally when ``project_id`` is None."""
    control = OperatorControl(
        project_id=project_id,
        mode=OperatorMode(mode),
        reason=reason,
        updated_by=updated_by,
        updated_at=utcnow(),
    )
    session.add(control)
    await session.flush()
    queue_event(
        session,
        GovernanceEvent(
            type=EventType.OPERATOR_MODE_CHANGED,
            actor_type=ActorType.HUMAN.value,
            message=f"Operator mode {control.mode.value} ({project_id or 'global'})",
            data={"project_id": project_id, "mode": control.mode.value, "reason": reason},
        ),
    )
    logger.info("Operator mode for %s set to %s", project_id or "global", control.mode.value)
    return control


async def _latest_control(session: AsyncSession, project_id: str | None) -> OperatorControl | None:
    query = select(OperatorControl)
    if project_id is None:
        query = query.where(OperatorControl.project_id.is_(None))
    else:
        query = query.where(OperatorControl.project_id == project_id)
    result = await session.execute(
        query.order_by(OperatorControl.updated_at.desc(), OperatorControl.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def get_effective_operator_control(
    session: AsyncSession, project_id: str | None = None
) -> EffectiveOperatorControl:
    """Project control wins over the global one; NORMAL when neither is set."""
    if project_id:
        control = await _latest_control(session, project_id)
        if control is not None:
            return EffectiveOperatorControl(
                control.mode, ControlSource.PROJECT, control.reason, control.updated_at, control.updated_by
            )
    control = await _latest_control(session, None)
    if control is not None:
        return EffectiveOperatorControl(
            control.mode, ControlSource.GLOBAL, control.reason, control.updated_at, control.updated_by
        )
    return EffectiveOperatorControl(OperatorMode.NORMAL, ControlSource.DEFAULT)


def evaluate_operator_gate(
    mode: OperatorMode | str,
    actor_type: ActorType | str,
    operation: OperatorOperation | str = OperatorOperation.TRANSITION,
) -> OperatorGateDecision:
    mode = OperatorMode(mode)
    actor_type = ActorType(actor_type)
    operation = OperatorOperation(operation)

    if mode == OperatorMode.NORMAL:
        return OperatorGateDecision(PolicyOutcome.ALLOW, "Operator control mode is NORMAL")

    if mode == OperatorMode.DRAINING:
        if operation == OperatorOperation.RUN_START:
            return OperatorGateDecision(
                PolicyOutcome.DENY, "System is DRAINING. New runs are blocked until drain completes."
            )
        if actor_type == ActorType.SYSTEM:
            return OperatorGateDecision(
                PolicyOutcome.REQUIRE_APPROVAL,
                "System is DRAINING. System transitions require human approval.",
            )
        return OperatorGateDecision(PolicyOutcome.ALLOW, "System is DRAINING. Non-run operation allowed.")

    # PAUSED and QUARANTINED: humans need explicit confirmation, everyone else stops.
    if actor_type == ActorType.HUMAN:
        return OperatorGateDecision(
            PolicyOutcome.REQUIRE_APPROVAL,
            f"System is {mode.value}. Human action requires explicit confirmation.",
        )
    return OperatorGateDecision(
        PolicyOutcome.DENY,
        f"System is {mode.value}. {operation.value} is blocked for {actor_type.value.lower()} actors.",
    )


# =============================================================================
# Agent quarantine
# =============================================================================


async def quarantine_agent(
    session: AsyncSession,
    agent_id: str,
    *,
    reason: str,
    actor_type: ActorType = ActorType.HUMAN,
    actor_id: str | None = None,
) -> Agent:
    """Quarantine an agent; a quarantined agent is never an allowed actor."""
    agent = await db.require_agent(session, agent_id, for_update=True)
    if agent.status == AgentStatus.QUARANTINED:
        return agent
    agent.status = AgentStatus.QUARANTINED
    queue_event(
        session,
        GovernanceEvent(
            type=EventType.AGENT_QUARANTINED,
            agent_id=agent.id,
            actor_type=actor_type.value,
            message=f"Agent {agent.name} quarantined: {reason}",
            data={"project_id": agent.project_id, "reason": reason, "by": actor_id},
        ),
    )
    logger.warning("Agent %s quarantined: %s", agent.id, reason)
    return agent


async def release_agent(
    session: AsyncSession,
    agent_id: str,
    *,
    released_by: str | None = None,
    reason: str | None = None,
) -> Agent:
    """Return a quarantined or paused agent to ACTIVE."""
    agent = await db.require_agent(session, agent_id, for_update=True)
    if agent.status not in (AgentStatus.QUARANTINED, AgentStatus.PAUSED):
        return agent
    previous = agent.status
    agent.status = AgentStatus.ACTIVE
    agent.error_streak = 0
    agent.released_at = utcnow()
    queue_event(
        session,
        GovernanceEvent(
            type=EventType.AGENT_RELEASED,
            agent_id=agent.id,
            actor_type=ActorType.HUMAN.value,
            message=f"Agent {agent.name} released from {previous.value}",
            data={"project_id": agent.project_id, "reason": reason, "by": released_by},
        ),
    )
    return agent
