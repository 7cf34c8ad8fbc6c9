"""Budget guard: per-agent daily and per-run caps, per-task allocations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import case, func, literal, null, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import alerts, db
from .errors import AgentNotFoundError, BudgetExceededError, TaskNotFoundError
from .events import EventType, GovernanceEvent, queue_event
from .models import (
    ActorType,
    Agent,
    AgentStatus,
    AlertSeverity,
    SpendRecord,
    Task,
    TaskStatus,
    utcnow,
)
from .state_machine import Actor, attempt_transition

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

AGENT_DAILY = "agent_daily"
PER_RUN = "per_run"
TASK_ALLOCATION = "task_allocation"


@dataclass
class BudgetDecision:
    allowed: bool
    reason: str
    limit: str | None = None
    spend_today: Decimal = ZERO
    budget_daily: Decimal | None = None

    def raise_for_error(self) -> BudgetDecision:
        if not self.allowed:
            raise BudgetExceededError(self.reason)
        return self


@dataclass
class SpendResult:
    recorded: bool
    spend_today: Decimal | None = None
    task_actual_cost: Decimal | None = None
    agent_paused: bool = False
    task_over_budget: bool = False


def _money(value: Decimal | int | float | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


async def authorize(
    session: AsyncSession,
    agent_id: str,
    task_id: str | None,
    estimated_cost: Decimal | int | float | str,
    *,
    today: date | None = None,
) -> BudgetDecision:
    """Check whether an agent may spend ``estimated_cost`` now."""
    cost = _money(estimated_cost)
    today = today or utcnow().date()
    agent = await db.require_agent(session, agent_id, for_update=True)

    # A stale day counts as zero spend until record_spend rolls it over.
    spent = agent.spend_today if agent.spend_day == today else ZERO

    if cost > agent.budget_per_run:
        return BudgetDecision(
            False,
            f"Estimated cost ${cost:.2f} exceeds per-run cap ${agent.budget_per_run:.2f}",
            PER_RUN,
            spent,
            agent.budget_daily,
        )
    if spent + cost > agent.budget_daily:
        return BudgetDecision(
            False,
            f"Daily budget exceeded: ${spent:.2f} spent + ${cost:.2f} > ${agent.budget_daily:.2f}",
            AGENT_DAILY,
            spent,
            agent.budget_daily,
        )

    if task_id:
        task = await db.require_task(session, task_id)
        if task.budget_allocated is not None and task.actual_cost + cost > task.budget_allocated:
            return BudgetDecision(
                False,
                f"Task allocation exceeded: ${task.actual_cost:.2f} + ${cost:.2f} > ${task.budget_allocated:.2f}",
                TASK_ALLOCATION,
                spent,
                agent.budget_daily,
            )

    return BudgetDecision(True, "Within budget", None, spent, agent.budget_daily)


async def record_spend(
    session: AsyncSession,
    agent_id: str,
    task_id: str | None,
    actual_cost: Decimal | int | float | str,
    *,
    run_id: str | None = None,
    now: datetime | None = None,
) -> SpendResult:
    """Add completed spend to the agent's day and the task's running cost."""
    amount = _money(actual_cost)
    if amount < ZERO:
        raise ValueError("actual_cost must not be negative")
    now = now or utcnow()
    today = now.date()

    if run_id:
        existing = await session.scalar(select(SpendRecord.id).where(SpendRecord.run_id == run_id))
        if existing is not None:
            return SpendResult(recorded=False)

    agent_row = (
        await session.execute(
            update(Agent)
            .where(Agent.id == agent_id)
            .values(
                spend_today=case(
                    (Agent.spend_day == today, Agent.spend_today),
                    else_=literal(ZERO),
                )
                + amount,
                spend_day=today,
                updated_at=now,
            )
            .returning(
                Agent.spend_today,
                Agent.budget_daily,
                Agent.status,
                Agent.name,
                Agent.project_id,
            )
            .execution_options(synchronize_session=False)
        )
    ).one_or_none()
    if agent_row is None:
        raise AgentNotFoundError(f"Agent not found: {agent_id}")

    result = SpendResult(recorded=True, spend_today=agent_row.spend_today)
    project_id = agent_row.project_id

    task_row = None
    if task_id:
        new_cost = Task.actual_cost + amount
        task_row = (
            await session.execute(
                update(Task)
                .where(Task.id == task_id)
                .values(
                    actual_cost=new_cost,
                    budget_remaining=case(
                        (Task.budget_allocated.is_(None), null()),
                        else_=Task.budget_allocated - new_cost,
                    ),
                    updated_at=now,
                )
                .returning(
                    Task.actual_cost,
                    Task.budget_allocated,
                    Task.title,
                    Task.project_id,
                    Task.status,
                )
                .execution_options(synchronize_session=False)
            )
        ).one_or_none()
        if task_row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        result.task_actual_cost = task_row.actual_cost
        project_id = project_id or task_row.project_id

    session.add(
        SpendRecord(
            run_id=run_id,
            project_id=project_id,
            agent_id=agent_id,
            task_id=task_id,
            amount=amount,
            created_at=now,
        )
    )
    await session.flush()
    queue_event(
        session,
        GovernanceEvent(
            type=EventType.SPEND_RECORDED,
            task_id=task_id,
            agent_id=agent_id,
            actor_type=ActorType.AGENT.value,
            message=f"Spent ${amount:.2f}",
            data={"project_id": project_id, "amount": str(amount), "run_id": run_id},
        ),
    )

    if agent_row.spend_today >= agent_row.budget_daily:
        result.agent_paused = await _pause_for_daily_cap(session, agent_id, agent_row, task_id)

    if task_row is not None and task_row.budget_allocated is not None:
        if task_row.actual_cost >= task_row.budget_allocated:
            result.task_over_budget = True
            await _flag_task_overrun(session, task_id, task_row, run_id)

    return result


async def _pause_for_daily_cap(session: AsyncSession, agent_id: str, row, task_id: str | None) -> bool:
    agent = await db.require_agent(session, agent_id, for_update=True)
    paused = False
    if agent.status == AgentStatus.ACTIVE:
        agent.status = AgentStatus.PAUSED
        paused = True
        logger.warning("Agent %s paused: daily budget reached", agent_id)

    if await alerts.find_open_alert(session, kind=AGENT_DAILY, agent_id=agent_id) is None:
        await alerts.create_alert(
            session,
            type=alerts.BUDGET_EXCEEDED,
            kind=AGENT_DAILY,
            title="Agent daily budget exceeded",
            description=(
                f"Agent {row.name} exceeded daily budget: ${row.spend_today:.2f} / ${row.budget_daily:.2f}"
            ),
            severity=AlertSeverity.WARNING,
            project_id=row.project_id,
            agent_id=agent_id,
            task_id=task_id,
            metadata={"spend_today": str(row.spend_today), "budget_daily": str(row.budget_daily)},
        )
        queue_event(
            session,
            GovernanceEvent(
                type=EventType.BUDGET_EXCEEDED,
                task_id=task_id,
                agent_id=agent_id,
                actor_type=ActorType.SYSTEM.value,
                message="Agent daily budget exceeded",
                data={"project_id": row.project_id, "limit": AGENT_DAILY},
            ),
        )
    return paused


async def _flag_task_overrun(session: AsyncSession, task_id: str, row, run_id: str | None) -> None:
    if await alerts.find_open_alert(session, kind=TASK_ALLOCATION, task_id=task_id) is None:
        await alerts.create_alert(
            session,
            type=alerts.BUDGET_EXCEEDED,
            kind=TASK_ALLOCATION,
            title="Task budget exceeded",
            description=(
                f'Task "{row.title}" exceeded budget: ${row.actual_cost:.2f} / ${row.budget_allocated:.2f}'
            ),
            severity=AlertSeverity.WARNING,
            project_id=row.project_id,
            task_id=task_id,
            metadata={"actual_cost": str(row.actual_cost), "budget_allocated": str(row.budget_allocated)},
        )
        queue_event(
            session,
            GovernanceEvent(
                type=EventType.BUDGET_EXCEEDED,
                task_id=task_id,
                actor_type=ActorType.SYSTEM.value,
                message="Task budget exceeded",
                data={"project_id": row.project_id, "limit": TASK_ALLOCATION},
            ),
        )

    # Overrun work goes back to a human where the state machine allows it.
    if row.status in (TaskStatus.IN_PROGRESS, TaskStatus.REVIEW):
        escalated = await attempt_transition(
            session,
            task_id,
            TaskStatus.NEEDS_APPROVAL,
            Actor.system(),
            idempotency_key=f"budget:{task_id}:{TASK_ALLOCATION}:{run_id or row.actual_cost}",
            reason="Task budget exceeded",
        )
        if not escalated.ok:
            logger.warning("Could not escalate over-budget task %s: %s", task_id, escalated.message)


async def reset_daily_spend(session: AsyncSession, *, today: date | None = None) -> int:
    """Zero ``spend_today`` for every agent whose spend belongs to an earlier day."""
    today = today or utcnow().date()
    result = await session.execute(
        update(Agent)
        .where(or_(Agent.spend_day.is_(None), Agent.spend_day != today))
        .values(spend_today=ZERO, spend_day=today)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def burn_rate(
    session: AsyncSession,
    project_id: str,
    window: timedelta = timedelta(hours=24),
    *,
    now: datetime | None = None,
) -> Decimal:
    """Spend per hour over ``window`` for a project."""
    now = now or utcnow()
    total = await session.scalar(
        select(func.coalesce(func.sum(SpendRecord.amount), 0)).where(
            SpendRecord.project_id == project_id,
            SpendRecord.created_at >= now - window,
        )
    )
    hours = Decimal(str(window.total_seconds() / 3600)) or Decimal("1")
    return (_money(total or 0) / hours).quantize(Decimal("0.0001"))
