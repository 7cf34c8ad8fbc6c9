import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from governor import alerts, budget, db
from governor.errors import BudgetExceededError, ErrorCode
from governor.models import AgentStatus, AlertStatus, TaskStatus, utcnow
from governor.state_machine import TransitionResult


@pytest.mark.asyncio
async def test_daily_cap_boundary(session, agent) -> None:
    agent.spend_today = Decimal("9.50")

    over = await budget.authorize(session, agent.id, None, Decimal("1.00"))
    under = await budget.authorize(session, agent.id, None, Decimal("0.40"))

    assert not over.allowed
    assert over.limit == budget.AGENT_DAILY
    assert over.spend_today == Decimal("9.50")
    assert under.allowed
    with pytest.raises(BudgetExceededError):
        over.raise_for_error()


@pytest.mark.asyncio
async def test_per_run_cap(session, agent) -> None:
    decision = await budget.authorize(session, agent.id, None, "2.50")

    assert not decision.allowed
    assert decision.limit == budget.PER_RUN


@pytest.mark.asyncio
async def test_stale_day_counts_as_zero(session, agent) -> None:
    agent.spend_today = Decimal("9.90")
    agent.spend_day = utcnow().date() - timedelta(days=1)

    decision = await budget.authorize(session, agent.id, None, Decimal("1.50"))

    assert decision.allowed
    assert decision.spend_today == Decimal("0")


@pytest.mark.asyncio
async def test_task_allocation(session, agent) -> None:
    task = await db.create_task(session, "proj-1", "Small job", budget_allocated=Decimal("1.00"))

    decision = await budget.authorize(session, agent.id, task.id, Decimal("1.20"))

    assert not decision.allowed
    assert decision.limit == budget.TASK_ALLOCATION


@pytest.mark.asyncio
async def test_record_spend_updates_agent_and_task(session, agent) -> None:
    task = await db.create_task(session, "proj-1", "Job", budget_allocated=Decimal("5.00"))

    result = await budget.record_spend(session, agent.id, task.id, Decimal("1.25"), run_id="run-1")
    await session.refresh(agent)
    await session.refresh(task)

    assert result.recorded
    assert result.spend_today == Decimal("1.25")
    assert agent.spend_today == Decimal("1.25")
    assert task.actual_cost == Decimal("1.25")
    assert task.budget_remaining == Decimal("3.75")


@pytest.mark.asyncio
async def test_duplicate_run_is_counted_once(session, agent) -> None:
    await budget.record_spend(session, agent.id, None, "1.00", run_id="run-1")
    again = await budget.record_spend(session, agent.id, None, "1.00", run_id="run-1")
    await session.refresh(agent)

    assert not again.recorded
    assert agent.spend_today == Decimal("1.00")


@pytest.mark.asyncio
async def test_spend_rolls_over_on_new_day(session, agent) -> None:
    agent.spend_today = Decimal("9.00")
    agent.spend_day = utcnow().date() - timedelta(days=1)
    await session.flush()

    result = await budget.record_spend(session, agent.id, None, "1.00")

    assert result.spend_today == Decimal("1.00")
    assert not result.agent_paused


@pytest.mark.asyncio
async def test_reaching_daily_cap_pauses_agent_once(session, agent) -> None:
    await budget.record_spend(session, agent.id, None, "6.00")
    capped = await budget.record_spend(session, agent.id, None, "4.00")
    after = await budget.record_spend(session, agent.id, None, "0.50")

    assert capped.agent_paused
    assert not after.agent_paused
    assert agent.status == AgentStatus.PAUSED

    found = await alerts.list_alerts(session, project_id="proj-1")
    assert [(a.kind, a.status) for a in found] == [(budget.AGENT_DAILY, AlertStatus.OPEN)]


@pytest.mark.asyncio
async def test_task_overrun_escalates_to_human(session, agent, walk) -> None:
    task = await db.create_task(session, "proj-1", "Job", budget_allocated=Decimal("1.00"))
    await walk(session, task, agent, "ASSIGNED", "IN_PROGRESS")

    result = await budget.record_spend(session, agent.id, task.id, "1.50", run_id="run-9")

    assert result.task_over_budget
    assert task.status == TaskStatus.NEEDS_APPROVAL
    assert task.actual_cost == Decimal("1.50")
    (alert,) = await alerts.list_alerts(session, task_id=task.id)
    assert alert.kind == budget.TASK_ALLOCATION


@pytest.mark.asyncio
async def test_negative_spend_rejected(session, agent) -> None:
    with pytest.raises(ValueError):
        await budget.record_spend(session, agent.id, None, "-1")


@pytest.mark.asyncio
async def test_reset_daily_spend(session, agent) -> None:
    agent.spend_today = Decimal("3.00")
    agent.spend_day = utcnow().date() - timedelta(days=1)
    await session.flush()

    reset = await budget.reset_daily_spend(session)
    await session.refresh(agent)

    assert reset == 1
    assert agent.spend_today == Decimal("0")
    assert agent.spend_day == utcnow().date()


@pytest.mark.asyncio
async def test_burn_rate(session, agent) -> None:
    await budget.record_spend(session, agent.id, None, "2.40")

    assert await budget.burn_rate(session, "proj-1") == Decimal("0.1000")
    assert await budget.burn_rate(session, "other") == Decimal("0")


@pytest.mark.asyncio
async def test_rejected_overrun_escalation_is_logged(session, agent, walk, monkeypatch, caplog) -> None:
    task = await db.create_task(session, "proj-1", "Job", budget_allocated=Decimal("1.00"))
    await walk(session, task, agent, "ASSIGNED", "IN_PROGRESS")

    async def refuse(session, task_id, *args, **kwargs):
        return TransitionResult.failed(task_id, ErrorCode.INVALID_TRANSITION, "edge closed")

    monkeypatch.setattr(budget, "attempt_transition", refuse)
    with caplog.at_level(logging.WARNING, logger="governor.budget"):
        result = await budget.record_spend(session, agent.id, task.id, "1.50", run_id="run-10")

    assert result.task_over_budget
    assert task.status == TaskStatus.IN_PROGRESS
    assert "Could not escalate over-budget task" in caplog.text
    assert "edge closed" in caplog.text
