from datetime import UTC, datetime, timedelta

import pytest

from governor import approvals, db
from governor.models import ApprovalStatus, utcnow
from governor.scheduler import Scheduler, run_approval_sweep, run_sweeps


@pytest.mark.asyncio
async def test_approval_sweep_commits(session_factory) -> None:
    async with db.session_scope(session_factory) as session:
        agent = await db.create_agent(session, "proj-1", "writer")
        approval = await approvals.request(session, agent.id, "publish", "Post", ttl=timedelta(minutes=1))
        approval_id = approval.id

    assert await run_approval_sweep(session_factory, now=utcnow() + timedelta(minutes=2)) == 1

    async with db.session_scope(session_factory) as session:
        assert (await approvals.require_approval(session, approval_id)).status == ApprovalStatus.EXPIRED


@pytest.mark.asyncio
async def test_run_sweeps_summary(session_factory) -> None:
    async with db.session_scope(session_factory) as session:
        agent = await db.create_agent(session, "proj-1", "writer")
        agent.spend_day = utcnow().date() - timedelta(days=1)

    summary = await run_sweeps(session_factory)

    assert summary.expired_approvals == 0
    assert summary.loops is not None and summary.loops.detections == []
    assert summary.agents_reset == 1


@pytest.mark.asyncio
async def test_tick_runs_due_sweeps_only(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    async def fake_approvals(factory, *, now=None) -> int:
        calls.append("approvals")
        return 0

    async def fake_loops(factory, *, now=None):
        calls.append("loops")
        raise RuntimeError("database went away")

    async def fake_reset(factory) -> int:
        calls.append("reset")
        return 0

    monkeypatch.setattr("governor.scheduler.run_approval_sweep", fake_approvals)
    monkeypatch.setattr("governor.scheduler.run_loop_sweep", fake_loops)
    monkeypatch.setattr("governor.scheduler.run_spend_reset", fake_reset)

    scheduler = Scheduler(
        approval_interval=timedelta(minutes=15), loop_interval=timedelta(minutes=5), factory=session_factory
    )
    start = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
    await scheduler.tick(start)
    await scheduler.tick(start + timedelta(minutes=6))

    assert calls == ["approvals", "loops", "reset", "loops"]
