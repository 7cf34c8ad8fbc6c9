from datetime import timedelta

import pytest

from governor import approvals
from governor.approvals import DecisionOutcome
from governor.errors import AlreadyDecidedError, ApprovalNotFoundError, ErrorCode
from governor.models import ApprovalStatus, RiskLevel, utcnow


@pytest.mark.asyncio
async def test_request_opens_pending_approval(session, agent, task) -> None:
    approval = await approvals.request(
        session, agent.id, "publish", "Publish launch post", RiskLevel.RED, task_id=task.id
    )

    assert approval.status == ApprovalStatus.PENDING
    assert approval.project_id == "proj-1"
    assert approval.expires_at - approval.created_at == timedelta(minutes=60)
    assert [a.id for a in await approvals.list_pending(session, "proj-1")] == [approval.id]


@pytest.mark.asyncio
async def test_request_is_idempotent_by_key(session, agent) -> None:
    first = await approvals.request(session, agent.id, "publish", "Post", idempotency_key="pub-1")
    second = await approvals.request(session, agent.id, "publish", "Post again", idempotency_key="pub-1")

    assert second.id == first.id
    assert second.action_summary == "Post"


@pytest.mark.asyncio
async def test_approve_then_second_decision_is_rejected(session, agent) -> None:
    approval = await approvals.request(session, agent.id, "publish", "Post")

    approved = await approvals.decide(session, approval.id, "alice", DecisionOutcome.APPROVE, "ship it")
    again = await approvals.decide(session, approval.id, "bob", DecisionOutcome.DENY)

    assert approved.ok
    assert approved.status == ApprovalStatus.APPROVED
    assert approval.decided_by == "alice"
    assert not again.ok
    assert again.error == ErrorCode.ALREADY_DECIDED
    with pytest.raises(AlreadyDecidedError):
        again.raise_for_error()


@pytest.mark.asyncio
async def test_deny_records_blocked_reason_on_task(session, agent, task) -> None:
    approval = await approvals.request(session, agent.id, "publish", "Post", task_id=task.id)

    result = await approvals.decide(session, approval.id, "alice", "DENY", "off-brand tone")

    assert result.ok
    assert result.status == ApprovalStatus.DENIED
    assert task.blocked_reason == "off-brand tone"


@pytest.mark.asyncio
async def test_expire_stale_then_decide_reports_expired(session, agent) -> None:
    now = utcnow()
    stale = await approvals.request(session, agent.id, "publish", "Old", ttl=timedelta(seconds=-1), now=now)
    fresh = await approvals.request(session, agent.id, "publish", "New", now=now)

    expired = await approvals.expire_stale(session, now=now)
    await session.refresh(stale)
    await session.refresh(fresh)

    assert expired == 1
    assert stale.status == ApprovalStatus.EXPIRED
    assert fresh.status == ApprovalStatus.PENDING

    result = await approvals.decide(session, stale.id, "alice", "APPROVE")
    assert result.error == ErrorCode.APPROVAL_EXPIRED
    assert await approvals.expire_stale(session, now=now) == 0


@pytest.mark.asyncio
async def test_decide_after_deadline_expires_without_sweep(session, agent) -> None:
    approval = await approvals.request(session, agent.id, "publish", "Post", ttl=timedelta(minutes=5))

    result = await approvals.decide(
        session, approval.id, "alice", "APPROVE", now=approval.expires_at + timedelta(seconds=1)
    )

    assert result.error == ErrorCode.APPROVAL_EXPIRED
    assert approval.status == ApprovalStatus.EXPIRED
    assert approval.decided_by is None


@pytest.mark.asyncio
async def test_cancel_only_pending(session, agent) -> None:
    approval = await approvals.request(session, agent.id, "publish", "Post")

    canceled = await approvals.cancel(session, approval.id, "superseded", canceled_by="alice")
    again = await approvals.cancel(session, approval.id)

    assert canceled.status == ApprovalStatus.CANCELED
    assert again.error == ErrorCode.ALREADY_DECIDED


@pytest.mark.asyncio
async def test_approval_satisfies_only_approved_for_same_task(session, agent, task) -> None:
    approval = await approvals.request(session, agent.id, "publish", "Post", task_id=task.id)
    assert not await approvals.approval_satisfies(session, approval.id, task.id)

    await approvals.decide(session, approval.id, "alice", "APPROVE")

    assert await approvals.approval_satisfies(session, approval.id, task.id)
    assert not await approvals.approval_satisfies(session, approval.id, "other-task")
    assert not await approvals.approval_satisfies(session, "missing", task.id)
    assert not await approvals.approval_satisfies(session, None, task.id)


@pytest.mark.asyncio
async def test_unknown_approval(session) -> None:
    with pytest.raises(ApprovalNotFoundError):
        await approvals.decide(session, "nope", "alice", "APPROVE")
