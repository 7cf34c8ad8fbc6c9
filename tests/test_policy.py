from decimal import Decimal

import pytest
from pydantic import ValidationError

from governor import db
from governor.errors import PolicyBlockedError
from governor.models import ActorType, AgentRole, AgentStatus, OperatorMode, PolicyOutcome, PolicyScope, RiskLevel
from governor.operator import OperatorOperation, set_operator_mode
from governor.policy import (
    PolicyAction,
    PolicyRules,
    classify_risk,
    create_policy,
    deactivate_policy,
    evaluate,
    get_active_policy,
    task_type_risk,
)


def test_classify_risk() -> None:
    assert classify_risk("read_file") == RiskLevel.GREEN
    assert classify_risk("write_file") == RiskLevel.YELLOW
    assert classify_risk("deploy") == RiskLevel.RED
    assert classify_risk("something_new") == RiskLevel.YELLOW
    assert classify_risk("read_file", {"path": "config/.env"}) == RiskLevel.RED
    assert classify_risk("bash", {"cmd": "git push --force"}) == RiskLevel.RED


def test_task_type_risk() -> None:
    assert task_type_risk("SOCIAL") == RiskLevel.RED
    assert task_type_risk("engineering") == RiskLevel.YELLOW
    assert task_type_risk("DOCS") == RiskLevel.GREEN
    assert task_type_risk(None) == RiskLevel.GREEN


def test_rules_thresholds_by_role() -> None:
    rules = PolicyRules.model_validate(
        {
            "approval_risk_threshold": "YELLOW",
            "approval_cost_threshold": "5.00",
            "denylist": [" send_email ", ""],
            "role_overrides": {"LEAD": {"approval_risk_threshold": "RED"}},
        }
    )

    assert rules.denylist == ["send_email"]
    assert rules.risk_threshold(AgentRole.INTERN) == RiskLevel.YELLOW
    assert rules.risk_threshold(AgentRole.LEAD) == RiskLevel.RED
    assert rules.cost_threshold(AgentRole.LEAD) == Decimal("5.00")


def test_rules_without_threshold_fall_back_to_role() -> None:
    rules = PolicyRules()
    assert rules.risk_threshold(AgentRole.INTERN) == RiskLevel.YELLOW
    assert rules.risk_threshold(AgentRole.SPECIALIST) == RiskLevel.RED
    assert rules.cost_threshold(AgentRole.INTERN) is None


def test_rules_reject_unknown_risk_level() -> None:
    with pytest.raises(ValidationError):
        PolicyRules.model_validate({"approval_risk_threshold": "PURPLE"})


@pytest.mark.asyncio
async def test_no_active_policy_requires_approval(session, agent) -> None:
    decision = await evaluate(session, PolicyAction("publish", RiskLevel.GREEN, actor_agent_id=agent.id))

    assert decision.outcome == PolicyOutcome.REQUIRE_APPROVAL
    assert decision.triggered_rules == ["no_active_policy"]
    assert decision.matched_policy_id is None


@pytest.mark.asyncio
async def test_unknown_agent_is_denied(session) -> None:
    decision = await evaluate(session, PolicyAction("publish", actor_agent_id="ghost"))

    assert decision.denied
    with pytest.raises(PolicyBlockedError):
        decision.raise_for_error()


@pytest.mark.asyncio
async def test_allow_within_thresholds(session, agent) -> None:
    policy = await create_policy(session, "default", {"approval_risk_threshold": "RED"})

    decision = await evaluate(
        session, PolicyAction("write_file", RiskLevel.YELLOW, Decimal("1.00"), actor_agent_id=agent.id)
    )

    assert decision.allowed
    assert decision.matched_policy_id == policy.id
    assert decision.matched_policy_version == 1


@pytest.mark.asyncio
async def test_risk_and_cost_thresholds_escalate(session, agent) -> None:
    await create_policy(session, "default", {"approval_risk_threshold": "RED", "approval_cost_threshold": "3.00"})

    risky = await evaluate(session, PolicyAction("deploy", RiskLevel.RED, actor_agent_id=agent.id))
    costly = await evaluate(
        session, PolicyAction("write_file", RiskLevel.GREEN, Decimal("3.00"), actor_agent_id=agent.id)
    )

    assert risky.requires_approval
    assert risky.triggered_rules == ["approval_risk_threshold"]
    assert costly.requires_approval
    assert costly.triggered_rules == ["approval_cost_threshold"]


@pytest.mark.asyncio
async def test_denylist_wins_over_thresholds(session, agent) -> None:
    await create_policy(session, "default", {"approval_risk_threshold": "RED", "denylist": ["send_email"]})

    decision = await evaluate(session, PolicyAction("send_email", RiskLevel.GREEN, actor_agent_id=agent.id))

    assert decision.denied
    assert decision.triggered_rules == ["denylist"]


@pytest.mark.asyncio
async def test_paused_agent_is_denied(session, agent) -> None:
    await create_policy(session, "default", {"approval_risk_threshold": "RED"})
    agent.status = AgentStatus.PAUSED

    decision = await evaluate(session, PolicyAction("read_file", actor_agent_id=agent.id))

    assert decision.denied
    assert decision.triggered_rules == ["agent_paused"]


@pytest.mark.asyncio
async def test_most_specific_scope_wins(session, agent) -> None:
    await create_policy(session, "global", {"approval_risk_threshold": "GREEN"})
    await create_policy(
        session, "project", {"approval_risk_threshold": "RED"}, scope_type=PolicyScope.PROJECT, scope_id="proj-1"
    )

    active = await get_active_policy(session, agent_id=agent.id, project_id="proj-1")
    decision = await evaluate(session, PolicyAction("write_file", RiskLevel.YELLOW, actor_agent_id=agent.id))

    assert active is not None and active.name == "project"
    assert decision.allowed


@pytest.mark.asyncio
async def test_new_version_replaces_active_policy(session) -> None:
    first = await create_policy(session, "default", {"approval_risk_threshold": "YELLOW"})
    second = await create_policy(session, "default", {"approval_risk_threshold": "RED"})

    assert not first.active
    assert second.active
    assert second.version == 2
    assert second.rules == {"approval_risk_threshold": "RED", "denylist": [], "role_overrides": {}}
    assert (await get_active_policy(session)).id == second.id


@pytest.mark.asyncio
async def test_project_policy_needs_scope_id(session) -> None:
    with pytest.raises(ValueError):
        await create_policy(session, "p", {}, scope_type=PolicyScope.PROJECT)


@pytest.mark.asyncio
async def test_operator_mode_gates_actions(session, agent) -> None:
    await create_policy(session, "default", {"approval_risk_threshold": "RED"})
    await set_operator_mode(session, OperatorMode.PAUSED, project_id="proj-1", reason="incident")

    by_agent = await evaluate(session, PolicyAction("read_file", actor_agent_id=agent.id, project_id="proj-1"))
    by_human = await evaluate(
        session, PolicyAction("read_file", actor_type=ActorType.HUMAN, project_id="proj-1")
    )
    elsewhere = await evaluate(
        session, PolicyAction("read_file", actor_type=ActorType.HUMAN, project_id="proj-2")
    )

    assert by_agent.denied
    assert by_agent.triggered_rules == ["operator_paused"]
    assert by_human.requires_approval
    assert elsewhere.allowed


@pytest.mark.asyncio
async def test_draining_blocks_new_runs_only(session, agent) -> None:
    await create_policy(session, "default", {"approval_risk_threshold": "RED"})
    await set_operator_mode(session, OperatorMode.DRAINING)

    run = await evaluate(
        session, PolicyAction("run", actor_agent_id=agent.id, operation=OperatorOperation.RUN_START)
    )
    move = await evaluate(session, PolicyAction("task_transition", actor_agent_id=agent.id))

    assert run.denied
    assert move.allowed


@pytest.mark.asyncio
async def test_agent_scoped_policy(session) -> None:
    intern = await db.create_agent(session, "proj-1", "intern", role=AgentRole.INTERN)
    await create_policy(session, "default", {"approval_risk_threshold": "RED"})
    await create_policy(
        session, "strict", {"denylist": ["write_file"]}, scope_type=PolicyScope.AGENT, scope_id=intern.id
    )

    decision = await evaluate(session, PolicyAction("write_file", actor_agent_id=intern.id))

    assert decision.denied


@pytest.mark.asyncio
async def test_deactivated_policy_no_longer_applies(session, agent) -> None:
    policy = await create_policy(session, "default", {"approval_risk_threshold": "RED"})

    await deactivate_policy(session, policy.id)
    decision = await evaluate(session, PolicyAction("write_file", actor_agent_id=agent.id))

    assert decision.triggered_rules == ["no_active_policy"]
