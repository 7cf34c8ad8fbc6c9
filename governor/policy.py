"""
Policy evaluation: ALLOW / REQUIRE_APPROVAL / DENY for an attempted action.

The active policy is looked up from the store on every call, most specific
scope first (AGENT, then PROJECT, then GLOBAL). With no active policy the
evaluator never fails open and asks for approval instead.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import db
from .errors import NotFoundError, PolicyBlockedError
from .models import (
    GLOBAL_SCOPE_ID,
    ActorType,
    AgentRole,
    AgentStatus,
    Policy,
    PolicyOutcome,
    PolicyScope,
    RiskLevel,
    TaskType,
    utcnow,
)
from .operator import OperatorOperation, evaluate_operator_gate, get_effective_operator_control

logger = logging.getLogger(__name__)


# =============================================================================
# Risk classification
# =============================================================================

TOOL_RISK_MAP: dict[str, RiskLevel] = {
    # read-only
    "read": RiskLevel.GREEN,
    "read_file": RiskLevel.GREEN,
    "search": RiskLevel.GREEN,
    "grep": RiskLevel.GREEN,
    "glob": RiskLevel.GREEN,
    "list_dir": RiskLevel.GREEN,
    "list_files": RiskLevel.GREEN,
    "web_search": RiskLevel.GREEN,
    "think": RiskLevel.GREEN,
    # writes
    "write": RiskLevel.YELLOW,
    "write_file": RiskLevel.YELLOW,
    "edit": RiskLevel.YELLOW,
    "edit_file": RiskLevel.YELLOW,
    "create_file": RiskLevel.YELLOW,
    "delete_file": RiskLevel.YELLOW,
    "rename_file": RiskLevel.YELLOW,
    "shell": RiskLevel.YELLOW,
    "exec": RiskLevel.YELLOW,
    "bash": RiskLevel.YELLOW,
    "web_fetch": RiskLevel.YELLOW,
    "http": RiskLevel.YELLOW,
    "fetch": RiskLevel.YELLOW,
    "git_commit": RiskLevel.YELLOW,
    "git_push": RiskLevel.YELLOW,
    # destructive, external or production
    "deploy": RiskLevel.RED,
    "publish": RiskLevel.RED,
    "git_force_push": RiskLevel.RED,
    "rm_rf": RiskLevel.RED,
    "database_write": RiskLevel.RED,
    "send_email": RiskLevel.RED,
    "send_message": RiskLevel.RED,
    "payment": RiskLevel.RED,
    "spawn_agent": RiskLevel.RED,
}

_SECRET_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"api[_-]?key",
        r"secret",
        r"password",
        r"token",
        r"private[_-]?key",
        r"\.env",
        r"credentials",
        r"auth[_-]?header",
    )
]
_PRODUCTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"production",
        r"prod\b",
        r"--force",
        r"--hard",
        r"main\s+branch",
        r"master\s+branch",
        r"deploy",
    )
]


def mentions_secrets(text: str) -> bool:
    return any(p.search(text) for p in _SECRET_PATTERNS)


def affects_production(text: str) -> bool:
    return any(p.search(text) for p in _PRODUCTION_PATTERNS)


def classify_risk(tool_name: str, params: dict[str, Any] | None = None) -> RiskLevel:
    """Risk of a tool call; unknown tools are YELLOW, secrets or production make it RED."""
    risk = TOOL_RISK_MAP.get(tool_name, RiskLevel.YELLOW)
    if params:
        blob = json.dumps(params, default=str).lower()
        if mentions_secrets(blob) or affects_production(blob):
            risk = RiskLevel.RED
    return risk


_TASK_TYPE_RISK = {
    TaskType.SOCIAL.value: RiskLevel.RED,
    TaskType.EMAIL_MARKETING.value: RiskLevel.RED,
    TaskType.OPS.value: RiskLevel.YELLOW,
    TaskType.ENGINEERING.value: RiskLevel.YELLOW,
}


def task_type_risk(task_type: str | None) -> RiskLevel:
    """Default risk of starting or completing work of a given type."""
    return _TASK_TYPE_RISK.get((task_type or "").upper(), RiskLevel.GREEN)


# Approval threshold per role when the policy names none.
ROLE_RISK_THRESHOLDS: dict[AgentRole, RiskLevel] = {
    AgentRole.INTERN: RiskLevel.YELLOW,
    AgentRole.SPECIALIST: RiskLevel.RED,
    AgentRole.LEAD: RiskLevel.RED,
}


# =============================================================================
# Rules document
# =============================================================================


class RoleOverride(BaseModel):
    approval_risk_threshold: RiskLevel | None = None
    approval_cost_threshold: Decimal | None = None


class PolicyRules(BaseModel):
    """Validated form of ``Policy.rules``."""

    approval_risk_threshold: RiskLevel | None = None
    approval_cost_threshold: Decimal | None = None
    denylist: list[str] = Field(default_factory=list)
    role_overrides: dict[AgentRole, RoleOverride] = Field(default_factory=dict)

    @field_validator("denylist")
    @classmethod
    def _normalize_denylist(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]

    def risk_threshold(self, role: AgentRole | None) -> RiskLevel:
        override = self.role_overrides.get(role) if role else None
        if override and override.approval_risk_threshold is not None:
            return override.approval_risk_threshold
        if self.approval_risk_threshold is not None:
            return self.approval_risk_threshold
        return ROLE_RISK_THRESHOLDS.get(role, RiskLevel.YELLOW) if role else RiskLevel.YELLOW

    def cost_threshold(self, role: AgentRole | None) -> Decimal | None:
        override = self.role_overrides.get(role) if role else None
        if override and override.approval_cost_threshold is not None:
            return override.approval_cost_threshold
        return self.approval_cost_threshold


# =============================================================================
# Evaluation
# =============================================================================


@dataclass
class PolicyAction:
    """An action an actor wants to take."""

    action_type: str
    risk_level: RiskLevel = RiskLevel.GREEN
    estimated_cost: Decimal = Decimal("0")
    actor_agent_id: str | None = None
    actor_type: ActorType = ActorType.AGENT
    project_id: str | None = None
    operation: OperatorOperation = OperatorOperation.TRANSITION


@dataclass
class PolicyDecision:
    outcome: PolicyOutcome
    reason: str
    matched_policy_id: str | None = None
    matched_policy_version: int | None = None
    triggered_rules: list[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.outcome == PolicyOutcome.ALLOW

    @property
    def requires_approval(self) -> bool:
        return self.outcome == PolicyOutcome.REQUIRE_APPROVAL

    @property
    def denied(self) -> bool:
        return self.outcome == PolicyOutcome.DENY

    def raise_for_error(self) -> PolicyDecision:
        if self.denied:
            raise PolicyBlockedError(self.reason)
        return self


async def get_active_policy(
    session: AsyncSession,
    *,
    agent_id: str | None = None,
    project_id: str | None = None,
) -> Policy | None:
    """The active policy for the most specific matching scope."""
    scopes: list[tuple[PolicyScope, str]] = []
    if agent_id:
        scopes.append((PolicyScope.AGENT, agent_id))
    if project_id:
        scopes.append((PolicyScope.PROJECT, project_id))
    scopes.append((PolicyScope.GLOBAL, GLOBAL_SCOPE_ID))

    for scope_type, scope_id in scopes:
        result = await session.execute(
            select(Policy).where(
                Policy.scope_type == scope_type,
                Policy.scope_id == scope_id,
                Policy.active.is_(True),
            )
        )
        policy = result.scalar_one_or_none()
        if policy is not None:
            return policy
    return None


async def evaluate(session: AsyncSession, action: PolicyAction) -> PolicyDecision:
    """Decide whether an action may proceed."""
    risk = RiskLevel(action.risk_level)
    cost = Decimal(action.estimated_cost or 0)

    agent = None
    if action.actor_type == ActorType.AGENT:
        if not action.actor_agent_id:
            return PolicyDecision(PolicyOutcome.DENY, "Agent actor without an agent id")
        agent = await db.get_agent_by_id(session, action.actor_agent_id)
        if agent is None:
            return PolicyDecision(PolicyOutcome.DENY, f"Agent not found: {action.actor_agent_id}")

    project_id = action.project_id or (agent.project_id if agent else None)
    policy = await get_active_policy(
        session,
        agent_id=agent.id if agent else None,
        project_id=project_id,
    )
    if policy is None:
        return PolicyDecision(
            PolicyOutcome.REQUIRE_APPROVAL,
            "No active policy; human approval required",
            triggered_rules=["no_active_policy"],
        )

    def decision(outcome: PolicyOutcome, reason: str, *rules: str) -> PolicyDecision:
        return PolicyDecision(outcome, reason, policy.id, policy.version, list(rules))

    if agent is not None and agent.status != AgentStatus.ACTIVE:
        return decision(
            PolicyOutcome.DENY, f"Agent is {agent.status.value}", f"agent_{agent.status.value.lower()}"
        )

    control = await get_effective_operator_control(session, project_id)
    gate = evaluate_operator_gate(control.mode, action.actor_type, action.operation)
    if gate.outcome != PolicyOutcome.ALLOW:
        return decision(gate.outcome, gate.reason, f"operator_{control.mode.value.lower()}")

    rules = PolicyRules.model_validate(policy.rules or {})
    role = agent.role if agent else None

    if action.action_type in rules.denylist:
        return decision(PolicyOutcome.DENY, f"Action {action.action_type} is denylisted", "denylist")

    threshold = rules.risk_threshold(role)
    if risk.rank >= threshold.rank:
        return decision(
            PolicyOutcome.REQUIRE_APPROVAL,
            f"{risk.value} risk meets the {threshold.value} approval threshold",
            "approval_risk_threshold",
        )

    cost_threshold = rules.cost_threshold(role)
    if cost_threshold is not None and cost >= cost_threshold:
        return decision(
            PolicyOutcome.REQUIRE_APPROVAL,
            f"Estimated cost ${cost:.2f} meets the ${cost_threshold:.2f} approval threshold",
            "approval_cost_threshold",
        )

    return decision(PolicyOutcome.ALLOW, "Action within policy")


# =============================================================================
# Policy management
# =============================================================================


def _scope_id(scope_type: PolicyScope, scope_id: str | None) -> str:
    if scope_type == PolicyScope.GLOBAL:
        return GLOBAL_SCOPE_ID
    if not scope_id:
        raise ValueError(f"{scope_type.value} policies need a scope_id")
    return scope_id


async def create_policy(
    session: AsyncSession,
    name: str,
    rules: dict[str, Any],
    *,
    scope_type: PolicyScope | str = PolicyScope.GLOBAL,
    scope_id: str | None = None,
    notes: str | None = None,
) -> Policy:
    """Create the next version of ``name`` and make it the active policy for its scope."""
    scope = PolicyScope(scope_type)
    resolved_scope_id = _scope_id(scope, scope_id)
    validated = PolicyRules.model_validate(rules)

    result = await session.execute(
        select(Policy)
        .where(
            Policy.scope_type == scope,
            Policy.scope_id == resolved_scope_id,
            Policy.active.is_(True),
        )
        .with_for_update()
    )
    for current in result.scalars().all():
        current.active = False
    # The partial unique index must see the old row inactive before the insert.
    await session.flush()

    latest = await session.scalar(select(func.max(Policy.version)).where(Policy.name == name))
    policy = Policy(
        name=name,
        version=(latest or 0) + 1,
        scope_type=scope,
        scope_id=resolved_scope_id,
        rules=validated.model_dump(mode="json", exclude_none=True),
        active=True,
        notes=notes,
        created_at=utcnow(),
    )
    session.add(policy)
    await session.flush()
    logger.info("Policy %s v%d active for %s:%s", name, policy.version, scope.value, resolved_scope_id)
    return policy


async def deactivate_policy(session: AsyncSession, policy_id: str) -> Policy:
    policy = await session.get(Policy, policy_id)
    if policy is None:
        raise NotFoundError(f"Policy not found: {policy_id}")
    policy.active = False
    return policy
