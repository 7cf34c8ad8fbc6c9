"""
Task Governance Engine

Lifecycle, approval, policy, budget and loop-detection controls for
autonomous agents working a shared task board, with PostgreSQL-backed state.
"""

__version__ = "0.1.0"

# Configuration
from governor.config import Settings

# Core models
from governor.models import (
    ActorType,
    Agent,
    AgentStatus,
    Alert,
    Approval,
    ApprovalStatus,
    OperatorMode,
    Policy,
    PolicyOutcome,
    RiskLevel,
    Task,
    TaskStatus,
    TaskTransition,
)

# Transitions
from governor.state_machine import Actor, TransitionResult, attempt_transition
from governor.gate import request_transition, resume_approved

# Policy / approvals / budget
from governor.policy import PolicyAction, PolicyDecision, PolicyRules
from governor.approvals import DecisionOutcome, DecisionResult
from governor.budget import BudgetDecision, SpendResult

# Loop detection
from governor.loops import LoopSweepReport, LoopThresholds, detect_loops

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Models
    "Task",
    "TaskStatus",
    "TaskTransition",
    "Agent",
    "AgentStatus",
    "Approval",
    "ApprovalStatus",
    "Policy",
    "PolicyOutcome",
    "Alert",
    "ActorType",
    "RiskLevel",
    "OperatorMode",
    # Transitions
    "Actor",
    "TransitionResult",
    "attempt_transition",
    "request_transition",
    "resume_approved",
    # Policy
    "PolicyAction",
    "PolicyDecision",
    "PolicyRules",
    # Approvals
    "DecisionOutcome",
    "DecisionResult",
    # Budget
    "BudgetDecision",
    "SpendResult",
    # Loops
    "LoopThresholds",
    "LoopSweepReport",
    "detect_loops",
]
