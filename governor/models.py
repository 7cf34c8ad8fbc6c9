"""SQLAlchemy models for the governance ledger."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates
from sqlalchemy.types import TypeDecorator

from .errors import StatusWriteError

# =============================================================================
# ENUMS
# =============================================================================


class TaskStatus(StrEnum):
    INBOX = "INBOX"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    NEEDS_APPROVAL = "NEEDS_APPROVAL"
    BLOCKED = "BLOCKED"
    DONE = "DONE"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.CANCELED})


class ActorType(StrEnum):
    AGENT = "AGENT"
    HUMAN = "HUMAN"
    SYSTEM = "SYSTEM"


class TaskType(StrEnum):
    CONTENT = "CONTENT"
    SOCIAL = "SOCIAL"
    EMAIL_MARKETING = "EMAIL_MARKETING"
    CUSTOMER_RESEARCH = "CUSTOMER_RESEARCH"
    SEO_RESEARCH = "SEO_RESEARCH"
    ENGINEERING = "ENGINEERING"
    DOCS = "DOCS"
    OPS = "OPS"


class AgentStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DRAINED = "DRAINED"
    QUARANTINED = "QUARANTINED"
    OFFLINE = "OFFLINE"


class AgentRole(StrEnum):
    INTERN = "INTERN"
    SPECIALIST = "SPECIALIST"
    LEAD = "LEAD"


class RiskLevel(StrEnum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.GREEN: 0, RiskLevel.YELLOW: 1, RiskLevel.RED: 2}


class ApprovalStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


class PolicyScope(StrEnum):
    GLOBAL = "GLOBAL"
    PROJECT = "PROJECT"
    AGENT = "AGENT"


GLOBAL_SCOPE_ID = "*"


class AlertStatus(StrEnum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class AlertSeverity(StrEnum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class OperatorMode(StrEnum):
    NORMAL = "NORMAL"
    PAUSED = "PAUSED"
    DRAINING = "DRAINING"
    QUARANTINED = "QUARANTINED"


class PolicyOutcome(StrEnum):
    ALLOW = "ALLOW"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    DENY = "DENY"


# =============================================================================
# COLUMN TYPES
# =============================================================================


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _enum(cls: type[StrEnum]) -> Enum:
    return Enum(
        cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


def utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
        list[str]: JSON().with_variant(JSONB(), "postgresql"),
        datetime: UTCDateTime(),
        Decimal: Numeric(12, 4),
    }


# Task.status may only be written while this flag is set (see state_machine).
_status_writer: ContextVar[bool] = ContextVar("governor_status_writer", default=False)


@contextmanager
def status_writer() -> Iterator[None]:
    token = _status_writer.set(True)
    try:
        yield
    finally:
        _status_writer.reset(token)


# =============================================================================
# PROJECT-SCOPED TABLES
# =============================================================================


class Task(Base):
    """A unit of governed work."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String(32), default=TaskType.ENGINEERING.value)
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus), default=TaskStatus.INBOX, index=True
    )
    priority: Mapped[int] = mapped_column(Integer, default=3)
    assignee_ids: Mapped[list[str]] = mapped_column(default=list)
    budget_allocated: Mapped[Decimal | None] = mapped_column(nullable=True)
    actual_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    budget_remaining: Mapped[Decimal | None] = mapped_column(nullable=True)
    blocked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifacts: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (CheckConstraint("priority BETWEEN 1 AND 4", name="ck_tasks_priority"),)

    @validates("status")
    def _guard_status(self, key: str, value: TaskStatus) -> TaskStatus:
        if _status_writer.get():
            return value
        # New tasks are born in INBOX.
        if inspect(self).transient and value == TaskStatus.INBOX:
            return value
        raise StatusWriteError("Task.status may only change through the state machine")


class Agent(Base):
    """An autonomous worker with spend caps."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[AgentRole] = mapped_column(_enum(AgentRole), default=AgentRole.INTERN)
    status: Mapped[AgentStatus] = mapped_column(
        _enum(AgentStatus), default=AgentStatus.ACTIVE, index=True
    )
    budget_daily: Mapped[Decimal] = mapped_column(default=Decimal("5.00"))
    budget_per_run: Mapped[Decimal] = mapped_column(default=Decimal("0.75"))
    spend_today: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    spend_day: Mapped[date | None] = mapped_column(Date, nullable=True)
    error_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Tool failures before this instant no longer count toward quarantine.
    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Approval(Base):
    """Human decision record gating a risky action."""

    __tablename__ = "approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    requestor_agent_id: Mapped[str] = mapped_column(String(36), index=True)
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    action_summary: Mapped[str] = mapped_column(Text, nullable=False)
    risk_level: Mapped[RiskLevel] = mapped_column(_enum(RiskLevel), default=RiskLevel.YELLOW)
    justification: Mapped[str] = mapped_column(Text, default="")
    estimated_cost: Mapped[Decimal | None] = mapped_column(nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    status: Mapped[ApprovalStatus] = mapped_column(
        _enum(ApprovalStatus), default=ApprovalStatus.PENDING, index=True
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_by: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Policy(Base):
    """Versioned rule set; one active policy per scope."""

    __tablename__ = "policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    scope_type: Mapped[PolicyScope] = mapped_column(_enum(PolicyScope), default=PolicyScope.GLOBAL)
    scope_id: Mapped[str] = mapped_column(String(64), default=GLOBAL_SCOPE_ID)
    rules: Mapped[dict[str, Any]] = mapped_column(default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)

    __table_args__ = (
        Index(
            "uq_policies_active_scope",
            "scope_type",
            "scope_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )


class TaskTransition(Base):
    """Append-only audit trail of status changes."""

    __tablename__ = "task_transitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    # Weak back-reference: history outlives the task row.
    task_id: Mapped[str] = mapped_column(String(36), index=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    from_status: Mapped[TaskStatus] = mapped_column(_enum(TaskStatus))
    to_status: Mapped[TaskStatus] = mapped_column(_enum(TaskStatus))
    actor_type: Mapped[ActorType] = mapped_column(_enum(ActorType))
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifacts_snapshot: Mapped[dict[str, Any]] = mapped_column(default=dict)
    idempotency_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


@event.listens_for(TaskTransition, "before_update")
@event.listens_for(TaskTransition, "before_delete")
def _transitions_are_append_only(mapper: Any, connection: Any, target: TaskTransition) -> None:
    raise RuntimeError(f"TaskTransition {target.id} is append-only")


class Alert(Base):
    """Human-facing record of an automatic correction or breach."""

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        _enum(AlertSeverity), default=AlertSeverity.WARNING
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    status: Mapped[AlertStatus] = mapped_column(
        _enum(AlertStatus), default=AlertStatus.OPEN, index=True
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", default=dict)
    acknowledged_by: Mapped[str | None] = mapped_column(String, nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class Message(Base):
    """Comment posted on a task thread."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    task_id: Mapped[str] = mapped_column(String(36), index=True)
    author_type: Mapped[ActorType] = mapped_column(_enum(ActorType))
    author_id: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


class ToolCall(Base):
    """Outcome of one tool invocation by an agent."""

    __tablename__ = "tool_calls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    agent_id: Mapped[str] = mapped_column(String(36), index=True)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    tool: Mapped[str] = mapped_column(String, nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


class SpendRecord(Base):
    """One completed unit of paid work."""

    __tablename__ = "spend_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    agent_id: Mapped[str] = mapped_column(String(36), index=True)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, index=True)


# =============================================================================
# CONTROL & AUDIT TABLES
# =============================================================================


class OperatorControl(Base):
    """Operator-set run mode for a project, or globally when project_id is null."""

    __tablename__ = "operator_controls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    mode: Mapped[OperatorMode] = mapped_column(_enum(OperatorMode), default=OperatorMode.NORMAL)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow)


class ActivityLog(Base):
    """Persisted copy of emitted domain events."""

    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    task_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    actor_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    description: Mapped[str] = mapped_column(Text, default="")
    details: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
