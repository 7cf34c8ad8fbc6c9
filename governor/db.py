"""Async database connection and ledger operations for the governance engine."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import settings
from .errors import (
    AgentNotFoundError,
    SchemaNotInitializedError,
    TaskNotFoundError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .events import discard_pending, dispatch_pending
from .models import (
    ActorType,
    Agent,
    AgentRole,
    Base,
    Message,
    Task,
    TaskStatus,
    TaskTransition,
    TaskType,
    ToolCall,
    utcnow,
)

ModelT = TypeVar("ModelT", bound=Base)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def configure_engine(url: str | None = None, **engine_kwargs: Any) -> async_sessionmaker[AsyncSession]:
    """(Re)create the process-wide engine and session factory."""
    global _engine, _session_factory
    engine_kwargs.setdefault("echo", settings.db_echo)
    if not (url or settings.async_database_url).startswith("sqlite"):
        engine_kwargs.setdefault("pool_pre_ping", True)
    _engine = create_async_engine(url or settings.async_database_url, **engine_kwargs)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _session_factory


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        configure_engine()
    assert _session_factory is not None
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """One unit of work: commit on success, roll back on error, then emit events."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            discard_pending(session)
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            raise
        await dispatch_pending(session)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with session_scope() as session:
        yield session


async def get_for_update(session: AsyncSession, model: type[ModelT], ident: str) -> ModelT | None:
    """Load a row under a write lock, refreshing any stale identity-map copy."""
    result = await session.execute(
        select(model)
        .where(model.id == ident)  # type: ignore[attr-defined]
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# =============================================================================
# Task Operations
# =============================================================================


async def create_task(
    session: AsyncSession,
    project_id: str,
    title: str,
    *,
    task_type: TaskType | str = TaskType.ENGINEERING,
    priority: int = 3,
    assignee_ids: Sequence[str] | None = None,
    budget_allocated: Decimal | None = None,
) -> Task:
    """Create a new task in INBOX."""
    if not 1 <= priority <= 4:
        raise ValueError(f"priority must be between 1 and 4, got {priority}")
    task = Task(
        project_id=project_id,
        title=title,
        type=TaskType(task_type).value,
        status=TaskStatus.INBOX,
        priority=priority,
        assignee_ids=list(assignee_ids or []),
        budget_allocated=budget_allocated,
        budget_remaining=budget_allocated,
        actual_cost=Decimal("0"),
    )
    session.add(task)
    await session.flush()
    return task


async def get_task_by_id(session: AsyncSession, task_id: str) -> Task | None:
    """Get a task by its ID."""
    result = await session.execute(select(Task).where(Task.id == task_id))
    return result.scalar_one_or_none()


async def require_task(session: AsyncSession, task_id: str, *, for_update: bool = False) -> Task:
    task = await (get_for_update(session, Task, task_id) if for_update else get_task_by_id(session, task_id))
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    return task


async def list_tasks(
    session: AsyncSession,
    *,
    project_id: str | None = None,
    statuses: Sequence[TaskStatus] | None = None,
    limit: int | None = None,
) -> list[Task]:
    query = select(Task).order_by(Task.created_at)
    if project_id:
        query = query.where(Task.project_id == project_id)
    if statuses:
        query = query.where(Task.status.in_(list(statuses)))
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_task_transitions(
    session: AsyncSession,
    task_id: str,
    *,
    since: datetime | None = None,
) -> list[TaskTransition]:
    """Transition history for a task, oldest first."""
    query = select(TaskTransition).where(TaskTransition.task_id == task_id)
    if since is not None:
        query = query.where(TaskTransition.created_at >= since)
    result = await session.execute(query.order_by(TaskTransition.created_at, TaskTransition.id))
    return list(result.scalars().all())


async def get_transition_by_key(session: AsyncSession, idempotency_key: str) -> TaskTransition | None:
    result = await session.execute(
        select(TaskTransition).where(TaskTransition.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


# =============================================================================
# Agent Operations
# =============================================================================


async def create_agent(
    session: AsyncSession,
    project_id: str,
    name: str,
    *,
    role: AgentRole | str = AgentRole.INTERN,
    budget_daily: Decimal | None = None,
    budget_per_run: Decimal | None = None,
) -> Agent:
    """Register an agent with the configured default budgets."""
    agent = Agent(
        project_id=project_id,
        name=name,
        role=AgentRole(role),
        budget_daily=budget_daily if budget_daily is not None else settings.default_budget_daily,
        budget_per_run=(
            budget_per_run if budget_per_run is not None else settings.default_budget_per_run
        ),
        spend_today=Decimal("0"),
        spend_day=utcnow().date(),
        error_streak=0,
    )
    session.add(agent)
    await session.flush()
    return agent


async def get_agent_by_id(session: AsyncSession, agent_id: str) -> Agent | None:
    """Get an agent by its ID."""
    result = await session.execute(select(Agent).where(Agent.id == agent_id))
    return result.scalar_one_or_none()


async def require_agent(session: AsyncSession, agent_id: str, *, for_update: bool = False) -> Agent:
    agent = await (
        get_for_update(session, Agent, agent_id) if for_update else get_agent_by_id(session, agent_id)
    )
    if agent is None:
        raise AgentNotFoundError(f"Agent not found: {agent_id}")
    return agent


async def record_heartbeat(session: AsyncSession, agent_id: str, *, now: datetime | None = None) -> Agent:
    agent = await require_agent(session, agent_id, for_update=True)
    agent.last_heartbeat_at = now or utcnow()
    return agent


# =============================================================================
# Message / Tool Call Operations
# =============================================================================


async def add_message(
    session: AsyncSession,
    task_id: str,
    content: str,
    *,
    author_type: ActorType | str = ActorType.AGENT,
    author_id: str | None = None,
    now: datetime | None = None,
) -> Message:
    """Post a comment on a task thread."""
    message = Message(
        task_id=task_id,
        author_type=ActorType(author_type),
        author_id=author_id,
        content=content,
        created_at=now or utcnow(),
    )
    session.add(message)
    await session.flush()
    return message


async def record_tool_result(
    session: AsyncSession,
    agent_id: str,
    tool: str,
    *,
    succeeded: bool,
    error: str | None = None,
    task_id: str | None = None,
    now: datetime | None = None,
) -> ToolCall:
    """Record the outcome of a tool invocation."""
    from .loops import error_signature

    call = ToolCall(
        agent_id=agent_id,
        task_id=task_id,
        tool=tool,
        succeeded=succeeded,
        error_signature=None if succeeded else error_signature(tool, error),
        created_at=now or utcnow(),
    )
    session.add(call)
    await session.flush()
    return call
