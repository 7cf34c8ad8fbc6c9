"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from governor import db
from governor.models import Agent, AgentRole, Task
from governor.policy import create_policy
from governor.state_machine import Actor, attempt_transition


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """Fresh SQLite database per test, created from the model metadata."""
    factory = db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'governor.db'}")
    await db.init_db()
    yield factory
    await db.dispose_engine()


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def agent(session: AsyncSession) -> Agent:
    return await db.create_agent(
        session,
        "proj-1",
        "writer",
        role=AgentRole.SPECIALIST,
        budget_daily=Decimal("10.00"),
        budget_per_run=Decimal("2.00"),
    )


@pytest_asyncio.fixture
async def task(session: AsyncSession) -> Task:
    return await db.create_task(session, "proj-1", "Write launch post", task_type="CONTENT")


@pytest_asyncio.fixture
async def permissive_policy(session: AsyncSession) -> None:
    """Global policy that only escalates RED work."""
    await create_policy(session, "default", {"approval_risk_threshold": "RED"})


async def advance(session: AsyncSession, task: Task, agent: Agent, *path: str) -> Task:
    """Walk a task along ``path`` with the artifacts each edge needs."""
    artifacts = {
        "ASSIGNED": ({"assignee_ids": [agent.id]}, Actor.human("pm")),
        "IN_PROGRESS": ({"work_plan": "outline, draft, polish"}, Actor.agent(agent.id)),
        "REVIEW": ({"deliverable": "https://docs/post", "self_review": "checked"}, Actor.agent(agent.id)),
    }
    for i, status in enumerate(path):
        payload, actor = artifacts[status]
        result = await attempt_transition(
            session, task.id, status, actor, payload, idempotency_key=f"setup:{task.id}:{i}:{status}"
        )
        assert result.ok, result.message
    return task


@pytest.fixture
def walk():
    return advance
