from decimal import Decimal

import pytest
from sqlalchemy import text

from governor import db
from governor.config import Settings
from governor.errors import (
    BudgetExceededError,
    ErrorCode,
    GovernanceError,
    SchemaNotInitializedError,
    error_for,
    is_schema_missing_error,
    missing_table_name,
)


def test_error_for_maps_codes() -> None:
    err = error_for(ErrorCode.BUDGET_EXCEEDED, "over")

    assert isinstance(err, BudgetExceededError)
    assert err.code == ErrorCode.BUDGET_EXCEEDED
    assert type(error_for(ErrorCode.LOOP_DETECTED, "x")) is GovernanceError


def test_missing_table_detection() -> None:
    pg = Exception('relation "tasks" does not exist')
    lite = Exception("no such table: approvals")

    assert missing_table_name(pg) == "tasks"
    assert missing_table_name(lite) == "approvals"
    assert not is_schema_missing_error(Exception("deadlock detected"))


@pytest.mark.asyncio
async def test_session_scope_reports_missing_schema(tmp_path) -> None:
    factory = db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    try:
        with pytest.raises(SchemaNotInitializedError) as info:
            async with db.session_scope(factory) as session:
                await session.execute(text("SELECT id FROM tasks"))
        assert "missing table `tasks`" in info.value.message
    finally:
        await db.dispose_engine()


def test_settings_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOVERNOR_DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///x.db")
    monkeypatch.setenv("GOVERNOR_DEFAULT_BUDGET_DAILY", "12.50")
    monkeypatch.setenv("GOVERNOR_REVIEW_LOOP_MAX_CYCLES", "4")

    config = Settings()

    assert config.async_database_url == "sqlite+aiosqlite:///x.db"
    assert config.default_budget_daily == Decimal("12.50")
    assert config.review_loop_max_cycles == 4
    assert config.database_url.startswith("postgresql://")
