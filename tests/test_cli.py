import asyncio
import re
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner
from sqlalchemy.pool import NullPool

from governor import cli, db

UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}")


@pytest.fixture
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[CliRunner]:
    # Every command runs its own event loop, so pooled connections cannot be shared.
    db.configure_engine(f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}", poolclass=NullPool)
    monkeypatch.setattr(cli, "install_default_handlers", lambda: None)
    yield CliRunner()
    asyncio.run(db.dispose_engine())


def test_task_lifecycle_from_cli(runner: CliRunner) -> None:
    assert runner.invoke(cli.main, ["init-db"]).exit_code == 0
    assert runner.invoke(cli.main, ["schema-check"]).exit_code == 0

    created = runner.invoke(cli.main, ["task", "create", "proj-1", "Write docs", "--type", "DOCS"])
    assert created.exit_code == 0, created.output
    task_id = UUID_RE.search(created.output).group(0)

    moved = runner.invoke(
        cli.main,
        ["task", "transition", task_id, "ASSIGNED", "--key", "k1", "--artifacts", '{"assignee_ids": ["agent-1"]}'],
    )
    assert moved.exit_code == 0, moved.output
    assert "INBOX -> ASSIGNED" in moved.output

    rejected = runner.invoke(cli.main, ["task", "transition", task_id, "DONE", "--key", "k2"])
    assert rejected.exit_code == 1
    assert "InvalidTransition" in rejected.output

    shown = runner.invoke(cli.main, ["task", "show", task_id])
    assert shown.exit_code == 0
    assert "ASSIGNED" in shown.output


def test_bad_artifacts_json(runner: CliRunner) -> None:
    result = runner.invoke(cli.main, ["task", "transition", "t-1", "ASSIGNED", "--key", "k", "--artifacts", "{"])

    assert result.exit_code == 2


def test_operator_mode_and_sweep(runner: CliRunner) -> None:
    runner.invoke(cli.main, ["init-db"])

    mode = runner.invoke(cli.main, ["operator", "mode", "DRAINING", "--reason", "release"])
    assert mode.exit_code == 0, mode.output
    assert "DRAINING" in mode.output

    swept = runner.invoke(cli.main, ["sweep"])
    assert swept.exit_code == 0, swept.output
    assert "Approvals expired: 0" in swept.output

    listed = runner.invoke(cli.main, ["approvals", "list"])
    assert "No pending approvals" in listed.output


def test_agent_register_and_budget(runner: CliRunner) -> None:
    runner.invoke(cli.main, ["init-db"])

    registered = runner.invoke(cli.main, ["agent", "register", "proj-1", "scout", "--daily", "8", "--per-run", "1"])
    assert registered.exit_code == 0, registered.output
    agent_id = UUID_RE.search(registered.output).group(0)

    assert runner.invoke(cli.main, ["agent", "heartbeat", agent_id]).exit_code == 0
    shown = runner.invoke(cli.main, ["budget", "show", agent_id])
    assert shown.exit_code == 0, shown.output
    assert "$8.00" in shown.output
