"""Main CLI entry point for the task governor."""

import asyncio
import json
import logging
import sys
from decimal import Decimal

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, alerts, approvals, budget, db, gate
from .config import settings
from .events import install_default_handlers
from .models import AgentRole, AlertStatus, OperatorMode, TaskStatus, TaskType
from .operator import get_effective_operator_control, quarantine_agent, release_agent, set_operator_mode
from .redis_client import close_pool
from .scheduler import Scheduler, run_sweeps
from .state_machine import Actor, allowed_targets

console = Console()


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=settings.log_format, stream=sys.stderr)


def _actor(actor_type: str, actor_id: str | None) -> Actor:
    return Actor(actor_type.upper(), actor_id)


def _money(value: Decimal | None) -> str:
    return "-" if value is None else f"${value:.2f}"


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
def main(verbose: bool) -> None:
    """Task governance engine CLI.

    Govern agent task lifecycles: transitions, approvals, budgets and loop detection.
    """
    _setup_logging(verbose)
    install_default_handlers()


# =============================================================================
# Database
# =============================================================================


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables from the model metadata (development only)."""
    asyncio.run(db.init_db())
    console.print("[green]Tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        from .models import Base

        async with db.get_engine().connect() as conn:
            existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        missing = set(Base.metadata.tables) - existing
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `uv run alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}\n"
            f"Override: {'yes' if settings.database_url_override else 'no'}",
            title="Database Configuration",
        )
    )


# =============================================================================
# Sweeps
# =============================================================================


@main.command()
def sweep() -> None:
    """Run approval expiry, loop detection and the spend reset once."""
    summary = asyncio.run(run_sweeps())
    loops = summary.loops
    console.print(
        Panel(
            f"Approvals expired: {summary.expired_approvals}\n"
            f"Loop corrections: {len(loops.detections) if loops else 0}\n"
            f"Agents reset: {summary.agents_reset}",
            title="Sweep",
        )
    )
    if loops and loops.detections:
        table = Table(title="Loop corrections")
        table.add_column("Reason", style="cyan")
        table.add_column("Tasks")
        table.add_column("Agent")
        table.add_column("Alert")
        for d in loops.detections:
            table.add_row(d.reason, ", ".join(d.task_ids) or "-", d.agent_id or "-", d.alert_id)
        console.print(table)


@main.command()
@click.option("--approval-minutes", default=None, type=int, help="Approval sweep interval")
@click.option("--loop-minutes", default=None, type=int, help="Loop sweep interval")
def scheduler(approval_minutes: int | None, loop_minutes: int | None) -> None:
    """Run the sweeps on an interval until interrupted."""
    from datetime import timedelta

    runner = Scheduler(
        approval_interval=timedelta(minutes=approval_minutes) if approval_minutes else None,
        loop_interval=timedelta(minutes=loop_minutes) if loop_minutes else None,
    )

    async def run() -> None:
        try:
            await runner.run_forever()
        finally:
            await close_pool()
            await db.dispose_engine()

    asyncio.run(run())


# =============================================================================
# Tasks
# =============================================================================


@main.group()
def task() -> None:
    """Inspect and move tasks."""


@task.command(name="create")
@click.argument("project_id")
@click.argument("title")
@click.option("--type", "task_type", default=TaskType.ENGINEERING.value, type=click.Choice([t.value for t in TaskType]))
@click.option("--priority", "-p", default=3, type=click.IntRange(1, 4))
@click.option("--budget", "budget_allocated", default=None, help="Budget allocation in USD")
def create_task(project_id: str, title: str, task_type: str, priority: int, budget_allocated: str | None) -> None:
    """Create a task in INBOX."""

    async def do_create() -> None:
        async with db.get_session() as session:
            created = await db.create_task(
                session,
                project_id,
                title,
                task_type=task_type,
                priority=priority,
                budget_allocated=Decimal(budget_allocated) if budget_allocated else None,
            )
            console.print(json.dumps({"id": created.id, "status": created.status.value}))

    asyncio.run(do_create())


@task.command(name="show")
@click.argument("task_id")
def show_task(task_id: str) -> None:
    """Show a task and its transition history."""

    async def show() -> None:
        async with db.get_session() as session:
            found = await db.get_task_by_id(session, task_id)
            if not found:
                console.print(f"[red]Task not found: {task_id}[/red]")
                raise SystemExit(1)

            console.print(
                Panel(
                    f"[bold]{found.title}[/bold]\n\n"
                    f"Status: [cyan]{found.status.value}[/cyan]\n"
                    f"Type: {found.type}  Priority: P{found.priority}\n"
                    f"Assignees: {', '.join(found.assignee_ids) or '-'}\n"
                    f"Budget: {_money(found.actual_cost)} / {_money(found.budget_allocated)}\n"
                    f"Blocked: {found.blocked_reason or '-'}\n"
                    f"Next: {', '.join(s.value for s in allowed_targets(found.status)) or '-'}",
                    title=f"Task: {found.id}",
                )
            )

            history = await db.get_task_transitions(session, task_id)
            if history:
                table = Table(title="Transitions")
                table.add_column("When", style="cyan")
                table.add_column("From")
                table.add_column("To")
                table.add_column("Actor")
                table.add_column("Reason")
                for t in history:
                    table.add_row(
                        t.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                        t.from_status.value,
                        t.to_status.value,
                        f"{t.actor_type.value}:{t.actor_id or '-'}",
                        t.reason or "-",
                    )
                console.print(table)

    asyncio.run(show())


@task.command(name="transition")
@click.argument("task_id")
@click.argument("to_status", type=click.Choice([s.value for s in TaskStatus]))
@click.option("--actor", "actor_type", default="HUMAN", type=click.Choice(["AGENT", "HUMAN", "SYSTEM"]))
@click.option("--actor-id", default=None, help="Agent or user id")
@click.option("--key", "idempotency_key", required=True, help="Idempotency key")
@click.option("--artifacts", default="{}", help="Artifacts as a JSON object")
@click.option("--cost", default="0", help="Estimated cost in USD")
@click.option("--reason", default=None)
def transition_task(
    task_id: str,
    to_status: str,
    actor_type: str,
    actor_id: str | None,
    idempotency_key: str,
    artifacts: str,
    cost: str,
    reason: str | None,
) -> None:
    """Request a governed status change."""
    try:
        parsed = json.loads(artifacts)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--artifacts is not valid JSON: {exc}") from exc

    async def do_transition() -> None:
        async with db.get_session() as session:
            result = await gate.request_transition(
                session,
                task_id,
                to_status,
                _actor(actor_type, actor_id),
                parsed,
                idempotency_key=idempotency_key,
                estimated_cost=Decimal(cost),
                reason=reason,
            )
        if result.deferred:
            console.print(f"[yellow]Deferred: approval {result.approval_id} pending[/yellow]")
        elif result.ok:
            replay = " (replayed)" if result.replayed else ""
            console.print(f"[green]{result.from_status} -> {result.to_status}{replay}[/green]")
        else:
            console.print(f"[red]{result.error}: {result.message}[/red]")
            raise SystemExit(1)

    asyncio.run(do_transition())


@task.command(name="message")
@click.argument("task_id")
@click.argument("content")
@click.option("--author-id", default=None)
@click.option("--author-type", default="AGENT", type=click.Choice(["AGENT", "HUMAN", "SYSTEM"]))
def add_message(task_id: str, content: str, author_id: str | None, author_type: str) -> None:
    """Post a comment on a task thread."""

    async def do_add() -> None:
        async with db.get_session() as session:
            message = await db.add_message(session, task_id, content, author_type=author_type, author_id=author_id)
            console.print(json.dumps({"id": message.id, "status": "added"}))

    asyncio.run(do_add())


# =============================================================================
# Approvals
# =============================================================================


@main.group(name="approvals")
def approvals_group() -> None:
    """Review pending approvals."""


@approvals_group.command(name="list")
@click.option("--project", "project_id", default=None)
def list_approvals(project_id: str | None) -> None:
    """List pending approvals."""

    async def do_list() -> None:
        async with db.get_session() as session:
            pending = await approvals.list_pending(session, project_id)
            if not pending:
                console.print("[yellow]No pending approvals[/yellow]")
                return

            table = Table(title="Pending approvals")
            table.add_column("ID", style="cyan")
            table.add_column("Risk")
            table.add_column("Action")
            table.add_column("Summary")
            table.add_column("Cost")
            table.add_column("Expires")
            for a in pending:
                table.add_row(
                    a.id,
                    a.risk_level.value,
                    a.action_type,
                    a.action_summary,
                    _money(a.estimated_cost),
                    a.expires_at.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)

    asyncio.run(do_list())


@approvals_group.command(name="decide")
@click.argument("approval_id")
@click.argument("outcome", type=click.Choice(["APPROVE", "DENY"], case_sensitive=False))
@click.option("--by", "decided_by", required=True, help="Who is deciding")
@click.option("--reason", default=None)
@click.option("--resume/--no-resume", default=True, help="Apply the deferred transition once approved")
def decide_approval(approval_id: str, outcome: str, decided_by: str, reason: str | None, resume: bool) -> None:
    """Approve or deny a pending approval."""

    async def do_decide() -> None:
        async with db.get_session() as session:
            result = await approvals.decide(session, approval_id, decided_by, outcome.upper(), reason)
        if not result.ok:
            console.print(f"[red]{result.error}: {result.message}[/red]")
            raise SystemExit(1)
        console.print(f"[green]Approval {approval_id} is {result.status.value}[/green]")

        if resume and result.status.value == "APPROVED":
            async with db.get_session() as session:
                approval = await approvals.require_approval(session, approval_id)
                if "to_status" not in (approval.payload or {}):
                    return
                moved = await gate.resume_approved(session, approval_id)
            if moved.ok:
                console.print(f"[green]Task {moved.task_id}: {moved.from_status} -> {moved.to_status}[/green]")
            else:
                console.print(f"[yellow]Deferred transition not applied: {moved.error}: {moved.message}[/yellow]")

    asyncio.run(do_decide())


# =============================================================================
# Alerts
# =============================================================================


@main.group(name="alerts")
def alerts_group() -> None:
    """Inspect and close alerts."""


@alerts_group.command(name="list")
@click.option("--project", "project_id", default=None)
@click.option("--all", "show_all", is_flag=True, help="Include resolved alerts")
def list_alerts(project_id: str | None, show_all: bool) -> None:
    """List open alerts."""

    async def do_list() -> None:
        async with db.get_session() as session:
            statuses = () if show_all else (AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED)
            found = await alerts.list_alerts(session, project_id=project_id, statuses=statuses)
            if not found:
                console.print("[green]No alerts[/green]")
                return

            table = Table(title="Alerts")
            table.add_column("ID", style="cyan")
            table.add_column("Severity")
            table.add_column("Kind")
            table.add_column("Title")
            table.add_column("Target")
            table.add_column("Status")
            for a in found:
                table.add_row(
                    a.id,
                    a.severity.value,
                    a.kind,
                    a.title,
                    a.task_id or a.agent_id or "-",
                    a.status.value,
                )
            console.print(table)

    asyncio.run(do_list())


@alerts_group.command(name="ack")
@click.argument("alert_id")
@click.option("--by", "user", required=True)
def ack_alert(alert_id: str, user: str) -> None:
    """Acknowledge an alert."""

    async def do_ack() -> None:
        async with db.get_session() as session:
            alert = await alerts.acknowledge(session, alert_id, user)
            console.print(f"Alert {alert.id}: {alert.status.value}")

    asyncio.run(do_ack())


@alerts_group.command(name="resolve")
@click.argument("alert_id")
@click.option("--note", default=None)
def resolve_alert(alert_id: str, note: str | None) -> None:
    """Resolve an alert."""

    async def do_resolve() -> None:
        async with db.get_session() as session:
            alert = await alerts.resolve(session, alert_id, note=note)
            console.print(f"Alert {alert.id}: {alert.status.value}")

    asyncio.run(do_resolve())


# =============================================================================
# Agents
# =============================================================================


@main.group(name="agent")
def agent_group() -> None:
    """Register agents and record liveness."""


@agent_group.command(name="register")
@click.argument("project_id")
@click.argument("name")
@click.option("--role", default=AgentRole.INTERN.value, type=click.Choice([r.value for r in AgentRole]))
@click.option("--daily", default=None, help="Daily budget in USD")
@click.option("--per-run", default=None, help="Per-run budget in USD")
def register_agent(project_id: str, name: str, role: str, daily: str | None, per_run: str | None) -> None:
    """Register an agent with its spend caps."""

    async def run() -> None:
        async with db.get_session() as session:
            agent = await db.create_agent(
                session,
                project_id,
                name,
                role=role,
                budget_daily=Decimal(daily) if daily else None,
                budget_per_run=Decimal(per_run) if per_run else None,
            )
            console.print(json.dumps({"id": agent.id, "status": agent.status.value}))

    asyncio.run(run())


@agent_group.command(name="heartbeat")
@click.argument("agent_id")
def heartbeat(agent_id: str) -> None:
    """Record that an agent is alive."""

    async def run() -> None:
        async with db.get_session() as session:
            agent = await db.record_heartbeat(session, agent_id)
            console.print(f"Agent {agent.id}: {agent.last_heartbeat_at:%Y-%m-%d %H:%M:%S}")

    asyncio.run(run())


# =============================================================================
# Budget / operator
# =============================================================================


@main.group(name="budget")
def budget_group() -> None:
    """Spend reporting."""


@budget_group.command(name="show")
@click.argument("agent_id")
@click.option("--hours", default=24, help="Burn-rate window in hours")
def show_budget(agent_id: str, hours: int) -> None:
    """Show an agent's spend against its caps."""
    from datetime import timedelta

    async def show() -> None:
        async with db.get_session() as session:
            agent = await db.require_agent(session, agent_id)
            rate = await budget.burn_rate(session, agent.project_id, timedelta(hours=hours))
            console.print(
                Panel(
                    f"Status: [cyan]{agent.status.value}[/cyan]  Role: {agent.role.value}\n"
                    f"Spent today: {_money(agent.spend_today)} / {_money(agent.budget_daily)}"
                    f" (day {agent.spend_day or '-'})\n"
                    f"Per-run cap: {_money(agent.budget_per_run)}\n"
                    f"Project burn rate: {_money(rate)}/h over {hours}h",
                    title=f"Agent: {agent.name}",
                )
            )

    asyncio.run(show())


@main.group(name="operator")
def operator_group() -> None:
    """Operator run modes and agent overrides."""


@operator_group.command(name="mode")
@click.argument("mode", required=False, type=click.Choice([m.value for m in OperatorMode]))
@click.option("--project", "project_id", default=None, help="Project id (global when omitted)")
@click.option("--reason", default=None)
@click.option("--by", "updated_by", default=None)
def operator_mode(mode: str | None, project_id: str | None, reason: str | None, updated_by: str | None) -> None:
    """Show or set the operator mode."""

    async def run() -> None:
        async with db.get_session() as session:
            if mode:
                await set_operator_mode(session, mode, project_id=project_id, reason=reason, updated_by=updated_by)
            control = await get_effective_operator_control(session, project_id)
            console.print(
                f"Mode: [cyan]{control.mode.value}[/cyan] (source {control.source.value})"
                + (f" - {control.reason}" if control.reason else "")
            )

    asyncio.run(run())


@operator_group.command(name="quarantine")
@click.argument("agent_id")
@click.option("--reason", required=True)
@click.option("--by", "actor_id", default=None)
def quarantine(agent_id: str, reason: str, actor_id: str | None) -> None:
    """Quarantine an agent."""

    async def run() -> None:
        async with db.get_session() as session:
            agent = await quarantine_agent(session, agent_id, reason=reason, actor_id=actor_id)
            console.print(f"Agent {agent.id}: {agent.status.value}")

    asyncio.run(run())


@operator_group.command(name="release")
@click.argument("agent_id")
@click.option("--by", "released_by", default=None)
@click.option("--reason", default=None)
def release(agent_id: str, released_by: str | None, reason: str | None) -> None:
    """Return a quarantined or paused agent to ACTIVE."""

    async def run() -> None:
        async with db.get_session() as session:
            agent = await release_agent(session, agent_id, released_by=released_by, reason=reason)
            console.print(f"Agent {agent.id}: {agent.status.value}")

    asyncio.run(run())


@main.group(name="policy")
def policy_group() -> None:
    """Versioned approval policies."""


@policy_group.command(name="create")
@click.argument("name")
@click.option("--rules", required=True, help="Rules document as a JSON object")
@click.option("--scope", "scope_type", default="GLOBAL", type=click.Choice(["GLOBAL", "PROJECT", "AGENT"]))
@click.option("--scope-id", default=None, help="Project or agent id for scoped policies")
@click.option("--notes", default=None)
def create_policy(name: str, rules: str, scope_type: str, scope_id: str | None, notes: str | None) -> None:
    """Publish a new policy version and make it active for its scope."""
    from .policy import create_policy as publish

    try:
        parsed = json.loads(rules)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"--rules is not valid JSON: {exc}") from exc

    async def run() -> None:
        async with db.get_session() as session:
            policy = await publish(session, name, parsed, scope_type=scope_type, scope_id=scope_id, notes=notes)
            console.print(
                f"[green]Policy {policy.name} v{policy.version} active for {scope_type}:{policy.scope_id}[/green]"
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
