"""Alert records raised by the loop detector and the budget guard."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFoundError
from .models import Alert, AlertSeverity, AlertStatus, utcnow

LOOP_DETECTED = "LOOP_DETECTED"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"


class AlertNotFoundError(NotFoundError):
    pass


async def create_alert(
    session: AsyncSession,
    *,
    type: str,
    kind: str,
    title: str,
    description: str = "",
    severity: AlertSeverity = AlertSeverity.WARNING,
    project_id: str | None = None,
    task_id: str | None = None,
    agent_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Alert:
    alert = Alert(
        type=type,
        kind=kind,
        title=title,
        description=description,
        severity=severity,
        project_id=project_id,
        task_id=task_id,
        agent_id=agent_id,
        status=AlertStatus.OPEN,
        metadata_=metadata or {},
        created_at=utcnow(),
    )
    session.add(alert)
    await session.flush()
    return alert


async def find_open_alert(
    session: AsyncSession,
    *,
    kind: str,
    task_id: str | None = None,
    agent_id: str | None = None,
) -> Alert | None:
    """An OPEN alert of ``kind`` for the given target, if any."""
    query = select(Alert).where(
        Alert.kind == kind,
        Alert.status == AlertStatus.OPEN,
    )
    if task_id is not None:
        query = query.where(Alert.task_id == task_id)
    if agent_id is not None:
        query = query.where(Alert.agent_id == agent_id)
    result = await session.execute(query.limit(1))
    return result.scalar_one_or_none()


async def _require(session: AsyncSession, alert_id: str) -> Alert:
    alert = await session.get(Alert, alert_id)
    if alert is None:
        raise AlertNotFoundError(f"Alert not found: {alert_id}")
    return alert


async def acknowledge(
    session: AsyncSession, alert_id: str, user: str, *, now: datetime | None = None
) -> Alert:
    alert = await _require(session, alert_id)
    if alert.status == AlertStatus.OPEN:
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_by = user
        alert.acknowledged_at = now or utcnow()
    return alert


async def resolve(
    session: AsyncSession,
    alert_id: str,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> Alert:
    alert = await _require(session, alert_id)
    if alert.status != AlertStatus.RESOLVED:
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now or utcnow()
        alert.resolution_note = note
    return alert


async def list_alerts(
    session: AsyncSession,
    *,
    project_id: str | None = None,
    statuses: Sequence[AlertStatus] = (AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED),
    task_id: str | None = None,
) -> list[Alert]:
    query = select(Alert).order_by(Alert.created_at.desc())
    if statuses:
        query = query.where(Alert.status.in_(list(statuses)))
    if project_id:
        query = query.where(Alert.project_id == project_id)
    if task_id:
        query = query.where(Alert.task_id == task_id)
    result = await session.execute(query)
    return list(result.scalars().all())
