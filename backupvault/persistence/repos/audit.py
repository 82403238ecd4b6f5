from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backupvault.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    event_type_prefix: str | None = None,
    levels: tuple[str, ...] | None = None,
    limit: int | None = None,
) -> list[AuditEvent]:
    stmt = select(AuditEvent)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)
    if event_type_prefix:
        stmt = stmt.where(AuditEvent.event_type.startswith(event_type_prefix))
    if levels:
        stmt = stmt.where(AuditEvent.level.in_(levels))
    stmt = stmt.order_by(AuditEvent.occurred_at, AuditEvent.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
