from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backupvault.domain.models import ComplianceRequest


async def list_requests(
    session: AsyncSession,
    *,
    status: str | None = None,
    requested_from: datetime | None = None,
    requested_to: datetime | None = None,
) -> list[ComplianceRequest]:
    stmt = select(ComplianceRequest)
    if status:
        stmt = stmt.where(ComplianceRequest.status == status)
    if requested_from:
        stmt = stmt.where(ComplianceRequest.requested_at >= requested_from)
    if requested_to:
        stmt = stmt.where(ComplianceRequest.requested_at <= requested_to)
    stmt = stmt.order_by(ComplianceRequest.requested_at, ComplianceRequest.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def artifacts_in_pending_scope(session: AsyncSession) -> set[str]:
    # Artifacts referenced by any open request are exempt from deletion.
    pending = await list_requests(session, status="pending")
    scoped: set[str] = set()
    for request in pending:
        scoped.update(request.affected_artifact_ids or [])
    return scoped
