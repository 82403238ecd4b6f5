from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backupvault.core.errors import ArtifactNotFoundError
from backupvault.domain.models import BackupArtifact


def _available():
    return select(BackupArtifact).where(BackupArtifact.deleted_at.is_(None))


async def require_artifact(session: AsyncSession, artifact_id: str) -> BackupArtifact:
    # Deleted artifacts are kept as inventory rows but are never restorable.
    artifact = await session.get(BackupArtifact, artifact_id)
    if artifact is None or artifact.deleted_at is not None:
        raise ArtifactNotFoundError(f"artifact not found: {artifact_id}")
    return artifact


async def list_available(
    session: AsyncSession,
    *,
    artifact_types: Iterable[str] | None = None,
) -> list[BackupArtifact]:
    stmt = _available()
    if artifact_types is not None:
        stmt = stmt.where(BackupArtifact.artifact_type.in_(list(artifact_types)))
    stmt = stmt.order_by(BackupArtifact.created_at, BackupArtifact.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def latest_available(
    session: AsyncSession,
    *,
    artifact_types: Iterable[str],
    created_before: datetime | None = None,
) -> BackupArtifact | None:
    # Newest usable artifact of the given types, optionally at or before a point in time.
    stmt = _available().where(BackupArtifact.artifact_type.in_(list(artifact_types)))
    if created_before is not None:
        stmt = stmt.where(BackupArtifact.created_at <= created_before)
    stmt = stmt.order_by(BackupArtifact.created_at.desc(), BackupArtifact.id.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_created_after(
    session: AsyncSession,
    *,
    created_after: datetime,
    artifact_types: Iterable[str],
) -> list[BackupArtifact]:
    stmt = (
        _available()
        .where(BackupArtifact.created_at > created_after)
        .where(BackupArtifact.artifact_type.in_(list(artifact_types)))
        .order_by(BackupArtifact.created_at, BackupArtifact.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_dependents(session: AsyncSession, artifact_id: str) -> int:
    # Live artifacts that name this one as their base keep it from being deleted.
    stmt = (
        select(func.count())
        .select_from(BackupArtifact)
        .where(BackupArtifact.base_artifact_id == artifact_id, BackupArtifact.deleted_at.is_(None))
    )
    return int((await session.execute(stmt)).scalar_one())
