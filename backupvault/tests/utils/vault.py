from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select

from backupvault.domain.models import BackupArtifact
from backupvault.domain.tables import TableSpec
from backupvault.services.engine import BackupVault
from backupvault.services.payload import open_payload
from backupvault.services.resilience import RetryPolicy


BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)
FAST_RETRY = RetryPolicy(timeout_ms=5000, max_attempts=3, backoff_ms=1)

TEST_TABLES: tuple[TableSpec, ...] = (
    TableSpec(name="organizations", tier="critical", frequency="hourly", retention_years=7),
    TableSpec(
        name="profiles",
        tier="critical",
        pii=True,
        pii_fields=("email", "full_name"),
        frequency="hourly",
        retention_years=5,
        depends_on=("organizations",),
        subject_fields=("id",),
    ),
    TableSpec(
        name="pets",
        tier="critical",
        pii=True,
        pii_fields=("name", "owner_id"),
        frequency="hourly",
        retention_years=7,
        domain="health",
        depends_on=("organizations", "profiles"),
        subject_fields=("owner_id",),
    ),
    TableSpec(
        name="settings",
        tier="medium",
        frequency="daily",
        retention_years=3,
        depends_on=("organizations",),
    ),
)


def seed_rows() -> dict[str, list[dict[str, Any]]]:
    # Operational rows as they look just before the first full backup.
    before = BASE_TIME - timedelta(days=1)
    stamps = {"created_at": before, "updated_at": before, "deleted_at": None}
    return {
        "organizations": [{"id": 1, "name": "Acme Pets", **stamps}],
        "profiles": [
            {"id": "u1", "organization_id": 1, "email": "ana@example.com", "full_name": "Ana Souza", **stamps},
            {"id": "u2", "organization_id": 1, "email": "bruno@example.com", "full_name": "Bruno Lima", **stamps},
        ],
        "pets": [
            {"id": "p1", "organization_id": 1, "owner_id": "u1", "name": "Rex", **stamps},
            {"id": "p2", "organization_id": 1, "owner_id": "u2", "name": "Mia", **stamps},
        ],
        "settings": [{"id": 1, "organization_id": 1, "timezone": "America/Sao_Paulo", **stamps}],
    }


async def load_artifact(vault: BackupVault, artifact_id: str) -> BackupArtifact:
    async with vault.session_factory() as session:
        artifact = await session.get(BackupArtifact, artifact_id)
    assert artifact is not None
    return artifact


async def list_artifacts(vault: BackupVault) -> list[BackupArtifact]:
    async with vault.session_factory() as session:
        result = await session.execute(select(BackupArtifact).order_by(BackupArtifact.created_at, BackupArtifact.id))
        return list(result.scalars().all())


async def read_payload(vault: BackupVault, artifact_id: str) -> dict[str, Any]:
    # Decrypt a stored artifact the way restores do, without revealing PII.
    artifact = await load_artifact(vault, artifact_id)
    blob = await vault.storage.get(artifact.storage_key)
    return await open_payload(blob, artifact, vault.cipher)
