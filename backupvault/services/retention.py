from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import StorageObjectNotFoundError
from backupvault.domain.models import BackupArtifact, RetentionRun
from backupvault.domain.tables import TableSpec
from backupvault.persistence.repos import artifacts as artifact_repo
from backupvault.persistence.repos import compliance as compliance_repo
from backupvault.services.audit import AuditLogger
from backupvault.services.resilience import RetryPolicy, retry_async, storage_retry_policy
from backupvault.services.storage.base import TIER_ARCHIVE, StorageBackend, secure_delete
from backupvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365

HOLD_LEGAL = "legal_hold"
HOLD_RESTRICTED = "processing_restricted"
HOLD_IN_USE = "in_use"
HOLD_COMPLIANCE = "compliance_request"
HOLD_CHAIN = "chain_dependency"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ComplianceRegime:
    # A regulatory floor that applies to PII tables, optionally limited to some domains.
    name: str
    years: int
    domains: frozenset[str] | None = None

    def applies_to(self, spec: TableSpec) -> bool:
        if not spec.pii:
            return False
        return self.domains is None or spec.domain in self.domains


def enabled_regimes(settings: Settings) -> tuple[ComplianceRegime, ...]:
    regimes: list[ComplianceRegime] = []
    if settings.compliance_lgpd_enabled:
        regimes.append(ComplianceRegime("LGPD", settings.compliance_lgpd_years))
    if settings.compliance_gdpr_enabled:
        regimes.append(ComplianceRegime("GDPR", settings.compliance_gdpr_years))
    if settings.compliance_hipaa_enabled:
        regimes.append(ComplianceRegime("HIPAA", settings.compliance_hipaa_years, frozenset({"health"})))
    return tuple(regimes)


@dataclass(frozen=True)
class RetentionPolicy:
    table: str
    retention_years: int
    business_years: int
    compliance_floor_years: int
    regimes: tuple[str, ...]
    archive_before_delete: bool

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_years * DAYS_PER_YEAR)


@dataclass(frozen=True)
class RetentionResult:
    archived: tuple[str, ...]
    deleted: tuple[str, ...]
    held: dict[str, str]
    failed: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "archived": list(self.archived),
            "deleted": list(self.deleted),
            "held": dict(self.held),
            "failed": dict(self.failed),
        }


class RetentionEngine:
    """Resolves retention and applies archive/delete/hold decisions.

    Effective retention is the business retention raised to the highest floor
    among enabled regimes that apply to the table, so enabling a regime can
    only lengthen it. An artifact keeps the longest retention of the tables it
    contains.
    """

    def __init__(
        self,
        *,
        tables: Iterable[TableSpec],
        storage: StorageBackend,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        settings: Settings | None = None,
        regimes: Iterable[ComplianceRegime] | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._specs = {spec.name: spec for spec in tables}
        self._storage = storage
        self._session_factory = session_factory
        self._audit = audit
        self._settings = settings or get_settings()
        self._regimes = tuple(regimes) if regimes is not None else enabled_regimes(self._settings)
        self._retry_policy = retry_policy
        self._clock = clock
        self._policies: dict[str, RetentionPolicy] = {}

    @property
    def regimes(self) -> tuple[ComplianceRegime, ...]:
        return self._regimes

    def compute_policy(self, spec: TableSpec) -> RetentionPolicy:
        cached = self._policies.get(spec.name)
        if cached is not None:
            return cached
        applicable = [regime for regime in self._regimes if regime.applies_to(spec)]
        floor = max((regime.years for regime in applicable), default=0)
        policy = RetentionPolicy(
            table=spec.name,
            retention_years=max(spec.retention_years, floor),
            business_years=spec.retention_years,
            compliance_floor_years=floor,
            regimes=tuple(regime.name for regime in applicable),
            archive_before_delete=spec.tier == "critical",
        )
        self._policies[spec.name] = policy
        return policy

    def artifact_retention(self, artifact: BackupArtifact) -> timedelta:
        years = []
        for name in artifact.table_manifest or {}:
            spec = self._specs.get(name)
            years.append(self.compute_policy(spec).retention_years if spec else self._settings.retention_default_years)
        return timedelta(days=max(years, default=self._settings.retention_default_years) * DAYS_PER_YEAR)

    def archive_threshold(self, artifact: BackupArtifact) -> timedelta:
        days = {
            "full": self._settings.archive_after_days_full,
            "incremental": self._settings.archive_after_days_incremental,
            "differential": self._settings.archive_after_days_differential,
        }.get(artifact.artifact_type, self._settings.archive_after_days_full)
        return timedelta(days=days)

    async def set_legal_hold(self, artifact_id: str, *, hold: bool, reason: str | None = None) -> BackupArtifact:
        async with self._session_factory() as session:
            artifact = await artifact_repo.require_artifact(session, artifact_id)
            artifact.legal_hold = hold
            artifact.legal_hold_reason = reason if hold else None
            await session.commit()
        await self._audit.security_event(
            "retention.legal_hold.set" if hold else "retention.legal_hold.cleared",
            {"artifact_id": artifact_id, "reason": reason},
            component="retention",
        )
        return artifact

    async def apply_retention(self, *, now: datetime | None = None) -> RetentionResult:
        now = now or self._clock()
        archived: list[str] = []
        deleted: list[str] = []
        held: dict[str, str] = {}
        failed: dict[str, str] = {}
        async with self._session_factory() as session:
            inventory = await artifact_repo.list_available(session)
            pending_scope = await compliance_repo.artifacts_in_pending_scope(session)
        run = RetentionRun(started_at=now)
        # Newest first so dependents expire before the bases they point at.
        for artifact in sorted(inventory, key=lambda item: (item.created_at, item.id), reverse=True):
            age = now - artifact.created_at
            if age > self.artifact_retention(artifact):
                reason = await self._hold_reason(artifact, pending_scope)
                if reason is not None:
                    held[artifact.id] = reason
                    await self._audit.info(
                        "retention hold prevented deletion",
                        {"artifact_id": artifact.id, "reason": reason},
                        event_type="retention.artifact.held",
                        component="retention",
                    )
                    continue
                if artifact.contains_critical and not artifact.archived:
                    # Critical data always passes through the archive tier before deletion.
                    await self._archive(artifact, now, archived, failed)
                    continue
                if artifact.contains_critical and artifact.archived_at is not None:
                    if now - artifact.archived_at < timedelta(days=self._settings.archive_grace_days):
                        continue
                await self._delete(artifact, now, deleted, held, failed)
                continue
            if not artifact.archived and artifact.in_use_by is None and age > self.archive_threshold(artifact):
                await self._archive(artifact, now, archived, failed)
        run.completed_at = self._clock()
        run.archived = archived
        run.deleted = deleted
        run.held = held
        run.failed = failed
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()
        increment_counter("retention_archived_total", len(archived))
        increment_counter("retention_deleted_total", len(deleted))
        increment_counter("retention_held_total", len(held))
        increment_counter("retention_failed_total", len(failed))
        logger.info(
            "retention_applied archived=%s deleted=%s held=%s failed=%s",
            len(archived),
            len(deleted),
            len(held),
            len(failed),
        )
        return RetentionResult(tuple(archived), tuple(deleted), held, failed)

    async def _hold_reason(self, artifact: BackupArtifact, pending_scope: set[str]) -> str | None:
        if artifact.legal_hold:
            return HOLD_LEGAL
        if artifact.processing_restricted:
            return HOLD_RESTRICTED
        if artifact.in_use_by is not None:
            return HOLD_IN_USE
        if artifact.id in pending_scope:
            return HOLD_COMPLIANCE
        async with self._session_factory() as session:
            if await artifact_repo.count_dependents(session, artifact.id):
                return HOLD_CHAIN
        return None

    async def _archive(
        self,
        artifact: BackupArtifact,
        now: datetime,
        archived: list[str],
        failed: dict[str, str],
    ) -> None:
        try:
            await retry_async(
                lambda: self._storage.set_storage_class(artifact.storage_key, TIER_ARCHIVE),
                policy=self._retry_policy or storage_retry_policy(),
                operation="storage.set_storage_class",
            )
        except Exception as exc:  # noqa: BLE001 - recorded per artifact; the sweep continues
            failed[artifact.id] = f"archive failed: {type(exc).__name__}"
            logger.warning("retention_archive_failed artifact_id=%s", artifact.id, exc_info=exc)
            await self._audit.warning(
                "retention archive failed",
                {"artifact_id": artifact.id, "error": type(exc).__name__},
                event_type="retention.artifact.archive_failed",
                component="retention",
                outcome="failure",
                error_code=getattr(exc, "code", None),
            )
            return
        async with self._session_factory() as session:
            await session.execute(
                update(BackupArtifact)
                .where(BackupArtifact.id == artifact.id)
                .values(archived=True, archived_at=now, storage_tier=TIER_ARCHIVE)
            )
            await session.commit()
        archived.append(artifact.id)
        await self._audit.info(
            "artifact moved to archive tier",
            {"artifact_id": artifact.id, "storage_key": artifact.storage_key, "backup_type": artifact.artifact_type},
            event_type="retention.artifact.archived",
            component="retention",
        )

    async def _delete(
        self,
        artifact: BackupArtifact,
        now: datetime,
        deleted: list[str],
        held: dict[str, str],
        failed: dict[str, str],
    ) -> None:
        # Claim the row first so a restore starting now cannot mark it in use mid-delete.
        async with self._session_factory() as session:
            result = await session.execute(
                update(BackupArtifact)
                .where(
                    BackupArtifact.id == artifact.id,
                    BackupArtifact.in_use_by.is_(None),
                    BackupArtifact.deleted_at.is_(None),
                    BackupArtifact.status == "available",
                )
                .values(status="deleting")
            )
            await session.commit()
        if result.rowcount != 1:
            held[artifact.id] = HOLD_IN_USE
            return
        try:
            if artifact.contains_pii:
                await secure_delete(self._storage, artifact.storage_key, artifact.size_bytes)
            else:
                await retry_async(
                    lambda: self._storage.delete(artifact.storage_key),
                    policy=self._retry_policy or storage_retry_policy(),
                    operation="storage.delete",
                )
        except StorageObjectNotFoundError:
            logger.warning("retention_object_already_missing artifact_id=%s", artifact.id)
        except Exception as exc:  # noqa: BLE001 - recorded per artifact; the sweep continues
            async with self._session_factory() as session:
                await session.execute(
                    update(BackupArtifact).where(BackupArtifact.id == artifact.id).values(status="available")
                )
                await session.commit()
            failed[artifact.id] = f"delete failed: {type(exc).__name__}"
            logger.warning("retention_delete_failed artifact_id=%s", artifact.id, exc_info=exc)
            await self._audit.warning(
                "retention delete failed",
                {"artifact_id": artifact.id, "error": type(exc).__name__},
                event_type="retention.artifact.delete_failed",
                component="retention",
                outcome="failure",
                error_code=getattr(exc, "code", None),
            )
            return
        async with self._session_factory() as session:
            await session.execute(
                update(BackupArtifact)
                .where(BackupArtifact.id == artifact.id)
                .values(status="deleted", deleted_at=now)
            )
            await session.commit()
        deleted.append(artifact.id)
        await self._audit.security_event(
            "retention.artifact.deleted",
            {
                "artifact_id": artifact.id,
                "backup_type": artifact.artifact_type,
                "secure_erase": artifact.contains_pii,
                "size_bytes": artifact.size_bytes,
            },
            component="retention",
        )
