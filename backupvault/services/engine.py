from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings, validate_settings
from backupvault.domain.models import BackupArtifact, ComplianceRequest, ExportHandle
from backupvault.domain.tables import TableSpec, load_catalog
from backupvault.persistence.db import build_engine, init_models
from backupvault.services.audit import AuditLogger
from backupvault.services.backup import BackupOrchestrator, JobSnapshot
from backupvault.services.compliance import ComplianceEngine
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.keyring import Keyring
from backupvault.services.crypto.keystore import KeyStore, build_keystore
from backupvault.services.crypto.pii import PIIProtector, resolve_pii_mode
from backupvault.services.recovery import RecoveryOrchestrator, RecoveryResult
from backupvault.services.reporting import ComplianceReport, ComplianceReporter
from backupvault.services.resilience import RetryPolicy
from backupvault.services.retention import RetentionEngine, RetentionResult
from backupvault.services.source import RestoreTarget, SourceReader, SqlRestoreTarget, SqlSourceReader
from backupvault.services.storage import StorageBackend, build_storage
from backupvault.services.telemetry import counters_snapshot, durations_snapshot, gauges_snapshot


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackupVault:
    """Entry points for schedulers, operator scripts and the ops API.

    Each method delegates to the owning component and returns its structured
    result or raises a typed ``BackupVaultError``.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        tables: tuple[TableSpec, ...],
        session_factory: async_sessionmaker[AsyncSession],
        keyring: Keyring,
        cipher: EnvelopeCipher,
        pii: PIIProtector,
        storage: StorageBackend,
        audit: AuditLogger,
        backup: BackupOrchestrator,
        recovery: RecoveryOrchestrator,
        retention: RetentionEngine,
        compliance: ComplianceEngine,
        reporter: ComplianceReporter,
        owned_engines: Iterable[AsyncEngine] = (),
        inventory_engine: AsyncEngine | None = None,
    ) -> None:
        self.settings = settings
        self.tables = tables
        self.session_factory = session_factory
        self.keyring = keyring
        self.cipher = cipher
        self.pii = pii
        self.storage = storage
        self.audit = audit
        self.backup = backup
        self.recovery = recovery
        self.retention = retention
        self.compliance = compliance
        self.reporter = reporter
        self._owned_engines = list(owned_engines)
        self._inventory_engine = inventory_engine

    async def initialize(self) -> None:
        # Create inventory tables when this vault owns the inventory engine.
        if self._inventory_engine is not None:
            await init_models(self._inventory_engine)

    async def run_full_backup(self) -> BackupArtifact:
        return await self.backup.perform_full()

    async def run_incremental_backup(self) -> BackupArtifact | None:
        return await self.backup.perform_incremental()

    async def run_differential_backup(self) -> BackupArtifact | None:
        return await self.backup.perform_differential()

    def cancel_job(self, job_id: str) -> bool:
        return self.backup.cancel_job(job_id)

    def get_job(self, job_id: str) -> JobSnapshot | None:
        return self.backup.get_job(job_id)

    def list_jobs(self, *, status: str | None = None) -> list[JobSnapshot]:
        return self.backup.list_jobs(status=status)

    async def restore_complete(self, artifact_id: str) -> RecoveryResult:
        return await self.recovery.restore_complete(artifact_id)

    async def restore_point_in_time(self, target_timestamp: datetime) -> RecoveryResult:
        return await self.recovery.restore_point_in_time(target_timestamp)

    async def restore_selective(self, artifact_id: str, tables: list[str]) -> RecoveryResult:
        return await self.recovery.restore_selective(artifact_id, tables)

    async def check_stuck_recovery(self) -> list[str]:
        return await self.recovery.check_stuck_recovery()

    async def release_stale_lock(self, *, force: bool = False) -> bool:
        return await self.recovery.release_stale_lock(force=force)

    async def apply_retention(self, *, now: datetime | None = None) -> RetentionResult:
        return await self.retention.apply_retention(now=now)

    async def set_legal_hold(self, artifact_id: str, *, hold: bool, reason: str | None = None) -> BackupArtifact:
        return await self.retention.set_legal_hold(artifact_id, hold=hold, reason=reason)

    async def submit_compliance_request(
        self,
        request_type: str,
        subject_id: str,
        payload: dict[str, Any] | None = None,
    ) -> ComplianceRequest:
        return await self.compliance.submit_request(request_type, subject_id, payload)

    async def process_compliance_request(self, request: str | ComplianceRequest | dict[str, Any]) -> ComplianceRequest:
        # Accepts a stored request, its id, or a new request body to submit first.
        if isinstance(request, dict):
            submitted = await self.compliance.submit_request(
                request["request_type"],
                request["subject_id"],
                request.get("payload"),
            )
            request_id = submitted.id
        elif isinstance(request, ComplianceRequest):
            request_id = request.id
        else:
            request_id = request
        return await self.compliance.process_compliance_request(request_id)

    async def fetch_export(self, handle_id: str) -> tuple[ExportHandle, bytes]:
        return await self.compliance.fetch_export(handle_id)

    async def purge_expired_exports(self) -> list[str]:
        return await self.compliance.purge_expired_exports()

    async def rotate_key(self, *, reason: str | None = None) -> str:
        return await self.keyring.rotate(reason=reason or "manual")

    async def rotate_key_if_due(self) -> str | None:
        return await self.keyring.rotate_if_due()

    async def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        return await self.reporter.generate_compliance_report(start, end)

    async def get_metrics(self) -> dict[str, Any]:
        return {
            "backups": await self.backup.get_metrics(),
            "counters": counters_snapshot(),
            "gauges": gauges_snapshot(),
            "durations": durations_snapshot(),
            "active_recovery": self.recovery.active_operation,
        }

    async def close(self) -> None:
        await self.audit.flush()
        self.audit.close()
        for engine in self._owned_engines:
            await engine.dispose()


def build_vault(
    settings: Settings | None = None,
    *,
    tables: Iterable[TableSpec] | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    keystore: KeyStore | None = None,
    storage: StorageBackend | None = None,
    source: SourceReader | None = None,
    target: RestoreTarget | None = None,
    audit: AuditLogger | None = None,
    retry_policy: RetryPolicy | None = None,
    clock: Callable[[], datetime] = _utc_now,
) -> BackupVault:
    """Wire every component from settings; any collaborator may be injected.

    Engines created here are disposed by ``BackupVault.close``.
    """
    settings = settings or get_settings()
    validate_settings(settings)
    specs = tuple(tables) if tables is not None else load_catalog(settings.table_catalog_path)
    owned: list[AsyncEngine] = []
    inventory_engine: AsyncEngine | None = None
    if session_factory is None:
        inventory_engine = build_engine(settings.inventory_database_url)
        owned.append(inventory_engine)
        session_factory = async_sessionmaker(inventory_engine, expire_on_commit=False)
    if source is None:
        source_engine = build_engine(settings.source_database_url)
        owned.append(source_engine)
        source = SqlSourceReader(source_engine)
    if target is None:
        target_engine = build_engine(settings.restore_target_url())
        owned.append(target_engine)
        target = SqlRestoreTarget(target_engine)
    audit = audit or AuditLogger.from_settings(settings, session_factory=session_factory)
    storage = storage or build_storage(settings)
    keyring = Keyring(
        keystore or build_keystore(settings),
        session_factory=session_factory,
        audit=audit,
        rotation_interval_days=settings.key_rotation_interval_days,
        retry_policy=retry_policy,
        clock=clock,
    )
    cipher = EnvelopeCipher(keyring, audit=audit)
    mode, retain = resolve_pii_mode(settings)
    pii = PIIProtector(
        keyring,
        session_factory=session_factory,
        mode=mode,
        retain_mappings=retain,
        audit=audit,
        clock=clock,
    )
    common: dict[str, Any] = {
        "tables": specs,
        "storage": storage,
        "session_factory": session_factory,
        "audit": audit,
        "settings": settings,
        "retry_policy": retry_policy,
        "clock": clock,
    }
    retention = RetentionEngine(**common)
    vault = BackupVault(
        settings=settings,
        tables=specs,
        session_factory=session_factory,
        keyring=keyring,
        cipher=cipher,
        pii=pii,
        storage=storage,
        audit=audit,
        backup=BackupOrchestrator(source=source, cipher=cipher, pii=pii, **common),
        recovery=RecoveryOrchestrator(cipher=cipher, pii=pii, target=target, **common),
        retention=retention,
        compliance=ComplianceEngine(cipher=cipher, pii=pii, **common),
        reporter=ComplianceReporter(
            session_factory=session_factory,
            retention=retention,
            settings=settings,
            clock=clock,
        ),
        owned_engines=owned,
        inventory_engine=inventory_engine,
    )
    logger.info(
        "vault_built storage=%s kms=%s tables=%s pii_mode=%s",
        settings.storage_provider,
        settings.kms_provider,
        len(specs),
        mode,
    )
    return vault
