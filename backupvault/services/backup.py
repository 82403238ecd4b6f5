from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import secrets
import time
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import (
    BackupCancelledError,
    BackupFailedError,
    BackupVaultError,
    CryptoUnavailableError,
    InvalidJobTransitionError,
    KeyNotFoundError,
    NoBaseBackupError,
)
from backupvault.domain.models import BackupArtifact, BackupJob
from backupvault.domain.tables import TableSpec, capture_order
from backupvault.persistence.repos import artifacts as artifact_repo
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.pii import PIIProtector
from backupvault.services.crypto.utils import json_safe, sha256_hex
from backupvault.services.payload import (
    MODE_CHANGES,
    MODE_SNAPSHOT,
    build_manifest,
    build_payload,
    change_record,
    seal_payload,
    table_checksum,
)
from backupvault.services.resilience import Bulkhead, RetryPolicy, is_transient, retry_async, storage_retry_policy
from backupvault.services.source import SourceReader, TableCapture
from backupvault.services.storage.base import TIER_STANDARD, StorageBackend, object_metadata
from backupvault.services.telemetry import increment_counter, record_duration


logger = logging.getLogger(__name__)

BACKUP_FULL = "full"
BACKUP_INCREMENTAL = "incremental"
BACKUP_DIFFERENTIAL = "differential"

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

_TRANSITIONS: dict[str, set[str]] = {
    JOB_QUEUED: {JOB_RUNNING, JOB_FAILED},
    JOB_RUNNING: {JOB_COMPLETED, JOB_FAILED},
    JOB_COMPLETED: set(),
    JOB_FAILED: set(),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_artifact_id(started_at: datetime) -> str:
    # Time-ordered ids sort lexically by capture start.
    stamp = started_at.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"bk-{stamp}Z-{secrets.token_hex(4)}"


@dataclass(frozen=True)
class JobSnapshot:
    # Read-only view handed to callers; the registry owns the mutable state.
    job_id: str
    backup_type: str
    status: str
    queued_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    artifact_id: str | None = None
    size_bytes: int | None = None
    failed_tables: tuple[str, ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    cancel_requested: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "backup_type": self.backup_type,
            "status": self.status,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "artifact_id": self.artifact_id,
            "size_bytes": self.size_bytes,
            "failed_tables": list(self.failed_tables),
            "error_code": self.error_code,
            "error_message": self.error_message,
            "cancel_requested": self.cancel_requested,
        }


class JobRegistry:
    """In-process job table with a single-writer discipline.

    Only the orchestrator mutates entries, always through ``transition``;
    everyone else reads immutable ``JobSnapshot`` values.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobSnapshot] = {}

    def create(self, backup_type: str, queued_at: datetime) -> JobSnapshot:
        snapshot = JobSnapshot(job_id=uuid4().hex, backup_type=backup_type, status=JOB_QUEUED, queued_at=queued_at)
        self._jobs[snapshot.job_id] = snapshot
        return snapshot

    def transition(self, job_id: str, status: str, **changes: Any) -> JobSnapshot:
        current = self._jobs[job_id]
        if status not in _TRANSITIONS[current.status]:
            raise InvalidJobTransitionError(f"job {job_id} cannot move from {current.status} to {status}")
        updated = replace(current, status=status, **changes)
        self._jobs[job_id] = updated
        return updated

    def request_cancel(self, job_id: str) -> bool:
        current = self._jobs.get(job_id)
        if current is None or current.status not in {JOB_QUEUED, JOB_RUNNING}:
            return False
        self._jobs[job_id] = replace(current, cancel_requested=True)
        return True

    def cancel_requested(self, job_id: str) -> bool:
        current = self._jobs.get(job_id)
        return bool(current and current.cancel_requested)

    def get(self, job_id: str) -> JobSnapshot | None:
        return self._jobs.get(job_id)

    def list(self, *, status: str | None = None) -> list[JobSnapshot]:
        jobs = sorted(self._jobs.values(), key=lambda job: job.queued_at)
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        return jobs


@dataclass(frozen=True)
class _CapturePlan:
    backup_type: str
    tables: list[TableSpec]
    since: dict[str, datetime | None]
    base_artifact_id: str | None
    # Latest manifest entry per snapshot-mode table, used to detect unchanged snapshots.
    previous_checksums: dict[str, str]


class BackupOrchestrator:
    """Drives full, incremental and differential capture jobs.

    Tables are captured on a bounded pool in tier order, PII is protected,
    and the aggregate payload is gzip-compressed, envelope-encrypted and
    uploaded before the inventory row is written. Full jobs are atomic;
    incremental and differential jobs keep the tables that succeeded and flag
    the rest for the next cycle.
    """

    def __init__(
        self,
        *,
        tables: Iterable[TableSpec],
        source: SourceReader,
        storage: StorageBackend,
        cipher: EnvelopeCipher,
        pii: PIIProtector,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        settings: Settings | None = None,
        registry: JobRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._tables = capture_order(tables)
        self._source = source
        self._storage = storage
        self._cipher = cipher
        self._pii = pii
        self._session_factory = session_factory
        self._audit = audit
        self._settings = settings or get_settings()
        self._registry = registry or JobRegistry()
        self._retry_policy = retry_policy
        self._clock = clock

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    async def perform_full(self) -> BackupArtifact:
        artifact = await self._run_job(BACKUP_FULL)
        if artifact is None:
            raise BackupFailedError("full backup captured no tables", retry_eligible=False)
        return artifact

    async def perform_incremental(self) -> BackupArtifact | None:
        return await self._run_job(BACKUP_INCREMENTAL)

    async def perform_differential(self) -> BackupArtifact | None:
        return await self._run_job(BACKUP_DIFFERENTIAL)

    def cancel_job(self, job_id: str) -> bool:
        # Takes effect at the next table-capture checkpoint.
        accepted = self._registry.request_cancel(job_id)
        logger.info("backup_cancel_requested job_id=%s accepted=%s", job_id, accepted)
        return accepted

    def get_job(self, job_id: str) -> JobSnapshot | None:
        return self._registry.get(job_id)

    def list_jobs(self, *, status: str | None = None) -> list[JobSnapshot]:
        return self._registry.list(status=status)

    async def get_metrics(self) -> dict[str, Any]:
        # Summarize persisted job history for ops dashboards.
        async with self._session_factory() as session:
            jobs = list((await session.execute(select(BackupJob))).scalars().all())
        finished = [job for job in jobs if job.status in {JOB_COMPLETED, JOB_FAILED}]
        completed = [job for job in finished if job.status == JOB_COMPLETED]
        durations = [
            (job.completed_at - job.started_at).total_seconds()
            for job in completed
            if job.started_at is not None and job.completed_at is not None
        ]
        by_type: dict[str, dict[str, int]] = {}
        for job in jobs:
            bucket = by_type.setdefault(job.backup_type, {})
            bucket[job.status] = bucket.get(job.status, 0) + 1
        return {
            "total_jobs": len(jobs),
            "completed": len(completed),
            "failed": len(finished) - len(completed),
            "running": sum(1 for job in jobs if job.status == JOB_RUNNING),
            "success_rate": (len(completed) / len(finished)) if finished else None,
            "average_duration_s": (sum(durations) / len(durations)) if durations else None,
            "bytes_written": sum(job.size_bytes or 0 for job in completed),
            "by_type": by_type,
        }

    async def _run_job(self, backup_type: str) -> BackupArtifact | None:
        job = self._registry.create(backup_type, self._clock())
        await self._persist_job(job)
        started = self._clock()
        job = self._registry.transition(job.job_id, JOB_RUNNING, started_at=started)
        await self._persist_job(job)
        logger.info("backup_job_started job_id=%s type=%s", job.job_id, backup_type)
        timer = time.monotonic()
        try:
            artifact, failed_tables = await self._execute(job.job_id, backup_type, started)
        except BackupVaultError as exc:
            await self._fail_job(job.job_id, backup_type, exc)
            raise
        except Exception as exc:
            wrapped = BackupFailedError(f"backup job crashed: {type(exc).__name__}", job_id=job.job_id)
            await self._fail_job(job.job_id, backup_type, wrapped)
            raise wrapped from exc
        finally:
            record_duration(f"backup.{backup_type}", (time.monotonic() - timer) * 1000.0)
        job = self._registry.transition(
            job.job_id,
            JOB_COMPLETED,
            completed_at=self._clock(),
            artifact_id=artifact.id if artifact else None,
            size_bytes=artifact.size_bytes if artifact else 0,
            failed_tables=tuple(failed_tables),
        )
        await self._persist_job(job)
        increment_counter(f"backup_jobs_total.{backup_type}.completed")
        if artifact is None:
            logger.info("backup_job_noop job_id=%s type=%s", job.job_id, backup_type)
            await self._audit.info(
                "backup job found no changes",
                {"job_id": job.job_id, "backup_type": backup_type},
                event_type="backup.job.noop",
                component="backup",
            )
            return None
        increment_counter("backup_bytes_written_total", artifact.size_bytes)
        await self._audit.info(
            "backup job completed",
            {
                "job_id": job.job_id,
                "artifact_id": artifact.id,
                "backup_type": backup_type,
                "size_bytes": artifact.size_bytes,
                "tables": sorted(artifact.table_manifest),
                "retry_tables": list(failed_tables),
                "key_id": artifact.encryption_key_id,
            },
            event_type="backup.job.completed",
            component="backup",
        )
        return artifact

    async def _execute(self, job_id: str, backup_type: str, started: datetime) -> tuple[BackupArtifact | None, list[str]]:
        plan = await self._plan(backup_type)
        captures, failures = await self._capture(job_id, plan)
        if failures:
            failed_tables = sorted(failures)
            if plan.backup_type == BACKUP_FULL:
                # An incomplete full backup must never be recorded as usable.
                raise BackupFailedError(
                    f"full backup failed for tables: {', '.join(failed_tables)}",
                    job_id=job_id,
                    failed_tables=failed_tables,
                    retry_eligible=all(is_transient(exc) for exc in failures.values()),
                )
            if not captures:
                raise BackupFailedError(
                    f"{backup_type} backup failed for every table",
                    job_id=job_id,
                    failed_tables=failed_tables,
                    retry_eligible=all(is_transient(exc) for exc in failures.values()),
                )
            for name in failed_tables:
                logger.warning(
                    "backup_table_deferred job_id=%s table=%s error=%s",
                    job_id,
                    name,
                    type(failures[name]).__name__,
                )
            await self._audit.warning(
                "backup tables flagged for retry",
                {"job_id": job_id, "backup_type": backup_type, "retry_tables": failed_tables},
                event_type="backup.tables.retry_scheduled",
                component="backup",
                outcome="partial",
            )
        scanned = sorted(captures)
        changed = self._changed_tables(plan, captures)
        if not changed:
            if plan.backup_type == BACKUP_FULL:
                raise BackupFailedError(
                    "full backup captured no tables", job_id=job_id, retry_eligible=False
                )
            return None, sorted(failures)
        artifact = await self._store_artifact(
            job_id=job_id,
            plan=plan,
            started=started,
            captures={name: captures[name] for name in changed},
            scanned=scanned,
            retry_tables=sorted(failures),
        )
        return artifact, sorted(failures)

    async def _plan(self, backup_type: str) -> _CapturePlan:
        if backup_type == BACKUP_FULL:
            return _CapturePlan(
                backup_type=backup_type,
                tables=list(self._tables),
                since={spec.name: None for spec in self._tables},
                base_artifact_id=None,
                previous_checksums={},
            )
        frequencies = self._settings.incremental_frequencies()
        tables = [spec for spec in self._tables if spec.frequency in frequencies]
        async with self._session_factory() as session:
            base_full = await artifact_repo.latest_available(session, artifact_types=[BACKUP_FULL])
            if base_full is None:
                raise NoBaseBackupError(f"{backup_type} backup requires an existing full backup")
            if backup_type == BACKUP_DIFFERENTIAL:
                since = {spec.name: base_full.created_at for spec in tables}
                checksums = {
                    name: entry.get("source_checksum", entry["checksum"])
                    for name, entry in (base_full.table_manifest or {}).items()
                    if entry.get("mode") == MODE_SNAPSHOT
                }
                return _CapturePlan(backup_type, tables, since, base_full.id, checksums)
            chain = await artifact_repo.list_available(session, artifact_types=[BACKUP_FULL, BACKUP_INCREMENTAL])
        chain = [artifact for artifact in chain if artifact.created_at >= base_full.created_at]
        since: dict[str, datetime | None] = {}
        checksums: dict[str, str] = {}
        for spec in tables:
            # Per-table watermark: the newest artifact that scanned this table successfully.
            scanned_by = [artifact for artifact in chain if spec.name in (artifact.scanned_tables or [])]
            since[spec.name] = scanned_by[-1].created_at if scanned_by else base_full.created_at
            holders = [artifact for artifact in chain if spec.name in (artifact.table_manifest or {})]
            if holders:
                entry = holders[-1].table_manifest[spec.name]
                checksums[spec.name] = entry.get("source_checksum", entry["checksum"])
        return _CapturePlan(backup_type, tables, since, chain[-1].id, checksums)

    async def _capture(
        self,
        job_id: str,
        plan: _CapturePlan,
    ) -> tuple[dict[str, TableCapture], dict[str, Exception]]:
        bulkhead = Bulkhead(f"backup.{job_id[:8]}", self._settings.backup_parallel_tables)

        async def _one(spec: TableSpec) -> TableCapture:
            async with bulkhead.slot():
                # Cooperative checkpoint: never start a table after cancellation.
                if self._registry.cancel_requested(job_id):
                    raise BackupCancelledError(f"backup job {job_id} cancelled", job_id=job_id, retry_eligible=True)
                return await self._capture_table(spec, plan)

        results = await asyncio.gather(*(_one(spec) for spec in plan.tables), return_exceptions=True)
        captures: dict[str, TableCapture] = {}
        failures: dict[str, Exception] = {}
        for spec, result in zip(plan.tables, results):
            if isinstance(result, BackupCancelledError):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("backup_table_failed job_id=%s table=%s", job_id, spec.name, exc_info=result)
                increment_counter("backup_table_failures_total")
                failures[spec.name] = result
            else:
                captures[spec.name] = result
        return captures, failures

    async def _capture_table(self, spec: TableSpec, plan: _CapturePlan) -> TableCapture:
        since = plan.since.get(spec.name)
        incremental = since is not None and bool(spec.timestamp_columns)
        rows = await self._source.read_table(spec, since=since if incremental else None)
        rows = json_safe(rows)
        if incremental:
            records = [change_record(spec, row) for row in rows]
            return TableCapture(table=spec.name, mode=MODE_CHANGES, records=records)
        # Tables without change tracking are re-captured whole.
        return TableCapture(table=spec.name, mode=MODE_SNAPSHOT, records=rows)

    def _changed_tables(self, plan: _CapturePlan, captures: dict[str, TableCapture]) -> list[str]:
        if plan.backup_type == BACKUP_FULL:
            return [spec.name for spec in plan.tables if spec.name in captures]
        changed: list[str] = []
        for spec in plan.tables:
            capture = captures.get(spec.name)
            if capture is None:
                continue
            if capture.mode == MODE_CHANGES:
                if capture.records:
                    changed.append(spec.name)
                continue
            # Snapshot checksums are compared pre-protection; see _store_artifact.
            previous = plan.previous_checksums.get(spec.name)
            if previous is None or previous != table_checksum(capture.records):
                changed.append(spec.name)
        return changed

    async def _protect(self, spec: TableSpec, capture: TableCapture, key_id: str | None) -> list[dict[str, Any]]:
        if capture.mode == MODE_SNAPSHOT:
            return await self._pii.protect_rows(spec, capture.records, key_id=key_id)
        rows = await self._pii.protect_rows(spec, [record["row"] for record in capture.records], key_id=key_id)
        return [{**record, "row": row} for record, row in zip(capture.records, rows)]

    async def _store_artifact(
        self,
        *,
        job_id: str,
        plan: _CapturePlan,
        started: datetime,
        captures: dict[str, TableCapture],
        scanned: list[str],
        retry_tables: list[str],
    ) -> BackupArtifact:
        artifact_id = new_artifact_id(started)
        specs = {spec.name: spec for spec in plan.tables}
        try:
            pii_key_id = await self._pii.active_key_id()
        except (CryptoUnavailableError, KeyNotFoundError) as exc:
            raise BackupFailedError(
                f"PII key unavailable: {exc}", job_id=job_id, retry_eligible=False
            ) from exc
        tables: dict[str, dict[str, Any]] = {}
        # Snapshot tables keep their pre-protection checksum so unchanged snapshots are detectable.
        raw_checksums: dict[str, str] = {}
        for name, capture in captures.items():
            if capture.mode == MODE_SNAPSHOT:
                raw_checksums[name] = table_checksum(capture.records)
            tables[name] = {"mode": capture.mode, "records": await self._protect(specs[name], capture, pii_key_id)}
        payload = build_payload(
            artifact_id=artifact_id,
            artifact_type=plan.backup_type,
            created_at=started,
            base_artifact_id=plan.base_artifact_id,
            pii_mode=self._pii.mode if any(specs[name].pii for name in captures) else None,
            pii_key_id=pii_key_id,
            tables=tables,
        )
        manifest = build_manifest(payload)
        for name, checksum in raw_checksums.items():
            manifest[name]["source_checksum"] = checksum
        try:
            blob, key_id, plaintext_bytes = await seal_payload(
                payload,
                self._cipher,
                compression_level=self._settings.backup_compression_level,
                context={"artifact_id": artifact_id, "operation": "backup"},
            )
        except (CryptoUnavailableError, KeyNotFoundError) as exc:
            # Fail closed; never fall back to an unencrypted upload.
            raise BackupFailedError(f"encryption unavailable: {exc}", job_id=job_id, retry_eligible=False) from exc
        except BackupFailedError as exc:
            exc.job_id = job_id
            raise
        storage_key = self._storage_key(artifact_id, plan.backup_type, started)
        metadata = object_metadata(
            {"artifact_id": artifact_id, "backup_type": plan.backup_type, "key_id": key_id, "job_id": job_id}
        )
        try:
            location = await retry_async(
                lambda: self._storage.put(storage_key, blob, metadata, tier=TIER_STANDARD),
                policy=self._retry_policy or storage_retry_policy(),
                retryable=is_transient,
                operation="storage.put",
            )
        except Exception as exc:
            increment_counter("backup_upload_failures_total")
            await self._audit.error(
                "backup upload failed after retries",
                {
                    "job_id": job_id,
                    "artifact_id": artifact_id,
                    "storage_key": storage_key,
                    "error": type(exc).__name__,
                },
                event_type="backup.upload.failed",
                component="backup",
                outcome="failure",
                error_code=getattr(exc, "code", None),
            )
            raise BackupFailedError(
                f"upload failed: {type(exc).__name__}",
                job_id=job_id,
                failed_tables=sorted(captures),
                retry_eligible=is_transient(exc),
            ) from exc
        artifact = BackupArtifact(
            id=artifact_id,
            artifact_type=plan.backup_type,
            status="available",
            created_at=started,
            base_artifact_id=plan.base_artifact_id,
            job_id=job_id,
            size_bytes=len(blob),
            storage_location=location,
            storage_key=storage_key,
            storage_tier=TIER_STANDARD,
            checksum_sha256=sha256_hex(blob),
            encryption_key_id=key_id,
            pii_key_id=pii_key_id if payload["pii"]["mode"] else None,
            pii_mode=payload["pii"]["mode"],
            contains_pii=any(specs[name].pii for name in captures),
            contains_critical=any(specs[name].tier == "critical" for name in captures),
            table_manifest=manifest,
            scanned_tables=scanned,
            retry_tables=retry_tables,
        )
        async with self._session_factory() as session:
            session.add(artifact)
            await session.commit()
        logger.info(
            "backup_artifact_stored artifact_id=%s type=%s tables=%s bytes=%s plaintext_bytes=%s",
            artifact_id,
            plan.backup_type,
            len(captures),
            len(blob),
            plaintext_bytes,
        )
        return artifact

    def _storage_key(self, artifact_id: str, backup_type: str, started: datetime) -> str:
        prefix = self._settings.storage_prefix.strip("/")
        day = started.astimezone(timezone.utc).strftime("%Y-%m-%d")
        key = f"{day}/{backup_type}/{artifact_id}.backup"
        return f"{prefix}/{key}" if prefix else key

    async def _fail_job(self, job_id: str, backup_type: str, exc: BackupVaultError) -> None:
        failed_tables = tuple(getattr(exc, "failed_tables", ()) or ())
        retry_eligible = getattr(exc, "retry_eligible", False)
        snapshot = self._registry.transition(
            job_id,
            JOB_FAILED,
            completed_at=self._clock(),
            failed_tables=failed_tables,
            error_code=exc.code,
            error_message=str(exc),
        )
        await self._persist_job(snapshot)
        increment_counter(f"backup_jobs_total.{backup_type}.failed")
        logger.error("backup_job_failed job_id=%s type=%s code=%s", job_id, backup_type, exc.code)
        await self._audit.error(
            "backup job failed",
            {
                "job_id": job_id,
                "backup_type": backup_type,
                "failed_tables": list(failed_tables),
                "retry_eligible": retry_eligible,
                "error": str(exc),
            },
            event_type="backup.job.failed",
            component="backup",
            outcome="failure",
            error_code=exc.code,
        )

    async def _persist_job(self, snapshot: JobSnapshot) -> None:
        async with self._session_factory() as session:
            await session.merge(
                BackupJob(
                    id=snapshot.job_id,
                    backup_type=snapshot.backup_type,
                    status=snapshot.status,
                    queued_at=snapshot.queued_at,
                    started_at=snapshot.started_at,
                    completed_at=snapshot.completed_at,
                    artifact_id=snapshot.artifact_id,
                    size_bytes=snapshot.size_bytes,
                    failed_tables=list(snapshot.failed_tables),
                    error_code=snapshot.error_code,
                    error_message=snapshot.error_message,
                    metadata_json={"cancel_requested": snapshot.cancel_requested},
                )
            )
            await session.commit()
