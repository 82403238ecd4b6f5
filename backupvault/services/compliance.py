from __future__ import annotations

import csv
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import io
import json
import logging
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import (
    BackupVaultError,
    ComplianceProcessingError,
    ComplianceRequestNotFoundError,
    ExportExpiredError,
    StorageObjectNotFoundError,
)
from backupvault.domain.models import BackupArtifact, ComplianceRequest, ExportHandle
from backupvault.domain.tables import TableSpec
from backupvault.persistence.repos import artifacts as artifact_repo
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.pii import PSEUDONYM_PREFIX, PIIProtector
from backupvault.services.crypto.utils import canonical_json, sha256_hex
from backupvault.services.payload import MODE_CHANGES, OP_DELETE, build_manifest, open_payload, seal_payload
from backupvault.services.resilience import RetryPolicy, is_transient, retry_async, storage_retry_policy
from backupvault.services.storage.base import StorageBackend, object_metadata
from backupvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REQUEST_ERASURE = "erasure"
REQUEST_PORTABILITY = "portability"
REQUEST_RECTIFICATION = "rectification"
REQUEST_RESTRICTION = "restriction"
REQUEST_TYPES = (REQUEST_ERASURE, REQUEST_PORTABILITY, REQUEST_RECTIFICATION, REQUEST_RESTRICTION)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"

OUTCOME_ERASED = "erased"
OUTCOME_SKIPPED_HOLD = "skipped-hold"
OUTCOME_FAILED = "failed"
OUTCOME_EXPORTED = "exported"
OUTCOME_RECTIFIED = "rectified"
OUTCOME_RESTRICTED = "restricted"

EXPORT_FORMATS = ("json", "csv")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ArtifactOutcome:
    artifact_id: str
    outcome: str
    records: int = 0
    detail: str | None = None


@dataclass(frozen=True)
class ErasureReport:
    subject_id: str
    outcomes: tuple[ArtifactOutcome, ...]

    @property
    def erased(self) -> list[str]:
        return [item.artifact_id for item in self.outcomes if item.outcome == OUTCOME_ERASED]

    @property
    def skipped(self) -> list[str]:
        return [item.artifact_id for item in self.outcomes if item.outcome == OUTCOME_SKIPPED_HOLD]

    @property
    def failed(self) -> list[str]:
        return [item.artifact_id for item in self.outcomes if item.outcome == OUTCOME_FAILED]

    @property
    def records_removed(self) -> int:
        return sum(item.records for item in self.outcomes if item.outcome == OUTCOME_ERASED)


@dataclass(frozen=True)
class PortabilityResult:
    handle: ExportHandle
    outcomes: tuple[ArtifactOutcome, ...]


class ComplianceEngine:
    """Processes data-subject requests against the backup inventory.

    Artifacts are rewritten in place: decrypted, filtered or corrected,
    re-encrypted under the current key and uploaded to the same storage key.
    Every request records a per-artifact outcome and only completes when none
    of them failed.
    """

    def __init__(
        self,
        *,
        tables: Iterable[TableSpec],
        storage: StorageBackend,
        cipher: EnvelopeCipher,
        pii: PIIProtector,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLogger,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._specs = {spec.name: spec for spec in tables}
        self._storage = storage
        self._cipher = cipher
        self._pii = pii
        self._session_factory = session_factory
        self._audit = audit
        self._settings = settings or get_settings()
        self._retry_policy = retry_policy
        self._clock = clock

    async def submit_request(
        self,
        request_type: str,
        subject_id: str,
        payload: dict[str, Any] | None = None,
    ) -> ComplianceRequest:
        # Scope is recorded at intake; retention holds these artifacts while the request is pending.
        scope = await self._candidate_ids()
        request = ComplianceRequest(
            id=uuid4().hex,
            request_type=request_type,
            subject_id=str(subject_id),
            requested_at=self._clock(),
            status=STATUS_PENDING,
            payload_json=payload or {},
            affected_artifact_ids=scope,
            result_log=[],
        )
        async with self._session_factory() as session:
            session.add(request)
            await session.commit()
        await self._audit.security_event(
            "compliance.request.submitted",
            {"request_id": request.id, "request_type": request_type},
            component="compliance",
        )
        return request

    async def get_request(self, request_id: str) -> ComplianceRequest:
        async with self._session_factory() as session:
            request = await session.get(ComplianceRequest, request_id)
        if request is None:
            raise ComplianceRequestNotFoundError(f"compliance request not found: {request_id}")
        return request

    async def process_compliance_request(self, request_id: str) -> ComplianceRequest:
        request = await self.get_request(request_id)
        if request.status in {STATUS_COMPLETED, STATUS_REJECTED}:
            return request
        if request.request_type not in REQUEST_TYPES:
            return await self._reject(request, f"unsupported request type: {request.request_type}")
        payload = request.payload_json or {}
        if request.request_type == REQUEST_PORTABILITY and payload.get("format", "json") not in EXPORT_FORMATS:
            return await self._reject(request, f"unsupported export format: {payload.get('format')}")
        if request.request_type == REQUEST_RECTIFICATION and not isinstance(payload.get("updates"), dict):
            return await self._reject(request, "rectification requires an updates map")

        # Record scope before touching artifacts so retention holds them while pending.
        candidates = await self._candidate_ids()
        await self._update_request(request.id, affected_artifact_ids=candidates)

        extra: dict[str, Any] = {}
        if request.request_type == REQUEST_ERASURE:
            outcomes = list((await self.process_erasure(request.subject_id, request_id=request.id)).outcomes)
        elif request.request_type == REQUEST_PORTABILITY:
            result = await self.process_portability(
                request.subject_id,
                payload.get("format", "json"),
                request_id=request.id,
            )
            outcomes = list(result.outcomes)
            extra["export_handle_id"] = result.handle.id
            extra["expires_at"] = result.handle.expires_at.isoformat()
        elif request.request_type == REQUEST_RECTIFICATION:
            outcomes = await self.process_rectification(request.subject_id, payload["updates"], request_id=request.id)
        else:
            outcomes = await self.process_restriction(request.subject_id, request_id=request.id)

        result_log = [asdict(item) for item in outcomes]
        if extra:
            result_log.append({"summary": extra})
        failed = [item.artifact_id for item in outcomes if item.outcome == OUTCOME_FAILED]
        if failed:
            await self._update_request(request.id, result_log=result_log)
            increment_counter("compliance_requests_total.failed")
            await self._audit.error(
                "compliance request has failed artifacts",
                {"request_id": request.id, "request_type": request.request_type, "failed_artifacts": failed},
                event_type="compliance.request.failed",
                component="compliance",
                outcome="failure",
                error_code=ComplianceProcessingError.code,
            )
            raise ComplianceProcessingError(request.id, failed)
        await self._update_request(
            request.id,
            result_log=result_log,
            status=STATUS_COMPLETED,
            completed_at=self._clock(),
        )
        increment_counter("compliance_requests_total.completed")
        await self._audit.security_event(
            "compliance.request.completed",
            {"request_id": request.id, "request_type": request.request_type, "artifacts": len(outcomes)},
            component="compliance",
        )
        return await self.get_request(request.id)

    async def process_erasure(self, subject_id: str, *, request_id: str | None = None) -> ErasureReport:
        outcomes: list[ArtifactOutcome] = []
        stripped_pairs: set[tuple[str, str]] = set()
        retained_pairs: set[tuple[str, str]] = set()
        for artifact in await self._candidates():
            if artifact.legal_hold:
                logger.info("erasure_skipped_hold artifact_id=%s", artifact.id)
                await self._audit.info(
                    "erasure skipped artifact under legal hold",
                    {"artifact_id": artifact.id, "request_id": request_id, "reason": artifact.legal_hold_reason},
                    event_type="compliance.erasure.skipped",
                    component="compliance",
                )
                outcomes.append(ArtifactOutcome(artifact.id, OUTCOME_SKIPPED_HOLD, detail="legal_hold"))
                continue
            outcome = await self._rewrite(
                artifact,
                request_id=request_id,
                operation="erasure",
                mutate=lambda payload, art=artifact: self._strip_subject(
                    art, payload, subject_id, stripped_pairs, retained_pairs
                ),
                success=OUTCOME_ERASED,
            )
            outcomes.append(outcome)
        report = ErasureReport(str(subject_id), tuple(outcomes))
        if not report.failed and not report.skipped:
            # Held or failed artifacts may still reference these pseudonyms.
            removed = await self._pii.delete_mappings(stripped_pairs - retained_pairs)
        else:
            removed = 0
        increment_counter("compliance_erasure_records_total", report.records_removed)
        await self._audit.security_event(
            "compliance.erasure",
            {
                "request_id": request_id,
                "artifacts_erased": len(report.erased),
                "artifacts_skipped": len(report.skipped),
                "artifacts_failed": len(report.failed),
                "records_removed": report.records_removed,
                "mappings_removed": removed,
            },
            outcome="failure" if report.failed else "success",
            component="compliance",
        )
        return report

    async def process_portability(
        self,
        subject_id: str,
        export_format: str = "json",
        *,
        request_id: str | None = None,
    ) -> PortabilityResult:
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"unsupported export format: {export_format}")
        outcomes: list[ArtifactOutcome] = []
        seen: set[tuple[str, bytes]] = set()
        collected: dict[str, list[dict[str, Any]]] = {}
        # Newest artifacts first so the latest version of each record wins.
        for artifact in reversed(await self._candidates()):
            try:
                payload = await self._load(artifact, request_id=request_id, operation="portability")
                matched = await self._subject_rows(artifact, payload, subject_id, seen)
            except Exception as exc:  # noqa: BLE001 - recorded as a failed per-artifact outcome
                logger.warning("portability_artifact_failed artifact_id=%s", artifact.id, exc_info=exc)
                outcomes.append(ArtifactOutcome(artifact.id, OUTCOME_FAILED, detail=type(exc).__name__))
                continue
            count = 0
            for name, rows in matched.items():
                collected.setdefault(name, []).extend(rows)
                count += len(rows)
            outcomes.append(ArtifactOutcome(artifact.id, OUTCOME_EXPORTED, records=count))
        for name, rows in collected.items():
            collected[name] = await self._pii.reveal_rows(self._specs[name], rows)
        now = self._clock()
        body = self._render_export(subject_id, export_format, collected, now)
        handle_id = uuid4().hex
        prefix = self._settings.export_prefix.strip("/")
        storage_key = f"{prefix}/{handle_id}.{export_format}.enc" if prefix else f"{handle_id}.{export_format}.enc"
        blob, key_id = await self._cipher.encrypt(body, context={"operation": "portability", "request_id": request_id})
        await retry_async(
            lambda: self._storage.put(storage_key, blob, object_metadata({"export_id": handle_id, "key_id": key_id})),
            policy=self._retry_policy or storage_retry_policy(),
            retryable=is_transient,
            operation="storage.put",
        )
        handle = ExportHandle(
            id=handle_id,
            request_id=request_id,
            subject_id=str(subject_id),
            export_format=export_format,
            storage_key=storage_key,
            encryption_key_id=key_id,
            size_bytes=len(blob),
            record_count=sum(len(rows) for rows in collected.values()),
            created_at=now,
            expires_at=now + timedelta(hours=self._settings.export_ttl_hours),
        )
        async with self._session_factory() as session:
            session.add(handle)
            await session.commit()
        await self._audit.security_event(
            "compliance.portability",
            {
                "request_id": request_id,
                "export_id": handle_id,
                "format": export_format,
                "records": handle.record_count,
                "bytes": handle.size_bytes,
                "key_id": key_id,
                "expires_at": handle.expires_at,
            },
            outcome="failure" if any(item.outcome == OUTCOME_FAILED for item in outcomes) else "success",
            component="compliance",
        )
        return PortabilityResult(handle, tuple(outcomes))

    async def process_rectification(
        self,
        subject_id: str,
        updates: dict[str, dict[str, Any]],
        *,
        request_id: str | None = None,
    ) -> list[ArtifactOutcome]:
        unknown = sorted(name for name in updates if name not in self._specs)
        if unknown:
            raise ValueError(f"rectification names unknown tables: {', '.join(unknown)}")
        outcomes: list[ArtifactOutcome] = []
        for artifact in await self._candidates():
            if not set(updates) & set(artifact.table_manifest or {}):
                continue
            if artifact.legal_hold:
                outcomes.append(ArtifactOutcome(artifact.id, OUTCOME_SKIPPED_HOLD, detail="legal_hold"))
                continue
            outcome = await self._rewrite(
                artifact,
                request_id=request_id,
                operation="rectification",
                mutate=lambda payload, art=artifact: self._rectify(art, payload, subject_id, updates),
                success=OUTCOME_RECTIFIED,
            )
            outcomes.append(outcome)
        await self._audit.security_event(
            "compliance.rectification",
            {
                "request_id": request_id,
                "tables": sorted(updates),
                "artifacts": len(outcomes),
                "records": sum(item.records for item in outcomes),
            },
            outcome="failure" if any(item.outcome == OUTCOME_FAILED for item in outcomes) else "success",
            component="compliance",
        )
        return outcomes

    async def process_restriction(self, subject_id: str, *, request_id: str | None = None) -> list[ArtifactOutcome]:
        # Restricted artifacts are held by retention until the restriction is lifted.
        candidates = await self._candidate_ids()
        if candidates:
            async with self._session_factory() as session:
                await session.execute(
                    update(BackupArtifact)
                    .where(BackupArtifact.id.in_(candidates))
                    .values(processing_restricted=True)
                )
                await session.commit()
        await self._audit.security_event(
            "compliance.restriction",
            {"request_id": request_id, "artifacts": len(candidates)},
            component="compliance",
        )
        return [ArtifactOutcome(artifact_id, OUTCOME_RESTRICTED) for artifact_id in candidates]

    async def fetch_export(self, handle_id: str) -> tuple[ExportHandle, bytes]:
        async with self._session_factory() as session:
            handle = await session.get(ExportHandle, handle_id)
        if handle is None or handle.purged_at is not None:
            raise ExportExpiredError(f"export {handle_id} is not available")
        if handle.expires_at <= self._clock():
            raise ExportExpiredError(f"export {handle_id} expired at {handle.expires_at.isoformat()}")
        blob = await retry_async(
            lambda: self._storage.get(handle.storage_key),
            policy=self._retry_policy or storage_retry_policy(),
            retryable=is_transient,
            operation="storage.get",
        )
        body = await self._cipher.decrypt(blob, handle.encryption_key_id, context={"export_id": handle_id})
        await self._audit.security_event(
            "compliance.export.fetched",
            {"export_id": handle_id, "bytes": len(body)},
            component="compliance",
        )
        return handle, body

    async def purge_expired_exports(self, *, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        async with self._session_factory() as session:
            result = await session.execute(
                select(ExportHandle).where(ExportHandle.expires_at <= now, ExportHandle.purged_at.is_(None))
            )
            expired = list(result.scalars().all())
        purged: list[str] = []
        for handle in expired:
            try:
                await self._storage.delete(handle.storage_key)
            except StorageObjectNotFoundError:
                logger.info("export_already_missing export_id=%s", handle.id)
            except Exception as exc:  # noqa: BLE001 - retried on the next purge cycle
                logger.warning("export_purge_failed export_id=%s", handle.id, exc_info=exc)
                continue
            async with self._session_factory() as session:
                await session.execute(update(ExportHandle).where(ExportHandle.id == handle.id).values(purged_at=now))
                await session.commit()
            purged.append(handle.id)
        if purged:
            await self._audit.security_event(
                "compliance.export.purged",
                {"exports": purged},
                component="compliance",
            )
        return purged

    async def _candidates(self) -> list[BackupArtifact]:
        # Any artifact carrying a table with subject columns may hold the subject's records.
        subject_tables = {name for name, spec in self._specs.items() if spec.subject_fields}
        async with self._session_factory() as session:
            inventory = await artifact_repo.list_available(session)
        return [artifact for artifact in inventory if subject_tables & set(artifact.table_manifest or {})]

    async def _candidate_ids(self) -> list[str]:
        return [artifact.id for artifact in await self._candidates()]

    async def _load(self, artifact: BackupArtifact, *, request_id: str | None, operation: str) -> dict[str, Any]:
        blob = await retry_async(
            lambda: self._storage.get(artifact.storage_key),
            policy=self._retry_policy or storage_retry_policy(),
            retryable=is_transient,
            operation="storage.get",
        )
        return await open_payload(
            blob,
            artifact,
            self._cipher,
            context={"artifact_id": artifact.id, "operation": operation, "request_id": request_id},
        )

    async def _subject_matcher(self, artifact: BackupArtifact, spec: TableSpec, subject_id: str) -> Callable[[dict[str, Any]], bool]:
        tokens = {
            field: await self._pii.subject_tokens(field, subject_id, key_id=artifact.pii_key_id)
            for field in spec.subject_fields
        }

        def _matches(row: dict[str, Any]) -> bool:
            for field, accepted in tokens.items():
                value = row.get(field)
                if value is not None and str(value) in accepted:
                    return True
            return False

        return _matches

    async def _subject_rows(
        self,
        artifact: BackupArtifact,
        payload: dict[str, Any],
        subject_id: str,
        seen: set[tuple[str, bytes]],
    ) -> dict[str, list[dict[str, Any]]]:
        matched: dict[str, list[dict[str, Any]]] = {}
        for name, table in payload["tables"].items():
            spec = self._specs.get(name)
            if spec is None or not spec.subject_fields:
                continue
            matches = await self._subject_matcher(artifact, spec, subject_id)
            # Later records in a change set supersede earlier ones.
            records = list(reversed(table["records"])) if table["mode"] == MODE_CHANGES else table["records"]
            for record in records:
                row = record["row"] if table["mode"] == MODE_CHANGES else record
                if not matches(row):
                    continue
                key = (name, canonical_json(row.get(spec.primary_key)))
                if key in seen:
                    continue
                seen.add(key)
                if table["mode"] == MODE_CHANGES and record.get("op") == OP_DELETE:
                    continue
                matched.setdefault(name, []).append(row)
        return matched

    async def _strip_subject(
        self,
        artifact: BackupArtifact,
        payload: dict[str, Any],
        subject_id: str,
        stripped_pairs: set[tuple[str, str]],
        retained_pairs: set[tuple[str, str]],
    ) -> tuple[int, set[str]]:
        removed = 0
        touched: set[str] = set()
        for name, table in payload["tables"].items():
            spec = self._specs.get(name)
            if spec is None:
                continue
            matches = await self._subject_matcher(artifact, spec, subject_id) if spec.subject_fields else None
            kept: list[dict[str, Any]] = []
            for record in table["records"]:
                row = record["row"] if table["mode"] == MODE_CHANGES else record
                pairs = {
                    (row[field], field)
                    for field in spec.pii_fields
                    if isinstance(row.get(field), str) and row[field].startswith(PSEUDONYM_PREFIX)
                }
                if matches is not None and matches(row):
                    stripped_pairs.update(pairs)
                    removed += 1
                    continue
                retained_pairs.update(pairs)
                kept.append(record)
            if len(kept) != len(table["records"]):
                table["records"] = kept
                touched.add(name)
        return removed, touched

    async def _rectify(
        self,
        artifact: BackupArtifact,
        payload: dict[str, Any],
        subject_id: str,
        updates: dict[str, dict[str, Any]],
    ) -> tuple[int, set[str]]:
        changed = 0
        touched: set[str] = set()
        for name, fields in updates.items():
            table = payload["tables"].get(name)
            spec = self._specs[name]
            if table is None or not spec.subject_fields:
                continue
            matches = await self._subject_matcher(artifact, spec, subject_id)
            protected: dict[str, Any] = {}
            for field, value in fields.items():
                if field in spec.pii_fields:
                    # Keep the artifact's protection scheme so correlation still works.
                    protected[field] = await self._pii.protect_value(
                        field, value, key_id=artifact.pii_key_id, mode=artifact.pii_mode
                    )
                else:
                    protected[field] = value
            for record in table["records"]:
                row = record["row"] if table["mode"] == MODE_CHANGES else record
                if matches(row):
                    row.update(protected)
                    changed += 1
                    touched.add(name)
        return changed, touched

    async def _rewrite(
        self,
        artifact: BackupArtifact,
        *,
        request_id: str | None,
        operation: str,
        mutate: Callable[[dict[str, Any]], Any],
        success: str,
    ) -> ArtifactOutcome:
        claim = f"{operation}:{request_id or uuid4().hex}"
        async with self._session_factory() as session:
            result = await session.execute(
                update(BackupArtifact)
                .where(BackupArtifact.id == artifact.id, BackupArtifact.in_use_by.is_(None))
                .values(in_use_by=claim)
            )
            await session.commit()
        if result.rowcount != 1:
            return ArtifactOutcome(artifact.id, OUTCOME_FAILED, detail="artifact in use")
        try:
            payload = await self._load(artifact, request_id=request_id, operation=operation)
            count, touched = await mutate(payload)
            if not touched:
                return ArtifactOutcome(artifact.id, success, records=0)
            manifest = build_manifest(payload)
            for name, entry in (artifact.table_manifest or {}).items():
                if name not in touched and "source_checksum" in entry and name in manifest:
                    manifest[name]["source_checksum"] = entry["source_checksum"]
            blob, key_id, _ = await seal_payload(
                payload,
                self._cipher,
                compression_level=self._settings.backup_compression_level,
                context={"artifact_id": artifact.id, "operation": operation, "request_id": request_id},
            )
            location = await retry_async(
                lambda: self._storage.put(
                    artifact.storage_key,
                    blob,
                    object_metadata({"artifact_id": artifact.id, "key_id": key_id, "rewritten_by": operation}),
                    tier=artifact.storage_tier,
                ),
                policy=self._retry_policy or storage_retry_policy(),
                retryable=is_transient,
                operation="storage.put",
            )
            async with self._session_factory() as session:
                await session.execute(
                    update(BackupArtifact)
                    .where(BackupArtifact.id == artifact.id)
                    .values(
                        table_manifest=manifest,
                        size_bytes=len(blob),
                        checksum_sha256=sha256_hex(blob),
                        encryption_key_id=key_id,
                        storage_location=location,
                    )
                )
                await session.commit()
            logger.info(
                "artifact_rewritten artifact_id=%s operation=%s records=%s tables=%s",
                artifact.id,
                operation,
                count,
                len(touched),
            )
            return ArtifactOutcome(artifact.id, success, records=count)
        except (BackupVaultError, ValueError, OSError) as exc:
            logger.warning("artifact_rewrite_failed artifact_id=%s operation=%s", artifact.id, operation, exc_info=exc)
            return ArtifactOutcome(artifact.id, OUTCOME_FAILED, detail=f"{type(exc).__name__}: {exc}")
        finally:
            async with self._session_factory() as session:
                await session.execute(
                    update(BackupArtifact)
                    .where(BackupArtifact.id == artifact.id, BackupArtifact.in_use_by == claim)
                    .values(in_use_by=None)
                )
                await session.commit()

    def _render_export(
        self,
        subject_id: str,
        export_format: str,
        tables: dict[str, list[dict[str, Any]]],
        generated_at: datetime,
    ) -> bytes:
        if export_format == "json":
            document = {
                "subject_id": str(subject_id),
                "generated_at": generated_at.isoformat(),
                "tables": {name: rows for name, rows in sorted(tables.items())},
            }
            return canonical_json(document)
        # Long format keeps heterogeneous tables in one CSV.
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["table", "record_key", "field", "value"])
        for name, rows in sorted(tables.items()):
            pk = self._specs[name].primary_key
            for row in rows:
                for field in sorted(row):
                    value = row[field]
                    rendered = value if isinstance(value, str) else json.dumps(value, sort_keys=True, default=str)
                    writer.writerow([name, row.get(pk), field, rendered])
        return buffer.getvalue().encode("utf-8")

    async def _update_request(self, request_id: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(update(ComplianceRequest).where(ComplianceRequest.id == request_id).values(**values))
            await session.commit()

    async def _reject(self, request: ComplianceRequest, reason: str) -> ComplianceRequest:
        await self._update_request(
            request.id,
            status=STATUS_REJECTED,
            rejection_reason=reason,
            completed_at=self._clock(),
        )
        await self._audit.security_event(
            "compliance.request.rejected",
            {"request_id": request.id, "request_type": request.request_type, "reason": reason},
            outcome="rejected",
            component="compliance",
        )
        return await self.get_request(request.id)
