from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable, Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import (
    ArtifactNotFoundError,
    BackupVaultError,
    BrokenChainError,
    NoBaseBackupError,
    RecoveryInProgressError,
    RestoreFailedError,
    TablesNotInArtifactError,
)
from backupvault.domain.models import BackupArtifact, RecoveryLock, RecoveryOperation
from backupvault.domain.tables import TableSpec, restore_order
from backupvault.persistence.repos import artifacts as artifact_repo
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.pii import PIIProtector
from backupvault.services.crypto.utils import canonical_json
from backupvault.services.payload import MODE_CHANGES, OP_DELETE, change_time, open_payload
from backupvault.services.resilience import RetryPolicy, is_transient, retry_async, storage_retry_policy
from backupvault.services.source import RestoreTarget
from backupvault.services.storage.base import StorageBackend
from backupvault.services.telemetry import increment_counter, record_duration


logger = logging.getLogger(__name__)

STRATEGY_COMPLETE = "complete"
STRATEGY_POINT_IN_TIME = "point-in-time"
STRATEGY_SELECTIVE = "selective"

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_ROLLED_BACK = "rolled-back"

_LOCK_ROW_ID = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecoveryResult:
    operation_id: str
    strategy: str
    status: str
    source_artifact_ids: tuple[str, ...]
    tables: tuple[str, ...]
    verification: dict[str, dict[str, Any]]
    started_at: datetime
    completed_at: datetime
    target_timestamp: datetime | None = None

    @property
    def verified(self) -> bool:
        return all(entry["matched"] for entry in self.verification.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "strategy": self.strategy,
            "status": self.status,
            "source_artifact_ids": list(self.source_artifact_ids),
            "tables": list(self.tables),
            "verification": self.verification,
            "verified": self.verified,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "target_timestamp": self.target_timestamp.isoformat() if self.target_timestamp else None,
        }


@dataclass
class _Step:
    # One artifact's contribution to a restore, already filtered and revealed.
    artifact: BackupArtifact
    payload: dict[str, Any] | None = None
    cutoff: datetime | None = None
    # Snapshot-mode tables inside an incremental apply only when the artifact precedes the cutoff.
    include_snapshots: bool = True


@dataclass
class _RestorePlan:
    strategy: str
    steps: list[_Step]
    tables: list[str]
    target_timestamp: datetime | None = None
    artifact_ids: list[str] = field(default_factory=list)


class RecoveryOrchestrator:
    """Restores the target database from inventory artifacts.

    Only one restore runs at a time. The in-process guard is checked and set
    before the first await so concurrent callers in the same loop fail fast,
    and a compare-and-swap on the ``recovery_lock`` row extends the guarantee
    across processes. Source artifacts are marked in use for the duration so
    retention never deletes them mid-restore.
    """

    def __init__(
        self,
        *,
        tables: Iterable[TableSpec],
        storage: StorageBackend,
        cipher: EnvelopeCipher,
        pii: PIIProtector,
        target: RestoreTarget,
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
        self._target = target
        self._session_factory = session_factory
        self._audit = audit
        self._settings = settings or get_settings()
        self._retry_policy = retry_policy
        self._clock = clock
        self._active: str | None = None

    @property
    def active_operation(self) -> str | None:
        return self._active

    async def restore_complete(self, artifact_id: str, *, reveal_pii: bool = True) -> RecoveryResult:
        async def _plan(session: AsyncSession) -> _RestorePlan:
            chain = await self._resolve_chain(session, artifact_id)
            tables = sorted({name for artifact in chain for name in (artifact.table_manifest or {})})
            return _RestorePlan(STRATEGY_COMPLETE, [_Step(artifact) for artifact in chain], tables)

        return await self._run(STRATEGY_COMPLETE, _plan, reveal_pii=reveal_pii)

    async def restore_selective(
        self,
        artifact_id: str,
        tables: Iterable[str],
        *,
        reveal_pii: bool = True,
    ) -> RecoveryResult:
        requested = sorted(set(tables))
        if not requested:
            raise ValueError("selective restore needs at least one table")

        async def _plan(session: AsyncSession) -> _RestorePlan:
            artifact = await artifact_repo.require_artifact(session, artifact_id)
            missing = [name for name in requested if name not in (artifact.table_manifest or {})]
            if missing:
                raise TablesNotInArtifactError(artifact_id, missing)
            chain = await self._resolve_chain(session, artifact_id)
            return _RestorePlan(STRATEGY_SELECTIVE, [_Step(item) for item in chain], requested)

        return await self._run(STRATEGY_SELECTIVE, _plan, reveal_pii=reveal_pii, table_subset=requested)

    async def restore_point_in_time(self, target_timestamp: datetime, *, reveal_pii: bool = True) -> RecoveryResult:
        if target_timestamp.tzinfo is None:
            target_timestamp = target_timestamp.replace(tzinfo=timezone.utc)

        async def _plan(session: AsyncSession) -> _RestorePlan:
            base = await artifact_repo.latest_available(
                session, artifact_types=["full"], created_before=target_timestamp
            )
            if base is None:
                raise NoBaseBackupError(f"no full backup at or before {target_timestamp.isoformat()}")
            later = await artifact_repo.list_created_after(
                session, created_after=base.created_at, artifact_types=["incremental"]
            )
            # Incrementals taken after the next full backup belong to that newer chain.
            newer_fulls = await artifact_repo.list_created_after(
                session, created_after=base.created_at, artifact_types=["full"]
            )
            if newer_fulls:
                horizon = newer_fulls[0].created_at
                later = [artifact for artifact in later if artifact.created_at < horizon]
            steps = [_Step(base)]
            by_base: dict[str, list[BackupArtifact]] = {}
            for artifact in later:
                if artifact.base_artifact_id:
                    by_base.setdefault(artifact.base_artifact_id, []).append(artifact)
            previous = base
            while previous.created_at < target_timestamp:
                successors = by_base.get(previous.id, [])
                if not successors:
                    break
                # An incremental holds changes made after its predecessor was captured.
                current = successors[0]
                steps.append(
                    _Step(
                        current,
                        cutoff=target_timestamp,
                        include_snapshots=current.created_at <= target_timestamp,
                    )
                )
                previous = current
            reached = {step.artifact.id for step in steps}
            if previous.created_at < target_timestamp:
                stranded = [
                    artifact.id
                    for artifact in later
                    if artifact.id not in reached and artifact.created_at > previous.created_at
                ]
                if stranded:
                    raise BrokenChainError(
                        f"incremental chain from {base.id} breaks after {previous.id}; "
                        f"unreachable: {', '.join(stranded)}"
                    )
            tables = sorted(base.table_manifest or {})
            return _RestorePlan(STRATEGY_POINT_IN_TIME, steps, tables, target_timestamp=target_timestamp)

        return await self._run(
            STRATEGY_POINT_IN_TIME,
            _plan,
            reveal_pii=reveal_pii,
            target_timestamp=target_timestamp,
        )

    async def check_stuck_recovery(self, *, now: datetime | None = None) -> list[str]:
        # Restores have no overall timeout; long runners are surfaced to operators instead.
        now = now or self._clock()
        threshold = now - timedelta(seconds=self._settings.recovery_stuck_after_s)
        async with self._session_factory() as session:
            result = await session.execute(
                select(RecoveryOperation).where(
                    RecoveryOperation.status == STATUS_RUNNING,
                    RecoveryOperation.started_at <= threshold,
                )
            )
            stuck = list(result.scalars().all())
        for operation in stuck:
            await self._audit.warning(
                "recovery operation appears stuck",
                {
                    "operation_id": operation.id,
                    "strategy": operation.strategy,
                    "started_at": operation.started_at,
                    "running_s": int((now - operation.started_at).total_seconds()),
                },
                event_type="recovery.stuck",
                component="recovery",
                outcome="degraded",
            )
        return [operation.id for operation in stuck]

    async def release_stale_lock(self, *, force: bool = False) -> bool:
        """Clear the global restore lock left behind by a crashed process.

        Without ``force`` the lock is released only when its holder is no
        longer running or has exceeded the stuck threshold.
        """
        now = self._clock()
        async with self._session_factory() as session:
            lock = await session.get(RecoveryLock, _LOCK_ROW_ID)
            if lock is None or lock.holder is None:
                return False
            holder = lock.holder
            operation = await session.get(RecoveryOperation, holder)
            stale = operation is None or operation.status != STATUS_RUNNING
            if operation is not None and operation.status == STATUS_RUNNING:
                stale = operation.started_at <= now - timedelta(seconds=self._settings.recovery_stuck_after_s)
            if not (stale or force):
                return False
            if holder == self._active:
                return False
            lock.holder = None
            lock.acquired_at = None
            if operation is not None and operation.status == STATUS_RUNNING:
                operation.status = STATUS_FAILED
                operation.completed_at = now
                operation.error_code = RestoreFailedError.code
                operation.error_message = "restore lock released by operator"
            await session.execute(
                update(BackupArtifact).where(BackupArtifact.in_use_by == holder).values(in_use_by=None)
            )
            await session.commit()
        await self._audit.warning(
            "recovery lock released",
            {"operation_id": holder, "forced": force},
            event_type="recovery.lock.released",
            component="recovery",
        )
        return True

    async def _run(
        self,
        strategy: str,
        planner: Callable[[AsyncSession], Any],
        *,
        reveal_pii: bool,
        table_subset: list[str] | None = None,
        target_timestamp: datetime | None = None,
    ) -> RecoveryResult:
        # Checked and claimed synchronously; no await may sit between the test and the set.
        if self._active is not None:
            increment_counter("restore_rejected_total")
            raise RecoveryInProgressError(f"recovery {self._active} is already running")
        operation_id = uuid4().hex
        self._active = operation_id
        started = self._clock()
        timer = time.monotonic()
        try:
            if not await self._acquire_lock(operation_id, started):
                increment_counter("restore_rejected_total")
                raise RecoveryInProgressError("another process holds the recovery lock")
            try:
                return await self._execute(
                    operation_id,
                    strategy,
                    planner,
                    started=started,
                    reveal_pii=reveal_pii,
                    table_subset=table_subset,
                    target_timestamp=target_timestamp,
                )
            finally:
                await self._release(operation_id)
        finally:
            self._active = None
            record_duration(f"restore.{strategy}", (time.monotonic() - timer) * 1000.0)

    async def _execute(
        self,
        operation_id: str,
        strategy: str,
        planner: Callable[[AsyncSession], Any],
        *,
        started: datetime,
        reveal_pii: bool,
        table_subset: list[str] | None,
        target_timestamp: datetime | None,
    ) -> RecoveryResult:
        async with self._session_factory() as session:
            session.add(
                RecoveryOperation(
                    id=operation_id,
                    strategy=strategy,
                    source_artifact_ids=[],
                    target_timestamp=target_timestamp,
                    table_subset=table_subset,
                    status=STATUS_RUNNING,
                    started_at=started,
                )
            )
            await session.commit()
        logger.info("recovery_started operation_id=%s strategy=%s", operation_id, strategy)
        plan: _RestorePlan | None = None
        try:
            async with self._session_factory() as session:
                plan = await planner(session)
            plan.artifact_ids = [step.artifact.id for step in plan.steps]
            await self._mark_in_use(operation_id, plan.artifact_ids)
            for step in plan.steps:
                step.payload = await self._load(step.artifact, operation_id)
            order = restore_order(self._specs.values(), plan.tables)
            expected = self._expected_counts(plan, order)
            if reveal_pii:
                await self._reveal(plan, order)
            try:
                await self._apply(plan, order)
            except BackupVaultError:
                raise
            except Exception as exc:
                raise RestoreFailedError(f"restore transaction rolled back: {type(exc).__name__}: {exc}") from exc
        except BackupVaultError as exc:
            rolled_back = isinstance(exc, RestoreFailedError)
            await self._finish(
                operation_id,
                STATUS_ROLLED_BACK if rolled_back else STATUS_FAILED,
                artifact_ids=plan.artifact_ids if plan else [],
                error=exc,
            )
            increment_counter(f"restore_total.{strategy}.failed")
            await self._audit.error(
                "recovery failed",
                {
                    "operation_id": operation_id,
                    "strategy": strategy,
                    "artifact_ids": plan.artifact_ids if plan else [],
                    "tables": table_subset,
                    "rolled_back": rolled_back,
                    "error": str(exc),
                },
                event_type="recovery.failed",
                component="recovery",
                outcome="failure",
                error_code=exc.code,
            )
            raise
        verification = await self._verify(expected)
        completed = self._clock()
        await self._finish(operation_id, STATUS_COMPLETED, artifact_ids=plan.artifact_ids, verification=verification)
        increment_counter(f"restore_total.{strategy}.completed")
        mismatched = sorted(name for name, entry in verification.items() if not entry["matched"])
        if mismatched:
            # Committed already; mismatches are reported for review, not rolled back.
            await self._audit.warning(
                "recovery verification mismatch",
                {"operation_id": operation_id, "tables": mismatched, "verification": verification},
                event_type="recovery.verification.mismatch",
                component="recovery",
                outcome="degraded",
            )
        await self._audit.info(
            "recovery completed",
            {
                "operation_id": operation_id,
                "strategy": strategy,
                "artifact_ids": plan.artifact_ids,
                "tables": order,
                "target_timestamp": target_timestamp,
                "verified": not mismatched,
            },
            event_type="recovery.completed",
            component="recovery",
        )
        logger.info(
            "recovery_completed operation_id=%s strategy=%s tables=%s mismatched=%s",
            operation_id,
            strategy,
            len(order),
            len(mismatched),
        )
        return RecoveryResult(
            operation_id=operation_id,
            strategy=strategy,
            status=STATUS_COMPLETED,
            source_artifact_ids=tuple(plan.artifact_ids),
            tables=tuple(order),
            verification=verification,
            started_at=started,
            completed_at=completed,
            target_timestamp=target_timestamp,
        )

    async def _resolve_chain(self, session: AsyncSession, artifact_id: str) -> list[BackupArtifact]:
        # Walk base links back to the full artifact; any missing link is a broken chain.
        artifact = await artifact_repo.require_artifact(session, artifact_id)
        chain = [artifact]
        current = artifact
        while current.artifact_type != "full":
            if not current.base_artifact_id:
                raise BrokenChainError(f"artifact {current.id} has no base artifact")
            try:
                current = await artifact_repo.require_artifact(session, current.base_artifact_id)
            except ArtifactNotFoundError as exc:
                raise BrokenChainError(
                    f"artifact {chain[-1].id} depends on missing artifact {chain[-1].base_artifact_id}"
                ) from exc
            chain.append(current)
        chain.reverse()
        return chain

    async def _load(self, artifact: BackupArtifact, operation_id: str) -> dict[str, Any]:
        try:
            blob = await retry_async(
                lambda: self._storage.get(artifact.storage_key),
                policy=self._retry_policy or storage_retry_policy(),
                retryable=is_transient,
                operation="storage.get",
            )
        except BackupVaultError:
            raise
        except Exception as exc:
            raise RestoreFailedError(f"unable to download artifact {artifact.id}: {type(exc).__name__}") from exc
        return await open_payload(
            blob,
            artifact,
            self._cipher,
            context={"artifact_id": artifact.id, "operation": "restore", "operation_id": operation_id},
        )

    def _step_records(self, step: _Step, name: str) -> tuple[str, list[dict[str, Any]]] | None:
        if step.payload is None:
            raise RestoreFailedError(f"artifact {step.artifact.id} was not loaded before apply")
        table = step.payload["tables"].get(name)
        if table is None:
            return None
        mode = table["mode"]
        records = table["records"]
        if mode != MODE_CHANGES:
            if not step.include_snapshots:
                return None
            return mode, records
        if step.cutoff is not None:
            cutoff = step.cutoff
            kept = []
            for record in records:
                stamp = change_time(record)
                if stamp is None:
                    if step.include_snapshots:
                        kept.append(record)
                elif stamp <= cutoff:
                    kept.append(record)
            records = kept
        return mode, records

    async def _reveal(self, plan: _RestorePlan, order: list[str]) -> None:
        for step in plan.steps:
            if step.payload is None:
                raise RestoreFailedError(f"artifact {step.artifact.id} was not loaded before apply")
            for name in order:
                table = step.payload["tables"].get(name)
                if table is None:
                    continue
                spec = self._specs[name]
                if table["mode"] == MODE_CHANGES:
                    rows = await self._pii.reveal_rows(spec, [record["row"] for record in table["records"]])
                    table["records"] = [{**record, "row": row} for record, row in zip(table["records"], rows)]
                else:
                    table["records"] = await self._pii.reveal_rows(spec, table["records"])

    def _expected_counts(self, plan: _RestorePlan, order: list[str]) -> dict[str, int]:
        # Merge the chain in memory to know how many rows each table must hold afterwards.
        state: dict[str, dict[bytes, bool]] = {name: {} for name in order}
        for step in plan.steps:
            for name in order:
                selected = self._step_records(step, name)
                if selected is None:
                    continue
                mode, records = selected
                pk = self._specs[name].primary_key
                if mode != MODE_CHANGES:
                    state[name] = {canonical_json(row.get(pk)): True for row in records}
                    continue
                for record in records:
                    key = canonical_json(record["row"].get(pk))
                    if record["op"] == OP_DELETE:
                        state[name].pop(key, None)
                    else:
                        state[name][key] = True
        return {name: len(rows) for name, rows in state.items()}

    async def _apply(self, plan: _RestorePlan, order: list[str]) -> None:
        # One transaction for the whole restore; any error rolls every table back.
        reverse = list(reversed(order))
        async with self._target.transaction() as tx:
            for index, step in enumerate(plan.steps):
                selections = {name: self._step_records(step, name) for name in order}
                if index == 0:
                    for name in reverse:
                        await tx.clear(self._specs[name])
                    for name in order:
                        selected = selections[name]
                        if selected is not None:
                            await tx.insert(self._specs[name], selected[1])
                    continue
                for name in reverse:
                    selected = selections[name]
                    if selected is not None and selected[0] != MODE_CHANGES:
                        await tx.clear(self._specs[name])
                for name in order:
                    selected = selections[name]
                    if selected is None:
                        continue
                    mode, records = selected
                    if mode != MODE_CHANGES:
                        await tx.insert(self._specs[name], records)
                        continue
                    upserts = [record["row"] for record in records if record["op"] != OP_DELETE]
                    await tx.upsert(self._specs[name], upserts)
                for name in reverse:
                    selected = selections[name]
                    if selected is None or selected[0] != MODE_CHANGES:
                        continue
                    spec = self._specs[name]
                    deletes = [record["row"].get(spec.primary_key) for record in selected[1] if record["op"] == OP_DELETE]
                    await tx.delete(spec, deletes)

    async def _verify(self, expected: dict[str, int]) -> dict[str, dict[str, Any]]:
        verification: dict[str, dict[str, Any]] = {}
        for name, count in expected.items():
            try:
                actual: int | None = await self._target.count_rows(self._specs[name])
            except Exception as exc:  # noqa: BLE001 - a failed count is reported as a mismatch, not a failed restore
                logger.warning("recovery_verification_count_failed table=%s", name, exc_info=exc)
                actual = None
            verification[name] = {"expected": count, "actual": actual, "matched": actual == count}
        return verification

    async def _acquire_lock(self, operation_id: str, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(RecoveryLock)
                .where(RecoveryLock.id == _LOCK_ROW_ID, RecoveryLock.holder.is_(None))
                .values(holder=operation_id, acquired_at=now)
            )
            if result.rowcount == 1:
                await session.commit()
                return True
            existing = await session.get(RecoveryLock, _LOCK_ROW_ID)
            if existing is not None:
                await session.rollback()
                return False
            session.add(RecoveryLock(id=_LOCK_ROW_ID, holder=operation_id, acquired_at=now))
            try:
                await session.commit()
            except SQLAlchemyIntegrityError:
                # Another process created the row first and holds it.
                await session.rollback()
                return False
        return True

    async def _release(self, operation_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(BackupArtifact).where(BackupArtifact.in_use_by == operation_id).values(in_use_by=None)
            )
            await session.execute(
                update(RecoveryLock)
                .where(RecoveryLock.id == _LOCK_ROW_ID, RecoveryLock.holder == operation_id)
                .values(holder=None, acquired_at=None)
            )
            await session.commit()

    async def _mark_in_use(self, operation_id: str, artifact_ids: list[str]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(BackupArtifact).where(BackupArtifact.id.in_(artifact_ids)).values(in_use_by=operation_id)
            )
            await session.commit()

    async def _finish(
        self,
        operation_id: str,
        status: str,
        *,
        artifact_ids: list[str],
        verification: dict[str, Any] | None = None,
        error: BackupVaultError | None = None,
    ) -> None:
        async with self._session_factory() as session:
            operation = await session.get(RecoveryOperation, operation_id)
            if operation is None:
                return
            operation.status = status
            operation.source_artifact_ids = list(artifact_ids)
            operation.completed_at = self._clock()
            operation.verification = verification
            if error is not None:
                operation.error_code = error.code
                operation.error_message = str(error)
            await session.commit()
