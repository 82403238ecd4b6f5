from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backupvault.core.config import Settings, get_settings
from backupvault.domain.models import BackupArtifact, BackupJob, EncryptionKey, RecoveryOperation, RetentionRun
from backupvault.persistence.repos import audit as audit_repo
from backupvault.persistence.repos import compliance as compliance_repo
from backupvault.services.retention import RetentionEngine
from backupvault.services.storage.base import TIER_ARCHIVE, TIER_STANDARD


_BYTES_PER_GB = Decimal(1024**3)
_CENTS = Decimal("0.01")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> float:
    return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))


def _gigabytes(size_bytes: int) -> Decimal:
    return Decimal(size_bytes) / _BYTES_PER_GB


@dataclass(frozen=True)
class ComplianceReport:
    # Aggregate view of backup, retention and subject-rights activity for a window.
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    backups: dict[str, Any]
    retention: dict[str, Any]
    requests: dict[str, Any]
    security_events: dict[str, Any]
    key_rotations: list[dict[str, Any]]
    restore_usage: dict[str, Any]
    storage: dict[str, Any]
    optimizations: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for name in ("period_start", "period_end", "generated_at"):
            payload[name] = payload[name].isoformat()
        return payload


class ComplianceReporter:
    """Builds compliance reports from the inventory, audit trail and run history.

    Storage cost is modeled per tier from the configured GB-month prices.
    Optimization opportunities are live artifacts past their archive threshold
    that still sit in the standard tier; savings are the price difference
    between the two tiers for their current size.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        retention: RetentionEngine,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._retention = retention
        self._settings = settings or get_settings()
        self._clock = clock

    async def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        if end < start:
            raise ValueError("report end must not precede its start")
        now = self._clock()
        async with self._session_factory() as session:
            backups = await self._backups(session, start, end)
            retention = await self._retention_actions(session, start, end)
            requests = await self._requests(session, start, end)
            security_events = await self._security_events(session, start, end)
            key_rotations = await self._key_rotations(session, start, end)
            restore_usage = await self._restore_usage(session, start, end)
            live = list(
                (await session.execute(select(BackupArtifact).where(BackupArtifact.deleted_at.is_(None)))).scalars().all()
            )
        return ComplianceReport(
            period_start=start,
            period_end=end,
            generated_at=now,
            backups=backups,
            retention=retention,
            requests=requests,
            security_events=security_events,
            key_rotations=key_rotations,
            restore_usage=restore_usage,
            storage=self._storage_cost(live),
            optimizations=self._optimizations(live, now),
        )

    async def _backups(self, session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
        # Jobs by type and status, plus artifact bytes written in the window.
        result = await session.execute(
            select(BackupJob.backup_type, BackupJob.status, func.count())
            .where(BackupJob.queued_at >= start, BackupJob.queued_at <= end)
            .group_by(BackupJob.backup_type, BackupJob.status)
        )
        by_type: dict[str, dict[str, int]] = defaultdict(dict)
        total = 0
        for backup_type, status, count in result.all():
            by_type[str(backup_type)][str(status)] = int(count)
            total += int(count)
        written = await session.execute(
            select(BackupArtifact.artifact_type, func.count(), func.coalesce(func.sum(BackupArtifact.size_bytes), 0))
            .where(BackupArtifact.created_at >= start, BackupArtifact.created_at <= end)
            .group_by(BackupArtifact.artifact_type)
        )
        artifacts = {
            str(artifact_type): {"count": int(count), "bytes": int(size or 0)}
            for artifact_type, count, size in written.all()
        }
        return {
            "total_jobs": total,
            "by_type": dict(by_type),
            "artifacts": artifacts,
            "bytes_written": sum(item["bytes"] for item in artifacts.values()),
        }

    async def _retention_actions(self, session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
        result = await session.execute(
            select(RetentionRun).where(RetentionRun.started_at >= start, RetentionRun.started_at <= end)
        )
        runs = list(result.scalars().all())
        held_by_reason: Counter[str] = Counter()
        archived = deleted = failed = 0
        for run in runs:
            archived += len(run.archived or [])
            deleted += len(run.deleted or [])
            failed += len(run.failed or {})
            held_by_reason.update((run.held or {}).values())
        return {
            "runs": len(runs),
            "archived": archived,
            "deleted": deleted,
            "failed": failed,
            "held": sum(held_by_reason.values()),
            "held_by_reason": dict(held_by_reason),
        }

    async def _requests(self, session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
        requests = await compliance_repo.list_requests(session, requested_from=start, requested_to=end)
        by_type: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for request in requests:
            by_type[request.request_type][request.status] += 1
        open_requests = [
            {"request_id": request.id, "request_type": request.request_type, "requested_at": request.requested_at.isoformat()}
            for request in requests
            if request.status == "pending"
        ]
        return {
            "total": len(requests),
            "by_type": {name: dict(statuses) for name, statuses in by_type.items()},
            "pending": open_requests,
        }

    async def _security_events(self, session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
        events = await audit_repo.list_events(session, occurred_from=start, occurred_to=end)
        by_type = Counter(event.event_type for event in events)
        by_level = Counter(event.level for event in events)
        failures = Counter(event.event_type for event in events if event.outcome != "success")
        return {
            "total": len(events),
            "by_type": dict(by_type),
            "by_level": dict(by_level),
            "failures_by_type": dict(failures),
        }

    async def _key_rotations(self, session: AsyncSession, start: datetime, end: datetime) -> list[dict[str, Any]]:
        result = await session.execute(
            select(EncryptionKey)
            .where(
                EncryptionKey.created_at >= start,
                EncryptionKey.created_at <= end,
                EncryptionKey.rotated_from.is_not(None),
            )
            .order_by(EncryptionKey.created_at)
        )
        return [
            {
                "key_id": key.key_id,
                "rotated_from": key.rotated_from,
                "rotated_at": key.created_at.isoformat(),
                "reason": key.reason,
            }
            for key in result.scalars().all()
        ]

    async def _restore_usage(self, session: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
        # How often each artifact served a restore; unused artifacts are archive candidates.
        result = await session.execute(
            select(RecoveryOperation).where(RecoveryOperation.started_at >= start, RecoveryOperation.started_at <= end)
        )
        operations = list(result.scalars().all())
        per_artifact: Counter[str] = Counter()
        for operation in operations:
            per_artifact.update(operation.source_artifact_ids or [])
        return {
            "operations": len(operations),
            "by_strategy": dict(Counter(operation.strategy for operation in operations)),
            "by_status": dict(Counter(operation.status for operation in operations)),
            "per_artifact": dict(per_artifact),
        }

    def _price(self, tier: str) -> Decimal:
        if tier == TIER_ARCHIVE:
            return Decimal(str(self._settings.storage_cost_archive_per_gb))
        return Decimal(str(self._settings.storage_cost_standard_per_gb))

    def _storage_cost(self, live: list[BackupArtifact]) -> dict[str, Any]:
        tiers: dict[str, dict[str, Any]] = {}
        total = Decimal(0)
        for tier in (TIER_STANDARD, TIER_ARCHIVE):
            size = sum(artifact.size_bytes or 0 for artifact in live if artifact.storage_tier == tier)
            cost = _gigabytes(size) * self._price(tier)
            total += cost
            tiers[tier] = {
                "artifacts": sum(1 for artifact in live if artifact.storage_tier == tier),
                "bytes": size,
                "monthly_cost": _money(cost),
            }
        return {"tiers": tiers, "monthly_cost": _money(total)}

    def _optimizations(self, live: list[BackupArtifact], now: datetime) -> dict[str, Any]:
        savings_per_gb = self._price(TIER_STANDARD) - self._price(TIER_ARCHIVE)
        candidates: list[dict[str, Any]] = []
        total = Decimal(0)
        for artifact in live:
            if artifact.archived or artifact.storage_tier != TIER_STANDARD:
                continue
            age = now - artifact.created_at
            if age <= self._retention.archive_threshold(artifact):
                continue
            saving = _gigabytes(artifact.size_bytes or 0) * savings_per_gb
            total += saving
            candidates.append(
                {
                    "artifact_id": artifact.id,
                    "artifact_type": artifact.artifact_type,
                    "age_days": age.days,
                    "bytes": artifact.size_bytes,
                    "monthly_savings": _money(saving),
                }
            )
        return {"archive_candidates": candidates, "monthly_savings": _money(total)}
