from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import select

from backupvault.core.errors import (
    ArtifactNotFoundError,
    BrokenChainError,
    IntegrityError,
    NoBaseBackupError,
    RecoveryInProgressError,
    RestoreFailedError,
    TablesNotInArtifactError,
)
from backupvault.domain.models import BackupArtifact, RecoveryLock, RecoveryOperation
from backupvault.services.crypto.utils import sha256_hex
from backupvault.tests.utils.vault import BASE_TIME, load_artifact


RESTORE_ORDER = ("organizations", "profiles", "pets", "settings")


async def _operations(vault) -> list[RecoveryOperation]:
    async with vault.session_factory() as session:
        result = await session.execute(select(RecoveryOperation).order_by(RecoveryOperation.started_at))
        return list(result.scalars().all())


async def _build_chain(vault, source, clock):
    """Full at T0, then two hourly incrementals with updates, an insert and a soft delete."""
    full = await vault.run_full_backup()
    source.upsert("profiles", {"id": "u2", "full_name": "Bruno L.", "updated_at": BASE_TIME + timedelta(minutes=30)})
    source.upsert(
        "profiles",
        {
            "id": "u3",
            "organization_id": 1,
            "email": "carla@example.com",
            "full_name": "Carla Dias",
            "created_at": BASE_TIME + timedelta(minutes=40),
            "updated_at": BASE_TIME + timedelta(minutes=40),
            "deleted_at": None,
        },
    )
    clock.advance(hours=1)
    first = await vault.run_incremental_backup()
    source.upsert("profiles", {"id": "u3", "full_name": "Carla M. Dias", "updated_at": BASE_TIME + timedelta(minutes=90)})
    source.upsert("profiles", {"id": "u1", "deleted_at": BASE_TIME + timedelta(minutes=100)})
    clock.advance(hours=1)
    second = await vault.run_incremental_backup()
    return full, first, second


@pytest.mark.asyncio
async def test_complete_restore_rebuilds_every_table(vault, target) -> None:
    target.tables = {"profiles": {"stale": {"id": "stale"}}}
    artifact = await vault.run_full_backup()

    result = await vault.restore_complete(artifact.id)

    assert result.status == "completed"
    assert result.verified
    assert result.tables == RESTORE_ORDER
    assert result.source_artifact_ids == (artifact.id,)
    assert set(target.rows("profiles")) == {"u1", "u2"}
    # Pseudonymized fields are revealed from the retained mappings.
    assert target.rows("profiles")["u1"]["email"] == "ana@example.com"
    assert target.rows("pets")["p2"]["owner_id"] == "u2"
    assert target.commits == 1

    [operation] = await _operations(vault)
    assert operation.status == "completed"
    assert operation.verification["pets"] == {"expected": 2, "actual": 2, "matched": True}
    restored = await load_artifact(vault, artifact.id)
    assert restored.in_use_by is None


@pytest.mark.asyncio
async def test_complete_restore_replays_incremental_chain(vault, source, target, clock) -> None:
    _, _, second = await _build_chain(vault, source, clock)
    result = await vault.restore_complete(second.id)
    assert len(result.source_artifact_ids) == 3
    assert set(target.rows("profiles")) == {"u2", "u3"}
    assert target.rows("profiles")["u3"]["full_name"] == "Carla M. Dias"
    assert target.rows("profiles")["u2"]["email"] == "bruno@example.com"
    assert result.verified


@pytest.mark.asyncio
async def test_selective_restore_touches_only_requested_tables(vault, source, target) -> None:
    artifact = await vault.run_full_backup()
    target.tables = {"settings": {1: {"id": 1, "timezone": "UTC"}}, "pets": {}}

    result = await vault.restore_selective(artifact.id, ["pets"])

    assert result.tables == ("pets",)
    assert set(target.rows("pets")) == {"p1", "p2"}
    assert target.rows("settings") == {1: {"id": 1, "timezone": "UTC"}}
    assert "profiles" not in target.tables


@pytest.mark.asyncio
async def test_selective_restore_rejects_tables_missing_from_artifact(vault, source, target, clock) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u1", "full_name": "Ana S.", "updated_at": clock.now - timedelta(minutes=1)})
    incremental = await vault.run_incremental_backup()

    with pytest.raises(TablesNotInArtifactError) as excinfo:
        await vault.restore_selective(incremental.id, ["profiles", "settings", "invoices"])

    assert excinfo.value.missing == ["invoices", "settings"]
    assert target.commits == 0
    with pytest.raises(ValueError):
        await vault.restore_selective(incremental.id, [])
    with pytest.raises(ArtifactNotFoundError):
        await vault.restore_complete("bk-missing")


@pytest.mark.asyncio
async def test_concurrent_restores_are_rejected(make_vault, target) -> None:
    vault = make_vault()
    other_process = make_vault()
    artifact = await vault.run_full_backup()
    target.gate = asyncio.Event()

    running = asyncio.create_task(vault.restore_complete(artifact.id))
    await target.entered.wait()
    assert vault.recovery.active_operation is not None

    with pytest.raises(RecoveryInProgressError):
        await vault.restore_complete(artifact.id)
    with pytest.raises(RecoveryInProgressError):
        await other_process.restore_selective(artifact.id, ["pets"])
    assert (await load_artifact(vault, artifact.id)).in_use_by == vault.recovery.active_operation

    target.gate.set()
    result = await running
    assert result.verified
    assert vault.recovery.active_operation is None
    async with vault.session_factory() as session:
        lock = await session.get(RecoveryLock, 1)
    assert lock.holder is None

    # The lock is free again once the first restore finishes.
    second = await other_process.restore_selective(artifact.id, ["pets"])
    assert second.status == "completed"


@pytest.mark.asyncio
async def test_failed_apply_rolls_back_every_table(vault, target, alert_sink) -> None:
    artifact = await vault.run_full_backup()
    target.tables = {"organizations": {9: {"id": 9, "name": "Previous"}}}
    target.fail_on_table = "pets"

    with pytest.raises(RestoreFailedError):
        await vault.restore_complete(artifact.id)

    assert target.tables == {"organizations": {9: {"id": 9, "name": "Previous"}}}
    assert target.commits == 0
    [operation] = await _operations(vault)
    assert operation.status == "rolled-back"
    assert operation.error_code == "RESTORE_FAILED"
    await vault.audit.flush()
    assert "recovery.failed" in alert_sink.event_types()


@pytest.mark.asyncio
async def test_verification_mismatch_is_reported(vault, target, alert_sink) -> None:
    artifact = await vault.run_full_backup()
    target.count_offsets["settings"] = 1

    result = await vault.restore_complete(artifact.id)

    assert result.status == "completed"
    assert not result.verified
    assert result.verification["settings"] == {"expected": 1, "actual": 2, "matched": False}
    await vault.audit.flush()
    assert "recovery.verification.mismatch" in alert_sink.event_types()


@pytest.mark.asyncio
async def test_tampered_artifact_is_rejected_before_apply(vault, target, tmp_path: Path) -> None:
    artifact = await vault.run_full_backup()
    path = tmp_path / "storage" / artifact.storage_key
    data = bytearray(path.read_bytes())
    data[-1] ^= 0xFF
    path.write_bytes(bytes(data))

    with pytest.raises(IntegrityError):
        await vault.restore_complete(artifact.id)

    assert target.commits == 0
    [operation] = await _operations(vault)
    assert operation.status == "failed"
    assert operation.error_code == "INTEGRITY_ERROR"


@pytest.mark.asyncio
async def test_tampered_ciphertext_with_matching_checksum_fails_authentication(vault, target) -> None:
    artifact = await vault.run_full_backup()
    blob = bytearray(await vault.storage.get(artifact.storage_key))
    blob[-5] ^= 0x01
    await vault.storage.put(artifact.storage_key, bytes(blob))
    async with vault.session_factory() as session:
        row = await session.get(BackupArtifact, artifact.id)
        row.checksum_sha256 = sha256_hex(bytes(blob))
        await session.commit()

    with pytest.raises(IntegrityError):
        await vault.restore_complete(artifact.id)
    assert target.commits == 0


@pytest.mark.asyncio
async def test_point_in_time_restore_replays_changes_up_to_target(vault, source, target, clock) -> None:
    await _build_chain(vault, source, clock)

    result = await vault.restore_point_in_time(BASE_TIME + timedelta(minutes=45))
    assert len(result.source_artifact_ids) == 2
    assert set(target.rows("profiles")) == {"u1", "u2", "u3"}
    assert target.rows("profiles")["u2"]["full_name"] == "Bruno L."
    assert target.rows("profiles")["u3"]["full_name"] == "Carla Dias"
    assert result.verified

    result = await vault.restore_point_in_time(BASE_TIME + timedelta(minutes=95))
    assert len(result.source_artifact_ids) == 3
    assert target.rows("profiles")["u3"]["full_name"] == "Carla M. Dias"
    assert "u1" in target.rows("profiles")

    result = await vault.restore_point_in_time(BASE_TIME + timedelta(hours=3))
    assert set(target.rows("profiles")) == {"u2", "u3"}
    assert result.target_timestamp == BASE_TIME + timedelta(hours=3)
    assert result.tables == RESTORE_ORDER


@pytest.mark.asyncio
async def test_point_in_time_before_first_full_backup(vault, source, clock) -> None:
    await _build_chain(vault, source, clock)
    with pytest.raises(NoBaseBackupError):
        await vault.restore_point_in_time(BASE_TIME - timedelta(hours=1))


@pytest.mark.asyncio
async def test_point_in_time_detects_broken_chain(vault, source, target, clock) -> None:
    _, first, _ = await _build_chain(vault, source, clock)
    async with vault.session_factory() as session:
        row = await session.get(BackupArtifact, first.id)
        row.deleted_at = clock.now
        row.status = "deleted"
        await session.commit()

    with pytest.raises(BrokenChainError):
        await vault.restore_point_in_time(BASE_TIME + timedelta(hours=3))
    assert target.commits == 0


@pytest.mark.asyncio
async def test_point_in_time_ignores_incrementals_of_a_newer_full(vault, source, target, clock) -> None:
    first_full = await vault.run_full_backup()
    source.upsert("profiles", {"id": "u2", "full_name": "Bruno L.", "updated_at": BASE_TIME + timedelta(minutes=30)})
    clock.advance(hours=1)
    first_incremental = await vault.run_incremental_backup()
    clock.advance(hours=1)
    second_full = await vault.run_full_backup()
    source.upsert(
        "profiles", {"id": "u2", "full_name": "Bruno Lima Jr.", "updated_at": BASE_TIME + timedelta(minutes=150)}
    )
    clock.advance(hours=1)
    second_incremental = await vault.run_incremental_backup()
    assert second_incremental.base_artifact_id == second_full.id

    result = await vault.restore_point_in_time(BASE_TIME + timedelta(minutes=90))
    assert result.source_artifact_ids == (first_full.id, first_incremental.id)
    assert result.verified
    assert target.rows("profiles")["u2"]["full_name"] == "Bruno L."

    result = await vault.restore_point_in_time(BASE_TIME + timedelta(hours=4))
    assert result.source_artifact_ids == (second_full.id, second_incremental.id)
    assert target.rows("profiles")["u2"]["full_name"] == "Bruno Lima Jr."


@pytest.mark.asyncio
async def test_stuck_recovery_detection_and_lock_release(vault, clock, alert_sink) -> None:
    async with vault.session_factory() as session:
        session.add(
            RecoveryOperation(
                id="op-crashed",
                strategy="complete",
                source_artifact_ids=[],
                status="running",
                started_at=clock.now,
            )
        )
        session.add(RecoveryLock(id=1, holder="op-crashed", acquired_at=clock.now))
        await session.commit()

    assert await vault.check_stuck_recovery() == []
    assert await vault.release_stale_lock() is False

    clock.advance(hours=2)
    assert await vault.check_stuck_recovery() == ["op-crashed"]
    assert await vault.release_stale_lock() is True
    await vault.audit.flush()
    assert alert_sink.event_types() == ["recovery.stuck", "recovery.lock.released"]

    async with vault.session_factory() as session:
        lock = await session.get(RecoveryLock, 1)
        operation = await session.get(RecoveryOperation, "op-crashed")
    assert lock.holder is None
    assert operation.status == "failed"
    assert await vault.release_stale_lock() is False


@pytest.mark.asyncio
async def test_forced_lock_release(vault, clock) -> None:
    async with vault.session_factory() as session:
        session.add(
            RecoveryOperation(id="op-live", strategy="complete", source_artifact_ids=[], status="running", started_at=clock.now)
        )
        session.add(RecoveryLock(id=1, holder="op-live", acquired_at=clock.now))
        await session.commit()
    assert await vault.release_stale_lock() is False
    assert await vault.release_stale_lock(force=True) is True
