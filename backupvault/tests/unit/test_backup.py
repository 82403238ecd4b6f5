from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from backupvault.core.errors import (
    BackupCancelledError,
    BackupFailedError,
    InvalidJobTransitionError,
    NoBaseBackupError,
)
from backupvault.services.backup import JobRegistry
from backupvault.services.crypto.pii import is_protected_token
from backupvault.services.telemetry import counters_snapshot
from backupvault.tests.utils.fakes import FlakyStorage
from backupvault.tests.utils.vault import BASE_TIME, list_artifacts, read_payload


@pytest.mark.asyncio
async def test_full_backup_stores_encrypted_pseudonymized_artifact(vault, tmp_path: Path) -> None:
    artifact = await vault.run_full_backup()

    assert artifact.artifact_type == "full"
    assert artifact.created_at == BASE_TIME
    assert artifact.storage_key.startswith("backups/2026-01-01/full/")
    assert set(artifact.table_manifest) == {"organizations", "profiles", "pets", "settings"}
    assert artifact.scanned_tables == ["organizations", "pets", "profiles", "settings"]
    assert artifact.contains_pii and artifact.contains_critical
    assert artifact.pii_mode == "pseudonymize"
    assert artifact.table_manifest["profiles"]["rows"] == 2

    raw = (tmp_path / "storage" / artifact.storage_key).read_bytes()
    assert b"ana@example.com" not in raw
    assert b"Acme Pets" not in raw

    payload = await read_payload(vault, artifact.id)
    profiles = payload["tables"]["profiles"]["records"]
    assert all(is_protected_token(row["email"]) for row in profiles)
    assert {row["id"] for row in profiles} == {"u1", "u2"}
    assert payload["tables"]["organizations"]["records"][0]["name"] == "Acme Pets"

    [job] = vault.list_jobs()
    assert job.status == "completed"
    assert job.artifact_id == artifact.id
    assert counters_snapshot()["backup_jobs_total.full.completed"] == 1


@pytest.mark.asyncio
async def test_full_backup_with_failed_table_records_nothing(vault, source, alert_sink) -> None:
    source.failures["pets"] = ConnectionError("source connection dropped")

    with pytest.raises(BackupFailedError) as excinfo:
        await vault.run_full_backup()

    assert excinfo.value.failed_tables == ["pets"]
    assert excinfo.value.retry_eligible is True
    assert await list_artifacts(vault) == []
    [job] = vault.list_jobs()
    assert job.status == "failed"
    assert job.failed_tables == ("pets",)
    await vault.audit.flush()
    assert "backup.job.failed" in alert_sink.event_types()


@pytest.mark.asyncio
async def test_full_backup_failure_with_bad_data_is_not_retry_eligible(vault, source) -> None:
    source.failures["settings"] = ValueError("column type mismatch")
    with pytest.raises(BackupFailedError) as excinfo:
        await vault.run_full_backup()
    assert excinfo.value.retry_eligible is False


@pytest.mark.asyncio
async def test_full_backup_of_empty_catalog_fails(make_vault) -> None:
    vault = make_vault(tables=())
    with pytest.raises(BackupFailedError) as excinfo:
        await vault.run_full_backup()
    assert str(excinfo.value) == "full backup captured no tables"
    assert excinfo.value.retry_eligible is False
    assert await list_artifacts(vault) == []
    [job] = vault.list_jobs()
    assert job.status == "failed"


@pytest.mark.asyncio
async def test_incremental_requires_full_backup(vault) -> None:
    with pytest.raises(NoBaseBackupError):
        await vault.run_incremental_backup()
    assert vault.list_jobs()[0].error_code == "NO_BASE_BACKUP"


@pytest.mark.asyncio
async def test_incremental_captures_only_changed_rows(vault, source, clock) -> None:
    full = await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u1", "full_name": "Ana S. Souza", "updated_at": clock.now - timedelta(minutes=10)})

    incremental = await vault.run_incremental_backup()

    assert incremental is not None
    assert incremental.artifact_type == "incremental"
    assert incremental.base_artifact_id == full.id
    assert set(incremental.table_manifest) == {"profiles"}
    assert incremental.table_manifest["profiles"]["upserts"] == 1
    # Daily tables are outside the hourly incremental cycle.
    assert incremental.scanned_tables == ["organizations", "pets", "profiles"]
    incremental_reads = source.reads[-3:]
    assert {name for name, _ in incremental_reads} == {"organizations", "pets", "profiles"}
    assert all(since == BASE_TIME for _, since in incremental_reads)

    payload = await read_payload(vault, incremental.id)
    [record] = payload["tables"]["profiles"]["records"]
    assert record["op"] == "upsert"
    assert record["row"]["id"] == "u1"
    assert is_protected_token(record["row"]["full_name"])


@pytest.mark.asyncio
async def test_incremental_without_changes_is_a_noop(vault, clock, alert_sink) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    assert await vault.run_incremental_backup() is None
    assert len(await list_artifacts(vault)) == 1
    jobs = vault.list_jobs()
    assert jobs[-1].status == "completed"
    assert jobs[-1].artifact_id is None


@pytest.mark.asyncio
async def test_soft_deleted_rows_are_captured_as_deletes(vault, source, clock) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("pets", {"id": "p2", "deleted_at": clock.now - timedelta(minutes=5)})
    incremental = await vault.run_incremental_backup()
    assert incremental is not None
    assert incremental.table_manifest["pets"]["deletes"] == 1
    payload = await read_payload(vault, incremental.id)
    assert payload["tables"]["pets"]["records"][0]["op"] == "delete"


@pytest.mark.asyncio
async def test_partial_incremental_flags_failed_tables_for_next_cycle(vault, source, clock, alert_sink) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    changed_at = clock.now - timedelta(minutes=10)
    source.upsert("profiles", {"id": "u1", "full_name": "Ana S. Souza", "updated_at": changed_at})
    source.upsert("pets", {"id": "p1", "name": "Rex II", "updated_at": changed_at})
    source.failures["pets"] = ConnectionError("replica lag timeout")

    first = await vault.run_incremental_backup()
    assert first is not None
    assert set(first.table_manifest) == {"profiles"}
    assert first.retry_tables == ["pets"]
    assert "pets" not in first.scanned_tables
    assert vault.list_jobs()[-1].failed_tables == ("pets",)
    await vault.audit.flush()
    assert "backup.tables.retry_scheduled" in alert_sink.event_types()

    del source.failures["pets"]
    clock.advance(hours=1)
    second = await vault.run_incremental_backup()
    assert second is not None
    # The failed table keeps its old watermark, so the missed change is picked up now.
    assert set(second.table_manifest) == {"pets"}
    assert second.base_artifact_id == first.id
    pets_reads = [since for name, since in source.reads if name == "pets"]
    assert pets_reads[-1] == BASE_TIME


@pytest.mark.asyncio
async def test_incremental_with_every_table_failing_raises(vault, source, clock) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    for name in ("organizations", "profiles", "pets"):
        source.failures[name] = ConnectionError("database unreachable")
    with pytest.raises(BackupFailedError) as excinfo:
        await vault.run_incremental_backup()
    assert excinfo.value.failed_tables == ["organizations", "pets", "profiles"]
    assert len(await list_artifacts(vault)) == 1


@pytest.mark.asyncio
async def test_differential_accumulates_changes_since_full(vault, source, clock) -> None:
    full = await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u1", "full_name": "Ana S. Souza", "updated_at": clock.now - timedelta(minutes=5)})
    await vault.run_incremental_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u2", "full_name": "Bruno L.", "updated_at": clock.now - timedelta(minutes=5)})
    await vault.run_incremental_backup()

    differential = await vault.run_differential_backup()
    assert differential is not None
    assert differential.artifact_type == "differential"
    assert differential.base_artifact_id == full.id
    assert differential.table_manifest["profiles"]["rows"] == 2


@pytest.mark.asyncio
async def test_upload_is_retried_on_transient_failures(make_vault, tmp_path: Path) -> None:
    storage = FlakyStorage(tmp_path / "storage", put_failures=2)
    vault = make_vault(storage=storage)
    artifact = await vault.run_full_backup()
    assert storage.put_attempts == 3
    assert counters_snapshot()["retries_total.storage.put"] == 2
    assert (await read_payload(vault, artifact.id))["artifact_id"] == artifact.id


@pytest.mark.asyncio
async def test_upload_exhaustion_fails_job_and_alerts(make_vault, tmp_path: Path, alert_sink) -> None:
    storage = FlakyStorage(tmp_path / "storage", put_failures=10)
    vault = make_vault(storage=storage)
    with pytest.raises(BackupFailedError) as excinfo:
        await vault.run_full_backup()
    assert excinfo.value.retry_eligible is True
    assert storage.put_attempts == 3
    assert await list_artifacts(vault) == []
    await vault.audit.flush()
    assert alert_sink.event_types() == ["backup.upload.failed", "backup.job.failed"]


@pytest.mark.asyncio
async def test_cancel_stops_job_at_next_table(make_vault, source) -> None:
    vault = make_vault(overrides={"backup_parallel_tables": 1})
    source.gate = asyncio.Event()
    task = asyncio.create_task(vault.run_full_backup())
    await source.entered.wait()

    [job] = vault.list_jobs(status="running")
    assert vault.cancel_job(job.job_id) is True
    source.gate.set()

    with pytest.raises(BackupCancelledError):
        await task
    assert len(source.reads) == 1
    assert await list_artifacts(vault) == []
    snapshot = vault.get_job(job.job_id)
    assert snapshot.status == "failed"
    assert snapshot.error_code == "BACKUP_CANCELLED"
    assert vault.cancel_job(job.job_id) is False


def test_job_registry_rejects_illegal_transitions() -> None:
    registry = JobRegistry()
    job = registry.create("full", BASE_TIME)
    with pytest.raises(InvalidJobTransitionError):
        registry.transition(job.job_id, "completed")
    registry.transition(job.job_id, "running", started_at=BASE_TIME)
    done = registry.transition(job.job_id, "completed", completed_at=BASE_TIME)
    assert done.status == "completed"
    with pytest.raises(InvalidJobTransitionError):
        registry.transition(job.job_id, "running")
    assert registry.request_cancel(job.job_id) is False
    assert registry.request_cancel("unknown") is False


@pytest.mark.asyncio
async def test_backup_metrics_summarize_job_history(vault, source, clock) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    source.failures["organizations"] = ValueError("bad row")
    source.failures["profiles"] = ValueError("bad row")
    source.failures["pets"] = ValueError("bad row")
    with pytest.raises(BackupFailedError):
        await vault.run_incremental_backup()

    metrics = await vault.get_metrics()
    assert metrics["backups"]["total_jobs"] == 2
    assert metrics["backups"]["completed"] == 1
    assert metrics["backups"]["failed"] == 1
    assert metrics["backups"]["success_rate"] == 0.5
    assert metrics["backups"]["by_type"] == {"full": {"completed": 1}, "incremental": {"failed": 1}}
    assert metrics["durations"]["backup.full"]["count"] == 1
    assert metrics["durations"]["backup.incremental"]["count"] == 1
    assert metrics["active_recovery"] is None
