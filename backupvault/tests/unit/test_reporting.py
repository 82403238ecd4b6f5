from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backupvault.tests.utils.vault import BASE_TIME


def _window(clock) -> tuple[datetime, datetime]:
    # Audit rows carry wall-clock time while everything else follows the test clock.
    wall = datetime.now(timezone.utc)
    return min(BASE_TIME, wall) - timedelta(days=1), max(clock.now, wall) + timedelta(days=1)


@pytest.mark.asyncio
async def test_compliance_report_aggregates_activity(vault, source, clock) -> None:
    full = await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u2", "full_name": "Bruno L.", "updated_at": clock.now - timedelta(minutes=5)})
    incremental = await vault.run_incremental_backup()
    rotated = await vault.rotate_key(reason="quarterly")
    await vault.restore_complete(full.id)
    await vault.submit_compliance_request("erasure", "u1")
    clock.advance(days=100)

    start, end = _window(clock)
    report = await vault.generate_compliance_report(start, end)

    assert report.generated_at == clock.now
    assert report.backups["total_jobs"] == 2
    assert report.backups["by_type"] == {"full": {"completed": 1}, "incremental": {"completed": 1}}
    assert report.backups["artifacts"]["full"]["count"] == 1
    assert report.backups["bytes_written"] == full.size_bytes + incremental.size_bytes
    assert [item["key_id"] for item in report.key_rotations] == [rotated]
    assert report.key_rotations[0]["reason"] == "quarterly"
    assert report.restore_usage["operations"] == 1
    assert report.restore_usage["by_strategy"] == {"complete": 1}
    assert report.restore_usage["per_artifact"] == {full.id: 1}
    assert report.requests["total"] == 1
    assert report.requests["by_type"] == {"erasure": {"pending": 1}}
    assert len(report.requests["pending"]) == 1
    assert report.security_events["by_type"]["crypto.key.rotated"] == 1
    assert report.security_events["by_type"]["backup.job.completed"] == 2
    assert report.storage["tiers"]["standard"]["artifacts"] == 2
    candidates = {item["artifact_id"] for item in report.optimizations["archive_candidates"]}
    assert candidates == {full.id, incremental.id}

    await vault.apply_retention()
    report = await vault.generate_compliance_report(*_window(clock))
    assert report.retention["runs"] == 1
    assert report.retention["archived"] == 2
    assert report.storage["tiers"]["archive"]["artifacts"] == 2
    assert report.storage["tiers"]["archive"]["bytes"] == full.size_bytes + incremental.size_bytes
    assert report.optimizations == {"archive_candidates": [], "monthly_savings": 0.0}
    assert report.to_dict()["period_start"] == start.isoformat()


@pytest.mark.asyncio
async def test_report_window_excludes_outside_activity(vault, clock) -> None:
    await vault.run_full_backup()
    later = BASE_TIME + timedelta(days=10)
    report = await vault.generate_compliance_report(later, later + timedelta(days=1))
    assert report.backups["total_jobs"] == 0
    assert report.key_rotations == []
    assert report.restore_usage["operations"] == 0


@pytest.mark.asyncio
async def test_report_rejects_inverted_window(vault) -> None:
    with pytest.raises(ValueError):
        await vault.generate_compliance_report(BASE_TIME, BASE_TIME - timedelta(days=1))
