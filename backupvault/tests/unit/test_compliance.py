from __future__ import annotations

import csv
from datetime import timedelta
import io
import json
from pathlib import Path

import pytest
from sqlalchemy import func, select

from backupvault.core.errors import ComplianceProcessingError, ComplianceRequestNotFoundError, ExportExpiredError
from backupvault.domain.models import ComplianceRequest, PseudonymMapping
from backupvault.tests.utils.vault import BASE_TIME, load_artifact, read_payload


SEVEN_YEARS = timedelta(days=7 * 365)


async def _mapping_count(vault) -> int:
    async with vault.session_factory() as session:
        return int((await session.execute(select(func.count()).select_from(PseudonymMapping))).scalar_one())


async def _export_handle_id(request: ComplianceRequest) -> str:
    [summary] = [entry["summary"] for entry in request.result_log if "summary" in entry]
    return summary["export_handle_id"]


@pytest.mark.asyncio
async def test_erasure_removes_subject_from_every_artifact(vault, target) -> None:
    artifact = await vault.run_full_backup()
    assert await _mapping_count(vault) == 8

    request = await vault.process_compliance_request({"request_type": "erasure", "subject_id": "u1"})

    assert request.status == "completed"
    assert request.affected_artifact_ids == [artifact.id]
    assert request.result_log == [
        {"artifact_id": artifact.id, "outcome": "erased", "records": 2, "detail": None}
    ]
    payload = await read_payload(vault, artifact.id)
    assert [row["id"] for row in payload["tables"]["profiles"]["records"]] == ["u2"]
    assert [row["id"] for row in payload["tables"]["pets"]["records"]] == ["p2"]
    stored = await load_artifact(vault, artifact.id)
    assert stored.table_manifest["profiles"]["rows"] == 1
    assert stored.in_use_by is None
    # Reverse mappings for the erased rows are gone; the remaining subject's survive.
    assert await _mapping_count(vault) == 4

    result = await vault.restore_complete(artifact.id)
    assert result.verified
    assert set(target.rows("profiles")) == {"u2"}
    assert target.rows("profiles")["u2"]["email"] == "bruno@example.com"


@pytest.mark.asyncio
async def test_erasure_skips_artifacts_under_legal_hold(vault, clock) -> None:
    held = await vault.run_full_backup()
    clock.advance(hours=1)
    open_artifact = await vault.run_full_backup()
    await vault.set_legal_hold(held.id, hold=True, reason="court order")

    report = await vault.compliance.process_erasure("u1")

    assert report.skipped == [held.id]
    assert report.erased == [open_artifact.id]
    assert report.records_removed == 2
    held_payload = await read_payload(vault, held.id)
    assert {row["id"] for row in held_payload["tables"]["profiles"]["records"]} == {"u1", "u2"}
    # Held artifacts still reference the pseudonyms, so their mappings stay.
    revealed = await vault.pii.reveal_rows(
        next(spec for spec in vault.tables if spec.name == "profiles"),
        held_payload["tables"]["profiles"]["records"],
    )
    assert "ana@example.com" in {row["email"] for row in revealed}


@pytest.mark.asyncio
async def test_failed_erasure_stays_pending_and_holds_retention(vault, tmp_path: Path, alert_sink) -> None:
    artifact = await vault.run_full_backup()
    path = tmp_path / "storage" / artifact.storage_key
    data = bytearray(path.read_bytes())
    data[-1] ^= 0xFF
    path.write_bytes(bytes(data))
    request = await vault.submit_compliance_request("erasure", "u1")

    with pytest.raises(ComplianceProcessingError) as excinfo:
        await vault.process_compliance_request(request.id)

    assert excinfo.value.failed_artifacts == [artifact.id]
    stored = await vault.compliance.get_request(request.id)
    assert stored.status == "pending"
    assert stored.affected_artifact_ids == [artifact.id]
    assert stored.result_log[0]["outcome"] == "failed"
    assert await _mapping_count(vault) == 8
    await vault.audit.flush()
    assert "compliance.request.failed" in alert_sink.event_types()

    result = await vault.apply_retention(now=BASE_TIME + SEVEN_YEARS + timedelta(days=1))
    assert result.held == {artifact.id: "compliance_request"}


@pytest.mark.asyncio
async def test_submitted_request_holds_artifacts_before_processing(vault) -> None:
    artifact = await vault.run_full_backup()
    request = await vault.submit_compliance_request("portability", "u1")

    stored = await vault.compliance.get_request(request.id)
    assert stored.status == "pending"
    assert stored.affected_artifact_ids == [artifact.id]

    result = await vault.apply_retention(now=BASE_TIME + SEVEN_YEARS + timedelta(days=1))
    assert result.held == {artifact.id: "compliance_request"}
    assert result.archived == ()
    assert result.deleted == ()
    assert (await load_artifact(vault, artifact.id)).deleted_at is None


@pytest.mark.asyncio
async def test_portability_exports_latest_records_as_json(vault, source, clock) -> None:
    await vault.run_full_backup()
    clock.advance(hours=1)
    source.upsert("profiles", {"id": "u1", "full_name": "Ana S. Souza", "updated_at": clock.now - timedelta(minutes=5)})
    await vault.run_incremental_backup()

    request = await vault.process_compliance_request(
        {"request_type": "portability", "subject_id": "u1", "payload": {"format": "json"}}
    )

    assert request.status == "completed"
    handle, body = await vault.fetch_export(await _export_handle_id(request))
    assert handle.record_count == 2
    assert handle.expires_at == clock.now + timedelta(hours=24)
    document = json.loads(body)
    assert document["subject_id"] == "u1"
    [profile] = document["tables"]["profiles"]
    assert profile["full_name"] == "Ana S. Souza"
    assert profile["email"] == "ana@example.com"
    [pet] = document["tables"]["pets"]
    assert pet["id"] == "p1"
    assert pet["owner_id"] == "u1"
    assert pet["name"] == "Rex"


@pytest.mark.asyncio
async def test_portability_csv_export_expires_and_is_purged(vault, clock, tmp_path: Path) -> None:
    await vault.run_full_backup()
    result = await vault.compliance.process_portability("u2", "csv")

    _, body = await vault.fetch_export(result.handle.id)
    rows = list(csv.reader(io.StringIO(body.decode("utf-8"))))
    assert rows[0] == ["table", "record_key", "field", "value"]
    assert ["profiles", "u2", "email", "bruno@example.com"] in rows
    assert ["pets", "p2", "name", "Mia"] in rows
    assert not (tmp_path / "storage" / result.handle.storage_key).read_bytes().startswith(b"table,")

    clock.advance(hours=25)
    with pytest.raises(ExportExpiredError):
        await vault.fetch_export(result.handle.id)
    assert await vault.purge_expired_exports() == [result.handle.id]
    assert not (tmp_path / "storage" / result.handle.storage_key).exists()
    assert await vault.purge_expired_exports() == []
    with pytest.raises(ExportExpiredError):
        await vault.fetch_export(result.handle.id)


@pytest.mark.asyncio
async def test_rectification_corrects_backed_up_values(vault, target) -> None:
    artifact = await vault.run_full_backup()

    request = await vault.process_compliance_request(
        {
            "request_type": "rectification",
            "subject_id": "u1",
            "payload": {"updates": {"profiles": {"email": "ana.souza@example.com"}}},
        }
    )

    assert request.status == "completed"
    assert request.result_log[0]["outcome"] == "rectified"
    await vault.restore_complete(artifact.id)
    assert target.rows("profiles")["u1"]["email"] == "ana.souza@example.com"
    assert target.rows("profiles")["u2"]["email"] == "bruno@example.com"


@pytest.mark.asyncio
async def test_restriction_marks_artifacts_and_blocks_deletion(vault) -> None:
    artifact = await vault.run_full_backup()

    request = await vault.process_compliance_request({"request_type": "restriction", "subject_id": "u2"})

    assert request.status == "completed"
    assert (await load_artifact(vault, artifact.id)).processing_restricted
    result = await vault.apply_retention(now=BASE_TIME + SEVEN_YEARS + timedelta(days=1))
    assert result.held == {artifact.id: "processing_restricted"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "request_type, payload, reason",
    [
        ("objection", {}, "unsupported request type: objection"),
        ("portability", {"format": "xml"}, "unsupported export format: xml"),
        ("rectification", {}, "rectification requires an updates map"),
    ],
)
async def test_invalid_requests_are_rejected(vault, request_type, payload, reason) -> None:
    submitted = await vault.submit_compliance_request(request_type, "u1", payload)
    rejected = await vault.process_compliance_request(submitted.id)
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == reason
    again = await vault.process_compliance_request(submitted.id)
    assert again.status == "rejected"


@pytest.mark.asyncio
async def test_unknown_request_id_raises(vault) -> None:
    with pytest.raises(ComplianceRequestNotFoundError):
        await vault.process_compliance_request("missing")
