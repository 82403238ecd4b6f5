from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
from sqlalchemy import select

from backupvault.domain.models import AuditEvent
from backupvault.services.audit import AuditLogger, WebhookSink, mask_pii, sanitize_metadata
from backupvault.services.telemetry import counters_snapshot
from backupvault.tests.utils.fakes import FailingSink, RecordingSink


def test_sanitize_metadata_redacts_secrets_and_masks_pii() -> None:
    sanitized = sanitize_metadata(
        {
            "api_token": "abc123",
            "db_password": "hunter2",
            "key_id": "key_20260101T000000000000Z_abcd1234",
            "storage_key": "backups/2026-01-01/full/bk.backup",
            "nested": {"contact": "reach ana@example.com or +55 11 98765 4321", "secret_value": "x"},
            "items": ["ssn 123-45-6789"],
        }
    )
    assert sanitized["api_token"] == "[REDACTED]"
    assert sanitized["db_password"] == "[REDACTED]"
    assert sanitized["key_id"] == "key_20260101T000000000000Z_abcd1234"
    assert sanitized["storage_key"] == "backups/2026-01-01/full/bk.backup"
    assert "ana@example.com" not in sanitized["nested"]["contact"]
    assert "a***@example.com" in sanitized["nested"]["contact"]
    assert "98765" not in sanitized["nested"]["contact"]
    assert sanitized["nested"]["secret_value"] == "[REDACTED]"
    assert sanitized["items"] == ["ssn ***-**-****"]


def test_mask_pii_masks_card_numbers() -> None:
    masked = mask_pii("card 4111 1111 1111 1111 on file")
    assert "4111 1111 1111 1111" not in masked
    assert masked.startswith("card 41")


@pytest.mark.asyncio
async def test_audit_logger_writes_file_and_database(tmp_path: Path, inventory) -> None:
    audit = AuditLogger(session_factory=inventory, log_dir=tmp_path / "audit")
    await audit.info(
        "backup completed for ana@example.com",
        {"artifact_id": "bk-1", "token": "t0ps3cret"},
        event_type="backup.job.completed",
        component="backup",
    )
    audit.close()

    lines = (tmp_path / "audit" / "audit.jsonl").read_text(encoding="utf-8").strip().splitlines()
    event = json.loads(lines[-1])
    assert event["event_type"] == "backup.job.completed"
    assert event["metadata"] == {"artifact_id": "bk-1", "token": "[REDACTED]"}
    assert "ana@example.com" not in event["message"]

    async with inventory() as session:
        rows = (await session.execute(select(AuditEvent))).scalars().all()
    assert [row.event_type for row in rows] == ["backup.job.completed"]
    assert rows[0].metadata_json["token"] == "[REDACTED]"
    assert rows[0].occurred_at.tzinfo is not None


@pytest.mark.asyncio
async def test_only_warnings_and_errors_reach_sinks(tmp_path: Path) -> None:
    alert = RecordingSink("alert")
    audit = AuditLogger(log_dir=tmp_path / "audit", alert_sink=alert)
    await audit.info("routine", event_type="backup.job.completed")
    await audit.warning("stuck", event_type="recovery.stuck")
    await audit.error("upload failed", event_type="backup.upload.failed")
    await audit.security_event("crypto.decrypt", {"key_id": "k"}, outcome="failure")
    await audit.flush()
    audit.close()
    assert alert.event_types() == ["recovery.stuck", "backup.upload.failed", "crypto.decrypt"]
    assert counters_snapshot()["audit_sink_delivered_total.alert"] == 3


@pytest.mark.asyncio
async def test_failing_sink_never_blocks_logging(tmp_path: Path) -> None:
    siem = FailingSink("siem")
    alert = RecordingSink("alert")
    audit = AuditLogger(log_dir=tmp_path / "audit", alert_sink=alert, siem_sink=siem)
    event = await audit.error("restore failed", event_type="recovery.failed")
    await audit.flush()
    audit.close()
    assert event["level"] == "error"
    assert siem.calls == 1
    assert alert.event_types() == ["recovery.failed"]
    assert counters_snapshot()["audit_sink_failed_total.siem"] == 1


@pytest.mark.asyncio
async def test_webhook_sink_posts_json_with_bearer_token() -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(202)

    sink = WebhookSink("siem", "https://siem.example.test/ingest", token="siem-token", transport=httpx.MockTransport(handler))
    await sink.send({"event_type": "recovery.stuck", "level": "warning"})
    assert len(received) == 1
    assert received[0].headers["Authorization"] == "Bearer siem-token"
    assert received[0].headers["X-Event-Type"] == "recovery.stuck"
    assert json.loads(received[0].content) == {"event_type": "recovery.stuck", "level": "warning"}


@pytest.mark.asyncio
async def test_webhook_sink_raises_on_client_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400)

    sink = WebhookSink("alert", "https://alerts.example.test/hook", transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.HTTPStatusError):
        await sink.send({"event_type": "backup.upload.failed"})
    assert calls["count"] == 1
