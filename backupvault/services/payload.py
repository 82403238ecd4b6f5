from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import gzip
import json
import zlib
from typing import Any

from backupvault.core.errors import BackupFailedError, IntegrityError
from backupvault.domain.models import BackupArtifact
from backupvault.domain.tables import TableSpec
from backupvault.services.crypto.envelope import EnvelopeCipher
from backupvault.services.crypto.utils import canonical_json, sha256_hex


PAYLOAD_FORMAT = 1
MODE_SNAPSHOT = "snapshot"
MODE_CHANGES = "changes"
OP_UPSERT = "upsert"
OP_DELETE = "delete"


def _as_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_timestamp(spec: TableSpec, row: dict[str, Any]) -> datetime | None:
    # A change happens at the latest of its modification and soft-delete times.
    candidates = [_as_utc(row.get(name)) for name in spec.timestamp_columns]
    if spec.soft_delete_column:
        candidates.append(_as_utc(row.get(spec.soft_delete_column)))
    present = [value for value in candidates if value is not None]
    return max(present) if present else None


def change_record(spec: TableSpec, row: dict[str, Any]) -> dict[str, Any]:
    # Explicit change kind per record; soft-deleted rows replay as deletes.
    deleted = bool(spec.soft_delete_column and row.get(spec.soft_delete_column) is not None)
    ts = record_timestamp(spec, row)
    return {
        "op": OP_DELETE if deleted else OP_UPSERT,
        "ts": ts.isoformat() if ts else None,
        "row": row,
    }


def change_time(record: dict[str, Any]) -> datetime | None:
    return _as_utc(record.get("ts"))


def table_checksum(records: list[dict[str, Any]]) -> str:
    return sha256_hex(canonical_json(records))


def manifest_entry(mode: str, records: list[dict[str, Any]], watermark: datetime | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "mode": mode,
        "rows": len(records),
        "checksum": table_checksum(records),
        "watermark": watermark.isoformat() if watermark else None,
    }
    if mode == MODE_CHANGES:
        entry["upserts"] = sum(1 for record in records if record.get("op") == OP_UPSERT)
        entry["deletes"] = sum(1 for record in records if record.get("op") == OP_DELETE)
    return entry


def build_payload(
    *,
    artifact_id: str,
    artifact_type: str,
    created_at: datetime,
    base_artifact_id: str | None,
    pii_mode: str | None,
    pii_key_id: str | None,
    tables: dict[str, dict[str, Any]],
) -> dict[str, Any]:
    return {
        "format": PAYLOAD_FORMAT,
        "artifact_id": artifact_id,
        "type": artifact_type,
        "created_at": created_at.isoformat(),
        "base_artifact_id": base_artifact_id,
        "pii": {"mode": pii_mode, "key_id": pii_key_id},
        "tables": tables,
    }


def build_manifest(payload: dict[str, Any]) -> dict[str, Any]:
    manifest: dict[str, Any] = {}
    for name, table in payload["tables"].items():
        records = table["records"]
        stamps = [change_time(record) for record in records] if table["mode"] == MODE_CHANGES else []
        watermark = max((stamp for stamp in stamps if stamp is not None), default=None)
        manifest[name] = manifest_entry(table["mode"], records, watermark)
    return manifest


async def seal_payload(
    payload: dict[str, Any],
    cipher: EnvelopeCipher,
    *,
    compression_level: int,
    context: dict[str, Any] | None = None,
) -> tuple[bytes, str, int]:
    """Serialize, gzip and encrypt a payload.

    Returns ``(blob, key_id, plaintext_bytes)``. Serialization and compression
    errors are configuration or programming defects and are not retryable.
    """
    try:
        raw = canonical_json(payload)
        compressed = await asyncio.to_thread(gzip.compress, raw, compression_level)
    except (TypeError, ValueError, zlib.error) as exc:
        raise BackupFailedError(f"payload serialization failed: {exc}", retry_eligible=False) from exc
    blob, key_id = await cipher.encrypt(compressed, context=context)
    return blob, key_id, len(raw)


async def open_payload(
    blob: bytes,
    artifact: BackupArtifact,
    cipher: EnvelopeCipher,
    *,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Verify the stored checksum before spending a decrypt on a corrupted object.
    if artifact.checksum_sha256 and sha256_hex(blob) != artifact.checksum_sha256:
        raise IntegrityError(f"artifact {artifact.id} checksum mismatch")
    compressed = await cipher.decrypt(blob, artifact.encryption_key_id, context=context)
    try:
        raw = await asyncio.to_thread(gzip.decompress, compressed)
        payload = json.loads(raw)
    except (OSError, EOFError, zlib.error, ValueError) as exc:
        raise IntegrityError(f"artifact {artifact.id} payload is not decodable") from exc
    validate_payload(payload, artifact)
    return payload


def validate_payload(payload: Any, artifact: BackupArtifact) -> None:
    """Check the decrypted payload against the inventory manifest.

    Every manifest table must be present with the recorded row count and
    checksum; a payload for a different artifact id is rejected.
    """
    if not isinstance(payload, dict) or payload.get("format") != PAYLOAD_FORMAT:
        raise IntegrityError(f"artifact {artifact.id} has an unsupported payload format")
    if payload.get("artifact_id") != artifact.id:
        raise IntegrityError(f"artifact {artifact.id} payload belongs to {payload.get('artifact_id')}")
    tables = payload.get("tables")
    if not isinstance(tables, dict):
        raise IntegrityError(f"artifact {artifact.id} payload has no table section")
    for name, entry in (artifact.table_manifest or {}).items():
        table = tables.get(name)
        if not isinstance(table, dict) or not isinstance(table.get("records"), list):
            raise IntegrityError(f"artifact {artifact.id} is missing table {name}")
        records = table["records"]
        if len(records) != entry.get("rows"):
            raise IntegrityError(f"artifact {artifact.id} table {name} row count mismatch")
        if table_checksum(records) != entry.get("checksum"):
            raise IntegrityError(f"artifact {artifact.id} table {name} checksum mismatch")
