from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class JSONType(TypeDecorator):
    # JSONB on PostgreSQL, generic JSON elsewhere so the inventory also runs on SQLite.
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo; normalize both directions so comparisons stay aware.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class BackupArtifact(Base):
    __tablename__ = "backup_artifacts"
    __table_args__ = (
        Index("ix_backup_artifacts_type_created", "artifact_type", "created_at"),
        Index("ix_backup_artifacts_base", "base_artifact_id"),
    )

    # Time-ordered id: bk-<capture start>-<random suffix>.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    artifact_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="available")
    # Capture start time; doubles as the watermark for the next incremental.
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    base_artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    storage_location: Mapped[str] = mapped_column(String)
    storage_key: Mapped[str] = mapped_column(String)
    storage_tier: Mapped[str] = mapped_column(String, default="standard")
    checksum_sha256: Mapped[str] = mapped_column(String)
    encryption_key_id: Mapped[str] = mapped_column(String)
    # Key and mode used to pseudonymize PII inside the payload.
    pii_key_id: Mapped[str | None] = mapped_column(String, nullable=True)
    pii_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    contains_pii: Mapped[bool] = mapped_column(Boolean, default=False)
    contains_critical: Mapped[bool] = mapped_column(Boolean, default=False)
    # Per-table row counts, checksums and capture mode for changed tables.
    table_manifest: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Every table scanned successfully, changed or not; drives per-table watermarks.
    scanned_tables: Mapped[list[str]] = mapped_column(JSONType, default=list)
    retry_tables: Mapped[list[str]] = mapped_column(JSONType, default=list)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    legal_hold: Mapped[bool] = mapped_column(Boolean, default=False)
    legal_hold_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    processing_restricted: Mapped[bool] = mapped_column(Boolean, default=False)
    # Recovery operation currently reading this artifact.
    in_use_by: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class BackupJob(Base):
    __tablename__ = "backup_jobs"
    __table_args__ = (
        Index("ix_backup_jobs_status", "status"),
        Index("ix_backup_jobs_queued_at", "queued_at"),
    )

    # Persist job lifecycle for metrics and audit reporting.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    backup_type: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    queued_at: Mapped[datetime] = mapped_column(UTCDateTime)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    artifact_id: Mapped[str | None] = mapped_column(String, nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    failed_tables: Mapped[list[str]] = mapped_column(JSONType, default=list)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class EncryptionKey(Base):
    __tablename__ = "encryption_keys"

    # Key metadata only; material lives in the key store under the same id.
    key_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    rotated_from: Mapped[str | None] = mapped_column(String, nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reason: Mapped[str | None] = mapped_column(String, nullable=True)


class PseudonymMapping(Base):
    __tablename__ = "pseudonym_mappings"
    __table_args__ = (
        UniqueConstraint("pseudonym", "field_name", name="uq_pseudonym_mappings_field"),
    )

    # Reverse mappings kept only when a regime requires portability; values stay encrypted.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    pseudonym: Mapped[str] = mapped_column(String, index=True)
    field_name: Mapped[str] = mapped_column(String)
    key_id: Mapped[str] = mapped_column(String)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)


class ComplianceRequest(Base):
    __tablename__ = "compliance_requests"
    __table_args__ = (
        Index("ix_compliance_requests_status", "status"),
        Index("ix_compliance_requests_subject", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_type: Mapped[str] = mapped_column(String)
    subject_id: Mapped[str] = mapped_column(String)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime)
    status: Mapped[str] = mapped_column(String, default="pending")
    # Request parameters such as export format or rectified field values.
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    affected_artifact_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    result_log: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class ExportHandle(Base):
    __tablename__ = "export_handles"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    subject_id: Mapped[str] = mapped_column(String)
    export_format: Mapped[str] = mapped_column(String)
    storage_key: Mapped[str] = mapped_column(String)
    encryption_key_id: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime)
    purged_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RecoveryOperation(Base):
    __tablename__ = "recovery_operations"
    __table_args__ = (Index("ix_recovery_operations_status", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    strategy: Mapped[str] = mapped_column(String)
    source_artifact_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    target_timestamp: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    table_subset: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String)
    # Per-table expected/actual counts recorded after commit.
    verification: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class RecoveryLock(Base):
    __tablename__ = "recovery_lock"

    # Single row; holder is set by compare-and-swap to enforce one running restore.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    holder: Mapped[str | None] = mapped_column(String, nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class RetentionRun(Base):
    __tablename__ = "retention_runs"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived: Mapped[list[str]] = mapped_column(JSONType, default=list)
    deleted: Mapped[list[str]] = mapped_column(JSONType, default=list)
    held: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict)
    failed: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    level: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String, index=True)
    component: Mapped[str | None] = mapped_column(String, nullable=True)
    outcome: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    # Sanitized before persistence; never holds key material or raw PII.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
