from __future__ import annotations

from typing import Iterable


class BackupVaultError(Exception):
    """Base error for BackupVault."""

    code = "BACKUPVAULT_ERROR"


class ConfigurationError(BackupVaultError):
    """Missing storage credentials, unknown providers or invalid compliance config."""

    code = "CONFIGURATION_ERROR"


class IntegrityError(BackupVaultError):
    """Authentication tag, header or checksum verification failed."""

    code = "INTEGRITY_ERROR"


class KeyNotFoundError(BackupVaultError):
    """Key id could not be resolved by the key store."""

    code = "KEY_NOT_FOUND"

    def __init__(self, key_id: str) -> None:
        super().__init__(f"encryption key not found: {key_id}")
        self.key_id = key_id


class CryptoUnavailableError(BackupVaultError):
    """Key material could not be loaded; encryption must not proceed."""

    code = "CRYPTO_UNAVAILABLE"


class TransientStorageError(BackupVaultError):
    """Network or upload failure that is safe to retry."""

    code = "STORAGE_TRANSIENT"


class StorageObjectNotFoundError(BackupVaultError):
    """Requested object does not exist in the storage backend."""

    code = "STORAGE_OBJECT_NOT_FOUND"


class ArtifactNotFoundError(BackupVaultError):
    """Artifact id is unknown or the artifact has been deleted."""

    code = "ARTIFACT_NOT_FOUND"


class BackupFailedError(BackupVaultError):
    """Backup job failed; no usable artifact was recorded for the failed scope."""

    code = "BACKUP_FAILED"

    def __init__(
        self,
        message: str,
        *,
        job_id: str | None = None,
        failed_tables: Iterable[str] = (),
        retry_eligible: bool = True,
    ) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.failed_tables = sorted(failed_tables)
        self.retry_eligible = retry_eligible


class BackupCancelledError(BackupFailedError):
    """Backup job was cancelled at a cooperative checkpoint."""

    code = "BACKUP_CANCELLED"


class InvalidJobTransitionError(BackupVaultError):
    """Job state machine received an illegal transition."""

    code = "INVALID_JOB_TRANSITION"


class RecoveryInProgressError(BackupVaultError):
    """Another recovery operation is already running."""

    code = "RECOVERY_IN_PROGRESS"


class NoBaseBackupError(BackupVaultError):
    """No full artifact exists to anchor the requested operation."""

    code = "NO_BASE_BACKUP"


class TablesNotInArtifactError(BackupVaultError):
    """Requested tables are absent from the artifact manifest."""

    code = "TABLES_NOT_IN_ARTIFACT"

    def __init__(self, artifact_id: str, missing: Iterable[str]) -> None:
        self.artifact_id = artifact_id
        self.missing = sorted(missing)
        super().__init__(f"tables not in artifact {artifact_id}: {', '.join(self.missing)}")


class BrokenChainError(BackupVaultError):
    """Incremental chain has a gap between the base and the requested point."""

    code = "BROKEN_CHAIN"


class RestoreFailedError(BackupVaultError):
    """Restore transaction failed and was rolled back."""

    code = "RESTORE_FAILED"


class ComplianceProcessingError(BackupVaultError):
    """A subject-rights request had failed per-artifact outcomes; it stays pending."""

    code = "COMPLIANCE_PROCESSING_FAILED"

    def __init__(self, request_id: str, failed_artifacts: Iterable[str]) -> None:
        self.request_id = request_id
        self.failed_artifacts = sorted(failed_artifacts)
        super().__init__(
            f"compliance request {request_id} has failed artifacts: {', '.join(self.failed_artifacts)}"
        )


class ComplianceRequestNotFoundError(BackupVaultError):
    """Compliance request id is unknown."""

    code = "COMPLIANCE_REQUEST_NOT_FOUND"


class ExportExpiredError(BackupVaultError):
    """Portability export handle is past its expiry window."""

    code = "EXPORT_EXPIRED"
