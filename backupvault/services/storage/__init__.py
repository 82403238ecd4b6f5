from __future__ import annotations

from backupvault.core.config import Settings, get_settings
from backupvault.core.errors import ConfigurationError
from backupvault.services.storage.azure import AzureBlobStorage
from backupvault.services.storage.base import (
    STORAGE_TIERS,
    TIER_ARCHIVE,
    TIER_STANDARD,
    StorageBackend,
    secure_delete,
)
from backupvault.services.storage.gcs import GcsStorage
from backupvault.services.storage.local import LocalStorage
from backupvault.services.storage.s3 import S3Storage


_BACKENDS = {
    "local": LocalStorage,
    "s3": S3Storage,
    "gcs": GcsStorage,
    "azure": AzureBlobStorage,
}


def build_storage(settings: Settings | None = None) -> StorageBackend:
    # Select the backend once at startup; business logic only sees the protocol.
    settings = settings or get_settings()
    backend_cls = _BACKENDS.get(settings.storage_provider)
    if backend_cls is None:
        raise ConfigurationError(f"Unsupported storage provider: {settings.storage_provider}")
    return backend_cls.from_settings(settings)


__all__ = [
    "AzureBlobStorage",
    "GcsStorage",
    "LocalStorage",
    "S3Storage",
    "STORAGE_TIERS",
    "StorageBackend",
    "TIER_ARCHIVE",
    "TIER_STANDARD",
    "build_storage",
    "secure_delete",
]
