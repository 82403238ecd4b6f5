from __future__ import annotations

import asyncio
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, StorageObjectNotFoundError, TransientStorageError
from backupvault.services.storage.base import TIER_ARCHIVE, TIER_STANDARD


_DEFAULT_CLASSES = {TIER_STANDARD: "NEARLINE", TIER_ARCHIVE: "ARCHIVE"}


class GcsStorage:
    # Google Cloud Storage backend; tiers map onto GCS storage classes.
    provider: Final[str] = "gcs"

    def __init__(
        self,
        *,
        bucket: str,
        project: str | None = None,
        standard_class: str | None = None,
        archive_class: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket_name = bucket
        self._project = project
        self._classes = {
            TIER_STANDARD: standard_class or _DEFAULT_CLASSES[TIER_STANDARD],
            TIER_ARCHIVE: archive_class or _DEFAULT_CLASSES[TIER_ARCHIVE],
        }
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "GcsStorage":
        if not settings.storage_bucket:
            raise ConfigurationError("STORAGE_BUCKET is required for gcs storage")
        return cls(
            bucket=settings.storage_bucket,
            project=settings.storage_gcs_project,
            standard_class=settings.storage_standard_class,
            archive_class=settings.storage_archive_class,
        )

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from google.cloud import storage
            except ImportError as exc:
                raise ConfigurationError(
                    "google-cloud-storage is required for gcs storage; install backupvault[gcp]"
                ) from exc
            self._client = storage.Client(project=self._project)
        return self._client

    def _storage_class(self, tier: str) -> str:
        try:
            return self._classes[tier]
        except KeyError as exc:
            raise ConfigurationError(f"unknown storage tier: {tier}") from exc

    def _blob(self, key: str) -> Any:
        return self._get_client().bucket(self._bucket_name).blob(key)

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        storage_class = self._storage_class(tier)

        def _upload() -> None:
            blob = self._blob(key)
            blob.storage_class = storage_class
            blob.metadata = metadata or {}
            blob.upload_from_string(data, content_type="application/octet-stream")

        await asyncio.to_thread(self._guard, _upload, key)
        return f"gs://{self._bucket_name}/{key}"

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._guard, lambda: self._blob(key).download_as_bytes(), key)

    async def exists(self, bucket: str | None = None) -> bool:
        name = bucket or self._bucket_name
        return await asyncio.to_thread(self._guard, lambda: self._get_client().bucket(name).exists(), name)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._guard, lambda: self._blob(key).delete(), key)

    async def set_storage_class(self, key: str, tier: str) -> None:
        storage_class = self._storage_class(tier)
        await asyncio.to_thread(self._guard, lambda: self._blob(key).update_storage_class(storage_class), key)

    def _guard(self, func: Any, target: str) -> Any:
        from google.api_core import exceptions as gexc

        try:
            return func()
        except gexc.NotFound as exc:
            raise StorageObjectNotFoundError(f"gcs object not found: {target}") from exc
        except (gexc.ServiceUnavailable, gexc.DeadlineExceeded, gexc.InternalServerError, gexc.TooManyRequests) as exc:
            raise TransientStorageError(f"gcs unavailable: {exc}") from exc
