from __future__ import annotations

import asyncio
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, StorageObjectNotFoundError, TransientStorageError
from backupvault.services.storage.base import TIER_ARCHIVE, TIER_STANDARD


_DEFAULT_CLASSES = {TIER_STANDARD: "Cool", TIER_ARCHIVE: "Archive"}


class AzureBlobStorage:
    # Azure Blob Storage backend; tiers map onto blob access tiers.
    provider: Final[str] = "azure"

    def __init__(
        self,
        *,
        container: str,
        connection_string: str | None = None,
        account_url: str | None = None,
        standard_class: str | None = None,
        archive_class: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._container = container
        self._connection_string = connection_string
        self._account_url = account_url
        self._classes = {
            TIER_STANDARD: standard_class or _DEFAULT_CLASSES[TIER_STANDARD],
            TIER_ARCHIVE: archive_class or _DEFAULT_CLASSES[TIER_ARCHIVE],
        }
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "AzureBlobStorage":
        if not settings.storage_bucket:
            raise ConfigurationError("STORAGE_BUCKET (container name) is required for azure storage")
        if not settings.storage_azure_connection_string and not settings.storage_azure_account_url:
            raise ConfigurationError(
                "STORAGE_AZURE_CONNECTION_STRING or STORAGE_AZURE_ACCOUNT_URL is required for azure storage"
            )
        return cls(
            container=settings.storage_bucket,
            connection_string=settings.storage_azure_connection_string,
            account_url=settings.storage_azure_account_url,
            standard_class=settings.storage_standard_class,
            archive_class=settings.storage_archive_class,
        )

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from azure.storage.blob import BlobServiceClient
            except ImportError as exc:
                raise ConfigurationError(
                    "azure-storage-blob is required for azure storage; install backupvault[azure]"
                ) from exc
            if self._connection_string:
                self._client = BlobServiceClient.from_connection_string(self._connection_string)
            else:
                from azure.identity import DefaultAzureCredential

                self._client = BlobServiceClient(account_url=self._account_url, credential=DefaultAzureCredential())
        return self._client

    def _storage_class(self, tier: str) -> str:
        try:
            return self._classes[tier]
        except KeyError as exc:
            raise ConfigurationError(f"unknown storage tier: {tier}") from exc

    def _blob(self, key: str) -> Any:
        return self._get_client().get_blob_client(container=self._container, blob=key)

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        access_tier = self._storage_class(tier)
        await asyncio.to_thread(
            self._guard,
            lambda: self._blob(key).upload_blob(
                data,
                overwrite=True,
                metadata=metadata or {},
                standard_blob_tier=access_tier,
            ),
            key,
        )
        return f"azure://{self._container}/{key}"

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._guard, lambda: self._blob(key).download_blob().readall(), key)

    async def exists(self, bucket: str | None = None) -> bool:
        name = bucket or self._container
        return await asyncio.to_thread(
            self._guard,
            lambda: self._get_client().get_container_client(name).exists(),
            name,
        )

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._guard, lambda: self._blob(key).delete_blob(), key)

    async def set_storage_class(self, key: str, tier: str) -> None:
        access_tier = self._storage_class(tier)
        await asyncio.to_thread(self._guard, lambda: self._blob(key).set_standard_blob_tier(access_tier), key)

    def _guard(self, func: Any, target: str) -> Any:
        from azure.core.exceptions import ResourceNotFoundError, ServiceRequestError, ServiceResponseError

        try:
            return func()
        except ResourceNotFoundError as exc:
            raise StorageObjectNotFoundError(f"azure blob not found: {target}") from exc
        except (ServiceRequestError, ServiceResponseError) as exc:
            raise TransientStorageError(f"azure blob storage unreachable: {exc}") from exc
