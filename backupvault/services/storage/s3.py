from __future__ import annotations

import asyncio
from typing import Any, Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, StorageObjectNotFoundError, TransientStorageError
from backupvault.services.storage.base import TIER_ARCHIVE, TIER_STANDARD


_DEFAULT_CLASSES = {TIER_STANDARD: "STANDARD_IA", TIER_ARCHIVE: "GLACIER"}
_TRANSIENT_CODES = {"SlowDown", "InternalError", "ServiceUnavailable", "RequestTimeout", "Throttling"}
_TRANSIENT_NAMES = {"EndpointConnectionError", "ConnectTimeoutError", "ReadTimeoutError", "ConnectionClosedError"}


class S3Storage:
    # Amazon S3 backend; tiers map onto S3 storage classes.
    provider: Final[str] = "s3"

    def __init__(
        self,
        *,
        bucket: str,
        region: str | None = None,
        standard_class: str | None = None,
        archive_class: str | None = None,
        client: Any | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._classes = {
            TIER_STANDARD: standard_class or _DEFAULT_CLASSES[TIER_STANDARD],
            TIER_ARCHIVE: archive_class or _DEFAULT_CLASSES[TIER_ARCHIVE],
        }
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Storage":
        if not settings.storage_bucket:
            raise ConfigurationError("STORAGE_BUCKET is required for s3 storage")
        return cls(
            bucket=settings.storage_bucket,
            region=settings.storage_region,
            standard_class=settings.storage_standard_class,
            archive_class=settings.storage_archive_class,
        )

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import boto3
            except ImportError as exc:
                raise ConfigurationError("boto3 is required for s3 storage; install backupvault[aws]") from exc
            self._client = boto3.client("s3", region_name=self._region)
        return self._client

    def _storage_class(self, tier: str) -> str:
        try:
            return self._classes[tier]
        except KeyError as exc:
            raise ConfigurationError(f"unknown storage tier: {tier}") from exc

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        storage_class = self._storage_class(tier)
        await asyncio.to_thread(
            self._call,
            "put_object",
            Bucket=self._bucket,
            Key=key,
            Body=data,
            Metadata=metadata or {},
            StorageClass=storage_class,
        )
        return f"s3://{self._bucket}/{key}"

    async def get(self, key: str) -> bytes:
        response = await asyncio.to_thread(self._call, "get_object", Bucket=self._bucket, Key=key)
        return await asyncio.to_thread(response["Body"].read)

    async def exists(self, bucket: str | None = None) -> bool:
        try:
            await asyncio.to_thread(self._call, "head_bucket", Bucket=bucket or self._bucket)
        except StorageObjectNotFoundError:
            return False
        return True

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._call, "delete_object", Bucket=self._bucket, Key=key)

    async def set_storage_class(self, key: str, tier: str) -> None:
        # S3 changes the class of an existing object through an in-place copy.
        await asyncio.to_thread(
            self._call,
            "copy_object",
            Bucket=self._bucket,
            Key=key,
            CopySource={"Bucket": self._bucket, "Key": key},
            StorageClass=self._storage_class(tier),
            MetadataDirective="COPY",
        )

    def _call(self, method: str, **kwargs: Any) -> Any:
        client = self._get_client()
        try:
            return getattr(client, method)(**kwargs)
        except Exception as exc:  # noqa: BLE001 - botocore error classes are resolved at runtime
            raise _classify(exc, kwargs.get("Key") or kwargs.get("Bucket")) from exc


def _classify(exc: Exception, target: str | None) -> Exception:
    name = type(exc).__name__
    if name in _TRANSIENT_NAMES:
        return TransientStorageError(f"s3 unreachable: {name}")
    response = getattr(exc, "response", None) or {}
    error = response.get("Error", {})
    code = str(error.get("Code", ""))
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if code in {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}:
        return StorageObjectNotFoundError(f"s3 object not found: {target}")
    if code in _TRANSIENT_CODES or (isinstance(status, int) and status >= 500):
        return TransientStorageError(f"s3 error: {code or status}")
    return ConfigurationError(f"s3 rejected the request: {code or name}")
