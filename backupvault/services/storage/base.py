from __future__ import annotations

import logging
import os
from typing import Any, Protocol


logger = logging.getLogger(__name__)

TIER_STANDARD = "standard"
TIER_ARCHIVE = "archive"
STORAGE_TIERS = (TIER_STANDARD, TIER_ARCHIVE)
# Overwrite in bounded chunks so secure deletion of large artifacts stays flat in memory.
_OVERWRITE_CHUNK = 8 * 1024 * 1024


class StorageBackend(Protocol):
    """Object storage collaborator.

    ``put`` returns a provider-qualified location string recorded on the
    artifact; ``tier`` is a cost-class hint mapped to the provider's storage
    class. Missing objects raise ``StorageObjectNotFoundError`` and retryable
    network failures raise ``TransientStorageError``.
    """

    provider: str

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def exists(self, bucket: str | None = None) -> bool:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def set_storage_class(self, key: str, tier: str) -> None:
        ...


def object_metadata(values: dict[str, Any]) -> dict[str, str]:
    # Object metadata is string-only on every provider.
    return {str(key): str(value) for key, value in values.items() if value is not None}


async def secure_delete(storage: StorageBackend, key: str, size_bytes: int) -> None:
    # Replace the object body with random bytes before deleting it.
    size = max(int(size_bytes), 1)
    noise = bytearray()
    while len(noise) < size:
        noise.extend(os.urandom(min(_OVERWRITE_CHUNK, size - len(noise))))
    await storage.put(key, bytes(noise), {"overwritten": "true"})
    await storage.delete(key)
    logger.info("storage_secure_delete provider=%s key=%s bytes=%s", storage.provider, key, size)
