from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Final

from backupvault.core.config import Settings
from backupvault.core.errors import ConfigurationError, StorageObjectNotFoundError
from backupvault.services.storage.base import STORAGE_TIERS, TIER_STANDARD


_META_SUFFIX = ".meta.json"


class LocalStorage:
    # Filesystem fallback; the storage tier is tracked in a JSON sidecar next to each object.
    provider: Final[str] = "local"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalStorage":
        return cls(settings.storage_local_dir)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        # Keys are relative object names; reject anything escaping the root.
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ConfigurationError(f"storage key escapes the storage root: {key}")
        return path

    def _meta_path(self, key: str) -> Path:
        path = self._path(key)
        return path.with_name(path.name + _META_SUFFIX)

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        return await asyncio.to_thread(self._put_sync, key, data, metadata or {}, tier)

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._get_sync, key)

    async def exists(self, bucket: str | None = None) -> bool:
        target = self._root / bucket if bucket else self._root
        return await asyncio.to_thread(target.is_dir)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def set_storage_class(self, key: str, tier: str) -> None:
        await asyncio.to_thread(self._set_tier_sync, key, tier)

    async def object_tier(self, key: str) -> str:
        meta = await asyncio.to_thread(self._read_meta, key)
        return str(meta.get("tier", TIER_STANDARD))

    def _put_sync(self, key: str, data: bytes, metadata: dict[str, str], tier: str) -> str:
        if tier not in STORAGE_TIERS:
            raise ConfigurationError(f"unknown storage tier: {tier}")
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        self._write_meta(key, {"tier": tier, "metadata": metadata})
        return f"file://{path}"

    def _get_sync(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise StorageObjectNotFoundError(f"object not found: {key}")
        return path.read_bytes()

    def _delete_sync(self, key: str) -> None:
        path = self._path(key)
        if not path.is_file():
            raise StorageObjectNotFoundError(f"object not found: {key}")
        path.unlink()
        self._meta_path(key).unlink(missing_ok=True)

    def _set_tier_sync(self, key: str, tier: str) -> None:
        if tier not in STORAGE_TIERS:
            raise ConfigurationError(f"unknown storage tier: {tier}")
        if not self._path(key).is_file():
            raise StorageObjectNotFoundError(f"object not found: {key}")
        meta = self._read_meta(key)
        meta["tier"] = tier
        self._write_meta(key, meta)

    def _read_meta(self, key: str) -> dict:
        meta_path = self._meta_path(key)
        if not meta_path.is_file():
            return {}
        return json.loads(meta_path.read_text(encoding="utf-8"))

    def _write_meta(self, key: str, meta: dict) -> None:
        meta_path = self._meta_path(key)
        tmp_path = meta_path.with_name(meta_path.name + ".tmp")
        tmp_path.write_text(json.dumps(meta, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, meta_path)
