from __future__ import annotations

from pathlib import Path

import pytest

from backupvault.core.config import get_settings
from backupvault.core.errors import ConfigurationError, StorageObjectNotFoundError
from backupvault.services.storage import LocalStorage, build_storage, secure_delete
from backupvault.services.storage.base import TIER_ARCHIVE, TIER_STANDARD, object_metadata


@pytest.mark.asyncio
async def test_local_storage_put_get_delete(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "objects")
    location = await storage.put("backups/2026-01-01/full/a.backup", b"payload", {"artifact_id": "a"})
    assert location.startswith("file://")
    assert await storage.get("backups/2026-01-01/full/a.backup") == b"payload"
    assert await storage.exists()
    assert await storage.object_tier("backups/2026-01-01/full/a.backup") == TIER_STANDARD

    await storage.delete("backups/2026-01-01/full/a.backup")
    with pytest.raises(StorageObjectNotFoundError):
        await storage.get("backups/2026-01-01/full/a.backup")
    with pytest.raises(StorageObjectNotFoundError):
        await storage.delete("backups/2026-01-01/full/a.backup")


@pytest.mark.asyncio
async def test_local_storage_tracks_storage_class(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path)
    await storage.put("k.backup", b"x", tier=TIER_ARCHIVE)
    assert await storage.object_tier("k.backup") == TIER_ARCHIVE
    await storage.set_storage_class("k.backup", TIER_STANDARD)
    assert await storage.object_tier("k.backup") == TIER_STANDARD
    with pytest.raises(ConfigurationError):
        await storage.set_storage_class("k.backup", "glacier")
    with pytest.raises(StorageObjectNotFoundError):
        await storage.set_storage_class("missing.backup", TIER_ARCHIVE)


@pytest.mark.asyncio
async def test_local_storage_rejects_keys_outside_root(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path / "objects")
    with pytest.raises(ConfigurationError):
        await storage.put("../escape.backup", b"x")


@pytest.mark.asyncio
async def test_secure_delete_overwrites_then_removes(tmp_path: Path) -> None:
    storage = LocalStorage(tmp_path)
    await storage.put("pii.backup", b"sensitive rows")
    await secure_delete(storage, "pii.backup", 14)
    assert not (tmp_path / "pii.backup").exists()
    assert not (tmp_path / "pii.backup.meta.json").exists()


def test_build_storage_uses_configured_local_dir(tmp_path: Path) -> None:
    storage = build_storage(get_settings())
    assert storage.provider == "local"
    assert Path(storage.root) == tmp_path / "storage"


def test_object_metadata_stringifies_and_drops_none() -> None:
    assert object_metadata({"size": 10, "key_id": None, "type": "full"}) == {"size": "10", "type": "full"}
