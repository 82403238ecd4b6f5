from __future__ import annotations

from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from backupvault.core.config import get_settings
from backupvault.persistence.db import init_models
from backupvault.services.audit import AuditLogger
from backupvault.services.crypto.keystore.local import LocalKeyStore
from backupvault.services.engine import BackupVault, build_vault
from backupvault.services.storage.base import StorageBackend
from backupvault.services.storage.local import LocalStorage
from backupvault.services.telemetry import reset_telemetry
from backupvault.tests.utils.fakes import Clock, FakeSource, FakeTarget, RecordingSink
from backupvault.tests.utils.vault import BASE_TIME, FAST_RETRY, TEST_TABLES, seed_rows


@pytest.fixture(autouse=True)
def backupvault_env(monkeypatch, tmp_path: Path):
    # Point every file-backed setting at the test's temp dir and start from clean metrics.
    monkeypatch.setenv("AUDIT_LOG_DIR", str(tmp_path / "audit"))
    monkeypatch.setenv("STORAGE_LOCAL_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("STORAGE_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("INVENTORY_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    monkeypatch.delenv("OPS_API_TOKEN", raising=False)
    monkeypatch.delenv("STORAGE_PROVIDER", raising=False)
    monkeypatch.delenv("KMS_PROVIDER", raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def inventory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await init_models(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    return Clock(BASE_TIME)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(seed_rows())


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def keystore() -> LocalKeyStore:
    return LocalKeyStore()


@pytest.fixture
def alert_sink() -> RecordingSink:
    return RecordingSink("alert")


@pytest.fixture
async def make_vault(
    tmp_path: Path,
    inventory,
    source: FakeSource,
    target: FakeTarget,
    keystore: LocalKeyStore,
    clock: Clock,
    alert_sink: RecordingSink,
) -> AsyncIterator[Callable[..., BackupVault]]:
    created: list[BackupVault] = []

    def _make(
        *,
        storage: StorageBackend | None = None,
        overrides: dict[str, Any] | None = None,
        tables=TEST_TABLES,
    ) -> BackupVault:
        settings = get_settings()
        if overrides:
            settings = settings.model_copy(update=overrides)
        audit = AuditLogger(session_factory=inventory, log_dir=tmp_path / "audit", alert_sink=alert_sink)
        vault = build_vault(
            settings,
            tables=tables,
            session_factory=inventory,
            keystore=keystore,
            storage=storage or LocalStorage(tmp_path / "storage"),
            source=source,
            target=target,
            audit=audit,
            retry_policy=FAST_RETRY,
            clock=clock,
        )
        created.append(vault)
        return vault

    yield _make
    for vault in created:
        await vault.close()


@pytest.fixture
def vault(make_vault) -> BackupVault:
    return make_vault()
