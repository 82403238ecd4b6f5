from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import AsyncIterator

import pytest
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backupvault.core.config import get_settings
from backupvault.core.errors import ConfigurationError
from backupvault.domain.tables import TableSpec
from backupvault.services.audit import AuditLogger
from backupvault.services.engine import build_vault
from backupvault.services.source import SqlRestoreTarget, SqlSourceReader
from backupvault.services.storage.local import LocalStorage
from backupvault.tests.utils.vault import BASE_TIME, FAST_RETRY, TEST_TABLES, seed_rows


SPECS = {spec.name: spec for spec in TEST_TABLES}


def _timestamps() -> list[Column]:
    return [Column("created_at", DateTime), Column("updated_at", DateTime), Column("deleted_at", DateTime)]


def _schema() -> MetaData:
    metadata = MetaData()
    Table("organizations", metadata, Column("id", Integer, primary_key=True), Column("name", String), *_timestamps())
    Table(
        "profiles",
        metadata,
        Column("id", String, primary_key=True),
        Column("organization_id", Integer),
        Column("email", String),
        Column("full_name", String),
        *_timestamps(),
    )
    Table(
        "pets",
        metadata,
        Column("id", String, primary_key=True),
        Column("organization_id", Integer),
        Column("owner_id", String),
        Column("name", String),
        *_timestamps(),
    )
    Table(
        "settings",
        metadata,
        Column("id", Integer, primary_key=True),
        Column("organization_id", Integer),
        Column("timezone", String),
        *_timestamps(),
    )
    return metadata


def _naive(row: dict) -> dict:
    # Plain DATETIME columns hold naive UTC wall time.
    return {name: value.replace(tzinfo=None) if isinstance(value, datetime) else value for name, value in row.items()}


async def _create(path: Path, *, seeded: bool) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    metadata = _schema()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        if seeded:
            for name, rows in seed_rows().items():
                await conn.execute(insert(metadata.tables[name]), [_naive(row) for row in rows])
    return engine


@pytest.fixture
async def source_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = await _create(tmp_path / "source.db", seeded=True)
    yield engine
    await engine.dispose()


@pytest.fixture
async def target_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = await _create(tmp_path / "target.db", seeded=False)
    yield engine
    await engine.dispose()


async def _touch(engine: AsyncEngine, table: str, row_id, **values) -> None:
    metadata = _schema()
    async with engine.begin() as conn:
        await conn.execute(update(metadata.tables[table]).where(metadata.tables[table].c.id == row_id).values(**values))


@pytest.mark.asyncio
async def test_reader_returns_rows_changed_after_watermark(source_engine) -> None:
    reader = SqlSourceReader(source_engine)
    rows = await reader.read_table(SPECS["profiles"])
    assert [row["id"] for row in rows] == ["u1", "u2"]

    assert await reader.read_table(SPECS["profiles"], since=BASE_TIME) == []
    changed_at = (BASE_TIME + timedelta(minutes=10)).replace(tzinfo=None)
    await _touch(source_engine, "profiles", "u2", full_name="Bruno L.", updated_at=changed_at)
    await _touch(source_engine, "pets", "p1", deleted_at=changed_at)

    [profile] = await reader.read_table(SPECS["profiles"], since=BASE_TIME)
    assert profile["full_name"] == "Bruno L."
    [pet] = await reader.read_table(SPECS["pets"], since=BASE_TIME)
    assert pet["id"] == "p1"


@pytest.mark.asyncio
async def test_reader_rejects_unknown_table(source_engine) -> None:
    reader = SqlSourceReader(source_engine)
    with pytest.raises(ConfigurationError):
        await reader.read_table(TableSpec(name="invoices", tier="high"))


@pytest.mark.asyncio
async def test_restore_transaction_rolls_back_on_error(target_engine) -> None:
    restore = SqlRestoreTarget(target_engine)
    spec = SPECS["organizations"]
    async with restore.transaction() as tx:
        await tx.insert(spec, [{"id": 1, "name": "Acme Pets", "created_at": "2025-12-31T00:00:00+00:00"}])

    with pytest.raises(RuntimeError):
        async with restore.transaction() as tx:
            await tx.clear(spec)
            await tx.upsert(spec, [{"id": 2, "name": "Other"}])
            raise RuntimeError("apply failed")

    assert await restore.count_rows(spec) == 1
    async with restore.transaction() as tx:
        await tx.upsert(spec, [{"id": 1, "name": "Acme Pet Care"}, {"id": 2, "name": "Other"}])
        await tx.delete(spec, [2, None])
    async with target_engine.connect() as conn:
        rows = (await conn.execute(select(_schema().tables["organizations"]))).mappings().all()
    assert [(row["id"], row["name"]) for row in rows] == [(1, "Acme Pet Care")]
    assert rows[0]["created_at"] == BASE_TIME.replace(tzinfo=None) - timedelta(days=1)


@pytest.mark.asyncio
async def test_backup_and_restore_through_sql_databases(
    tmp_path: Path, inventory, keystore, clock, source_engine, target_engine
) -> None:
    audit = AuditLogger(session_factory=inventory, log_dir=tmp_path / "audit")
    vault = build_vault(
        get_settings(),
        tables=TEST_TABLES,
        session_factory=inventory,
        keystore=keystore,
        storage=LocalStorage(tmp_path / "storage"),
        source=SqlSourceReader(source_engine),
        target=SqlRestoreTarget(target_engine),
        audit=audit,
        retry_policy=FAST_RETRY,
        clock=clock,
    )
    try:
        full = await vault.run_full_backup()
        await _touch(
            source_engine,
            "profiles",
            "u1",
            full_name="Ana S. Souza",
            updated_at=(BASE_TIME + timedelta(minutes=20)).replace(tzinfo=None),
        )
        clock.advance(hours=1)
        incremental = await vault.run_incremental_backup()
        assert incremental is not None
        assert incremental.base_artifact_id == full.id
        assert set(incremental.table_manifest) == {"profiles"}

        result = await vault.restore_complete(incremental.id)
        assert result.verified
        async with target_engine.connect() as conn:
            profiles = _schema().tables["profiles"]
            rows = (await conn.execute(select(profiles).order_by(profiles.c.id))).mappings().all()
        assert [row["full_name"] for row in rows] == ["Ana S. Souza", "Bruno Lima"]
        assert rows[1]["email"] == "bruno@example.com"
        assert rows[0]["updated_at"] == (BASE_TIME + timedelta(minutes=20)).replace(tzinfo=None)
    finally:
        await vault.close()
