from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import copy
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, AsyncIterator

from backupvault.core.errors import TransientStorageError
from backupvault.domain.tables import TableSpec
from backupvault.services.payload import record_timestamp
from backupvault.services.storage.base import TIER_STANDARD
from backupvault.services.storage.local import LocalStorage


class Clock:
    # Settable clock shared by every component of a test vault.
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeSource:
    """In-memory operational database keyed by table name.

    ``since`` filtering uses the same change timestamp rules as real captures.
    """

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [dict(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.failures: dict[str, Exception] = {}
        self.reads: list[tuple[str, datetime | None]] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    def upsert(self, table: str, row: dict[str, Any], *, primary_key: str = "id") -> None:
        rows = self.tables.setdefault(table, [])
        for index, existing in enumerate(rows):
            if existing.get(primary_key) == row.get(primary_key):
                rows[index] = {**existing, **row}
                return
        rows.append(dict(row))

    async def read_table(self, spec: TableSpec, *, since: datetime | None = None) -> list[dict[str, Any]]:
        self.reads.append((spec.name, since))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if spec.name in self.failures:
            raise self.failures[spec.name]
        rows = [dict(row) for row in self.tables.get(spec.name, [])]
        if since is None:
            return rows
        changed = []
        for row in rows:
            stamp = record_timestamp(spec, row)
            if stamp is not None and stamp > since:
                changed.append(row)
        return changed


class _FakeTransaction:
    def __init__(self, tables: dict[str, dict[Any, dict[str, Any]]], fail_on_table: str | None) -> None:
        self._tables = tables
        self._fail_on_table = fail_on_table

    def _table(self, spec: TableSpec) -> dict[Any, dict[str, Any]]:
        if spec.name == self._fail_on_table:
            raise RuntimeError(f"simulated constraint violation on {spec.name}")
        return self._tables.setdefault(spec.name, {})

    async def clear(self, spec: TableSpec) -> None:
        self._table(spec).clear()

    async def insert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        table = self._table(spec)
        for row in rows:
            key = row[spec.primary_key]
            if key in table:
                raise ValueError(f"duplicate key {key} in {spec.name}")
            table[key] = dict(row)

    async def upsert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        table = self._table(spec)
        for row in rows:
            table[row[spec.primary_key]] = dict(row)

    async def delete(self, spec: TableSpec, keys: list[Any]) -> None:
        table = self._table(spec)
        for key in keys:
            table.pop(key, None)


class FakeTarget:
    """Restore target whose transaction commits only when the block exits cleanly."""

    def __init__(self, tables: dict[str, dict[Any, dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, dict[Any, dict[str, Any]]] = copy.deepcopy(tables or {})
        self.fail_on_table: str | None = None
        self.count_offsets: dict[str, int] = {}
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.commits = 0

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_FakeTransaction]:
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        working = copy.deepcopy(self.tables)
        yield _FakeTransaction(working, self.fail_on_table)
        self.tables = working
        self.commits += 1

    async def count_rows(self, spec: TableSpec) -> int:
        return len(self.tables.get(spec.name, {})) + self.count_offsets.get(spec.name, 0)

    def rows(self, table: str) -> dict[Any, dict[str, Any]]:
        return self.tables.get(table, {})


class FlakyStorage(LocalStorage):
    # Local storage that raises transient errors for the first N uploads.
    def __init__(self, root: str | Path, *, put_failures: int = 0) -> None:
        super().__init__(root)
        self.put_failures = put_failures
        self.put_attempts = 0

    async def put(
        self,
        key: str,
        data: bytes,
        metadata: dict[str, str] | None = None,
        *,
        tier: str = TIER_STANDARD,
    ) -> str:
        self.put_attempts += 1
        if self.put_failures > 0:
            self.put_failures -= 1
            raise TransientStorageError("simulated upload failure")
        return await super().put(key, data, metadata, tier=tier)


class RecordingSink:
    def __init__(self, name: str = "alert") -> None:
        self.name = name
        self.events: list[dict[str, Any]] = []

    async def send(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def event_types(self) -> list[str]:
        return [event["event_type"] for event in self.events]


class FailingSink:
    def __init__(self, name: str = "siem") -> None:
        self.name = name
        self.calls = 0

    async def send(self, event: dict[str, Any]) -> None:
        self.calls += 1
        raise ConnectionError("sink endpoint unreachable")
