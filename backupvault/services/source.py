from __future__ import annotations

import base64
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Protocol
import uuid

from sqlalchemy import Column, MetaData, Table, delete, func, insert, or_, select, types
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from backupvault.core.errors import ConfigurationError
from backupvault.domain.tables import TableSpec


logger = logging.getLogger(__name__)

# Rows per executemany batch on restore.
_BATCH_SIZE = 1000


@dataclass(frozen=True)
class TableCapture:
    table: str
    mode: str
    records: list[dict[str, Any]]
    watermark: str | None = None


class SourceReader(Protocol):
    # Row reader over the operational database; ``since`` selects rows changed after a watermark.
    async def read_table(self, spec: TableSpec, *, since: datetime | None = None) -> list[dict[str, Any]]:
        ...


class RestoreTransaction(Protocol):
    async def clear(self, spec: TableSpec) -> None:
        ...

    async def insert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        ...

    async def upsert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        ...

    async def delete(self, spec: TableSpec, keys: list[Any]) -> None:
        ...


class RestoreTarget(Protocol):
    """Transactional sink for restores.

    Everything applied through one ``transaction()`` context either commits
    together or rolls back when the block raises.
    """

    def transaction(self) -> AsyncContextManager[RestoreTransaction]:
        ...

    async def count_rows(self, spec: TableSpec) -> int:
        ...


class _ReflectedTables:
    # Reflect table metadata lazily and cache it per engine.
    def __init__(self) -> None:
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    async def get(self, conn: AsyncConnection, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table

        def _reflect(sync_conn: Any) -> Table:
            return Table(name, self._metadata, autoload_with=sync_conn)

        try:
            table = await conn.run_sync(_reflect)
        except Exception as exc:  # noqa: BLE001 - NoSuchTableError and driver errors both mean misconfiguration
            raise ConfigurationError(f"table {name} is not available in the database: {exc}") from exc
        self._tables[name] = table
        return table


def _bind_timestamp(column: Column, value: datetime) -> datetime:
    # Naive timestamp columns store UTC wall time; drivers reject aware values for them.
    if getattr(column.type, "timezone", False):
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SqlSourceReader:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._tables = _ReflectedTables()

    async def read_table(self, spec: TableSpec, *, since: datetime | None = None) -> list[dict[str, Any]]:
        async with self._engine.connect() as conn:
            table = await self._tables.get(conn, spec.name)
            stmt = select(table)
            if since is not None:
                tracked = [name for name in spec.timestamp_columns if name in table.c]
                if spec.soft_delete_column and spec.soft_delete_column in table.c:
                    tracked.append(spec.soft_delete_column)
                if tracked:
                    stmt = stmt.where(
                        or_(*(table.c[name] > _bind_timestamp(table.c[name], since) for name in tracked))
                    )
            if spec.primary_key in table.c:
                stmt = stmt.order_by(table.c[spec.primary_key])
            result = await conn.execute(stmt)
            return [dict(row) for row in result.mappings().all()]


def _coerce(column: Column, value: Any) -> Any:
    # Payload rows are JSON; turn encoded scalars back into the column's Python type.
    if value is None:
        return None
    column_type = column.type
    if isinstance(value, dict) and set(value) == {"$b64"}:
        return base64.b64decode(value["$b64"])
    if isinstance(value, str):
        if isinstance(column_type, types.DateTime):
            parsed = datetime.fromisoformat(value)
            if not getattr(column_type, "timezone", False) and parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        if isinstance(column_type, types.Date):
            return date.fromisoformat(value)
        if isinstance(column_type, types.Numeric) and not isinstance(column_type, types.Float):
            return Decimal(value)
        if isinstance(column_type, types.Uuid) and getattr(column_type, "as_uuid", False):
            return uuid.UUID(value)
    return value


class _SqlRestoreTransaction:
    def __init__(self, conn: AsyncConnection, tables: _ReflectedTables) -> None:
        self._conn = conn
        self._tables = tables

    async def _prepare(self, spec: TableSpec, rows: list[dict[str, Any]]) -> tuple[Table, list[dict[str, Any]]]:
        table = await self._tables.get(self._conn, spec.name)
        prepared = [
            {name: _coerce(table.c[name], value) for name, value in row.items() if name in table.c}
            for row in rows
        ]
        return table, prepared

    async def clear(self, spec: TableSpec) -> None:
        table = await self._tables.get(self._conn, spec.name)
        await self._conn.execute(delete(table))

    async def insert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        table, prepared = await self._prepare(spec, rows)
        for start in range(0, len(prepared), _BATCH_SIZE):
            await self._conn.execute(insert(table), prepared[start : start + _BATCH_SIZE])

    async def upsert(self, spec: TableSpec, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        table, prepared = await self._prepare(spec, rows)
        dialect = self._conn.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
        else:
            # No native upsert: replace by primary key inside the same transaction.
            await self.delete(spec, [row.get(spec.primary_key) for row in rows])
            await self.insert(spec, rows)
            return
        for row in prepared:
            stmt = dialect_insert(table).values(**row)
            updates = {name: stmt.excluded[name] for name in row if name != spec.primary_key}
            if updates:
                stmt = stmt.on_conflict_do_update(index_elements=[table.c[spec.primary_key]], set_=updates)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[table.c[spec.primary_key]])
            await self._conn.execute(stmt)

    async def delete(self, spec: TableSpec, keys: list[Any]) -> None:
        keys = [key for key in keys if key is not None]
        if not keys:
            return
        table = await self._tables.get(self._conn, spec.name)
        pk = table.c[spec.primary_key]
        coerced = [_coerce(pk, key) for key in keys]
        for start in range(0, len(coerced), _BATCH_SIZE):
            await self._conn.execute(delete(table).where(pk.in_(coerced[start : start + _BATCH_SIZE])))


class SqlRestoreTarget:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._tables = _ReflectedTables()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqlRestoreTransaction]:
        # engine.begin() commits on clean exit and rolls back when the block raises.
        async with self._engine.begin() as conn:
            yield _SqlRestoreTransaction(conn, self._tables)

    async def count_rows(self, spec: TableSpec) -> int:
        async with self._engine.connect() as conn:
            table = await self._tables.get(conn, spec.name)
            result = await conn.execute(select(func.count()).select_from(table))
            return int(result.scalar_one())
