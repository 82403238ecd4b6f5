from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from backupvault.core.config import get_settings
from backupvault.domain.models import Base


def build_engine(url: str) -> AsyncEngine:
    # Configure bounded asyncpg pools; SQLite uses its default pool.
    settings = get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(url, **engine_kwargs)


async def init_models(engine: AsyncEngine) -> None:
    # Create inventory tables when missing; safe to call on every startup.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
