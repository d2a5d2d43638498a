from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantgate.core.config import Settings, get_settings
from tenantgate.domain.models import Base


def build_engine(settings: Settings, database_url: str | None = None) -> AsyncEngine:
    # Bounded pools with a short acquisition timeout so security checks fail closed quickly.
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = settings.db_acquire_timeout_s
        engine_kwargs["pool_recycle"] = 1800
        connect_args: dict[str, Any] = {"timeout": settings.db_acquire_timeout_s}
        if settings.db_statement_timeout_ms > 0:
            connect_args["server_settings"] = {
                "statement_timeout": str(int(settings.db_statement_timeout_ms))
            }
        engine_kwargs["connect_args"] = connect_args
    return create_async_engine(url, **engine_kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


settings = get_settings()
engine = build_engine(settings)
SessionLocal = build_sessionmaker(engine)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


async def create_schema(target: AsyncEngine) -> None:
    # Bootstrap tables for tests and local runs; production schemas are managed externally.
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose DB pool counters for health checks without querying Postgres internals.
    pool = (target or engine).sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    size_fn = getattr(pool, "size", None)
    overflow_fn = getattr(pool, "overflow", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
