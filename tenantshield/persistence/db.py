from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantshield.core.config import get_settings


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not database_url.startswith("sqlite"):
        kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
        kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
        if settings.api_db_statement_timeout_ms > 0:
            kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
            }
    return kwargs


settings = get_settings()
engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

# Vector records can live in a dedicated pgvector database.
if settings.vector_database_url and settings.vector_database_url != settings.database_url:
    vector_engine = create_async_engine(
        settings.vector_database_url, **_engine_kwargs(settings.vector_database_url)
    )
    VectorSessionLocal = async_sessionmaker(vector_engine, expire_on_commit=False)
else:
    vector_engine = engine
    VectorSessionLocal = SessionLocal


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
