from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings


engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def init_engine(url: Optional[str] = None, **engine_kwargs: Any) -> None:
    global engine, SessionLocal
    url = normalize_database_url(url or get_settings().database_url)
    if not url:
        engine = None
        SessionLocal = None
        return
    engine_kwargs.setdefault("pool_pre_ping", True)
    engine = create_async_engine(url, future=True, **engine_kwargs)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def dispose_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    if not SessionLocal:
        raise RuntimeError("Database not configured")
    async with SessionLocal() as session:
        yield session


def normalize_database_url(raw_url: Optional[str]) -> Optional[str]:
    """Ensure Postgres URLs use asyncpg and an SSL keyword asyncpg understands.

    Managed Postgres providers hand out `postgres://...?sslmode=require`; asyncpg
    wants `postgresql+asyncpg://...?ssl=require`. Non-Postgres URLs (the SQLite
    URLs used in tests) pass through untouched.
    """
    if not raw_url:
        return raw_url

    url = raw_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    parsed = urlparse(url)
    if not parsed.scheme.startswith("postgresql+asyncpg"):
        return url

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = query.pop("sslmode", None)
    if sslmode:
        query["ssl"] = sslmode.lower()
    if "ssl" in query:
        allowed = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}
        query["ssl"] = query["ssl"].lower()
        if query["ssl"] not in allowed:
            query["ssl"] = "prefer"

    normalized_query = urlencode(query)
    return urlunparse(parsed._replace(query=normalized_query))
