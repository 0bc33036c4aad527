"""Async engine, session scope and schema bootstrap for the analysis tables."""

from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.config.settings import settings

# Import models so they are attached to Base.metadata before table creation
from app.models import Base  # noqa: F401 - ensures metadata is registered

logger = logging.getLogger(__name__)

_SCHEMA_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_sqlite(url: str) -> bool:
    return make_url(url).get_backend_name() == "sqlite"


def _normalise_schema_name(raw_schema: str | None, url: str) -> str | None:
    """Return a usable Postgres schema name, or None for the default search_path."""

    if raw_schema is None or not raw_schema.strip():
        return None
    if _is_sqlite(url):
        logger.warning("Ignoring schema '%s': SQLite has no schemas.", raw_schema)
        return None

    schema = raw_schema.strip()
    if not _SCHEMA_NAME_PATTERN.fullmatch(schema):
        logger.warning(
            "Ignoring invalid schema name '%s'; falling back to default search_path.",
            raw_schema,
        )
        return None
    return schema


def engine_options(url: str, *, serverless: bool, debug: bool) -> dict[str, Any]:
    """Pooling and driver options for ``create_async_engine``."""

    options: dict[str, Any] = {"echo": debug, "future": True}
    if _is_sqlite(url):
        options["connect_args"] = {"check_same_thread": False}
        if make_url(url).database in (None, "", ":memory:"):
            # Every connection to an in-memory database must share one handle.
            options["poolclass"] = StaticPool
        return options

    options["pool_pre_ping"] = True
    if serverless or debug:
        # Serverless Postgres pauses between jobs; pooled connections would go stale.
        options["poolclass"] = NullPool
    return options


_SCHEMA_NAME = _normalise_schema_name(settings.database.schema_name, settings.database.url)

if _SCHEMA_NAME:
    Base.metadata.schema = _SCHEMA_NAME
    for table in Base.metadata.tables.values():
        if table.schema is None:
            table.schema = _SCHEMA_NAME


engine: AsyncEngine = create_async_engine(
    settings.database.url,
    **engine_options(
        settings.database.url,
        serverless=settings.database.serverless,
        debug=settings.debug,
    ),
)

SessionFactory = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


async def _ensure_search_path(target: Any) -> None:
    if not _SCHEMA_NAME:
        return
    quoted_schema = _SCHEMA_NAME.replace('"', '""')
    await target.execute(text(f'SET search_path TO "{quoted_schema}", public'))


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Yield a session bound to the configured schema.

    Stores and caches receive this as their ``scope`` so tests can swap in
    their own factory.
    """

    async with SessionFactory() as session:
        await _ensure_search_path(session)
        yield session


async def init_models() -> None:
    """Create the session, issue, embedding and cache tables if missing."""

    async with engine.begin() as conn:
        if _SCHEMA_NAME:
            quoted_schema = _SCHEMA_NAME.replace('"', '""')
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{quoted_schema}"'))
        await _ensure_search_path(conn)
        await conn.run_sync(Base.metadata.create_all)

    logger.info(
        "Ensured analysis tables (%s) in schema '%s'.",
        ", ".join(sorted(Base.metadata.tables)),
        _SCHEMA_NAME or "default",
    )


async def dispose_engine() -> None:
    await engine.dispose()
