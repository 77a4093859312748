"""
Database Wiring
===============
Async engine, session factory and store error translation.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import DatabaseConfig
from .exceptions import InfrastructureError
from .models import Base

logger = logging.getLogger(__name__)

SYNC_TABLES = (
    "external_document_sources",
    "external_document_source_secrets",
    "external_document_source_runs",
    "external_document_source_items",
    "external_sources_cron_secrets",
)

MISSING_SCHEMA_HINT = (
    "External sources tables are missing. Apply the database migrations "
    f"that create: {', '.join(SYNC_TABLES)}."
)

UNREACHABLE_HINT = (
    "The database could not be reached. Check EXTERNAL_SOURCES_DATABASE_URL "
    "and that the server accepts connections."
)


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the async engine for the configured URL."""
    kwargs = {"echo": config.echo}
    if not config.url.startswith("sqlite"):
        kwargs["pool_size"] = config.pool_size
        kwargs["pool_pre_ping"] = True
    return create_async_engine(config.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all sync tables (development and tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("External sources schema created")


def _is_missing_relation(error: DBAPIError) -> bool:
    text = str(error.orig if error.orig is not None else error).lower()
    return (
        "does not exist" in text
        or "no such table" in text
        or "undefinedtable" in type(error.orig).__name__.lower()
    )


def translate_store_error(error: DBAPIError) -> InfrastructureError:
    """Map a driver error to an InfrastructureError with an operator hint."""
    if _is_missing_relation(error):
        return InfrastructureError("External sources schema is not installed", hint=MISSING_SCHEMA_HINT)
    return InfrastructureError("Database unavailable", hint=UNREACHABLE_HINT)


@asynccontextmanager
async def store_errors() -> AsyncIterator[None]:
    """Re-raise schema and connectivity failures as InfrastructureError."""
    try:
        yield
    except (OperationalError, ProgrammingError) as e:
        infra = translate_store_error(e)
        logger.error(f"{infra.message}: {e}")
        raise infra from e
    except OSError as e:
        logger.error(f"Database connection failed: {e}")
        raise InfrastructureError("Database unavailable", hint=UNREACHABLE_HINT) from e
