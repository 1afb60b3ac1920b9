"""Database configuration and session management for FastAPI.

This module uses SQLAlchemy's asyncio support.  SQLite (through
aiosqlite) is the default store for local and single-instance
deployments; PostgreSQL (through asyncpg) is selected with
``FUNNEL_DB_TYPE=postgresql`` or an explicit ``FUNNEL_DATABASE_URL``.
"""

import logging
import os
from pathlib import Path
from typing import Any, AsyncGenerator

from sqlalchemy import event, inspect
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .catalog import DEFAULT_ORDER_SETS
from .models import Base, OrderSet
from .settings import settings


logger = logging.getLogger("lead-funnel")

EXTENDED_SESSION_COLUMNS = frozenset({"messages", "metadata", "question_answers"})


def _make_database_url() -> str:
    """Construct a database URL from settings and environment variables.

    - FUNNEL_DATABASE_URL / DATABASE_URL: used as-is, except that plain
      ``postgres://`` and ``postgresql://`` schemes are pointed at the
      asyncpg driver.
    - FUNNEL_DB_TYPE=postgresql: assembled from DB_USER, DB_PASSWORD,
      DB_NAME, DB_HOST and DB_PORT.
    - Otherwise a SQLite file at FUNNEL_DB_PATH.
    """
    explicit_url = settings.database_url or os.getenv("DATABASE_URL", "")
    if explicit_url:
        for prefix in ("postgres://", "postgresql://"):
            if explicit_url.startswith(prefix):
                return "postgresql+asyncpg://" + explicit_url[len(prefix):]
        return explicit_url
    if settings.db_type == "postgresql":
        user = os.getenv("DB_USER", "postgres")
        password = os.getenv("DB_PASSWORD", "")
        db_name = os.getenv("DB_NAME", "tre_chatbot")
        host = os.getenv("DB_HOST", "127.0.0.1")
        port = os.getenv("DB_PORT", "5432")
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"
    return f"sqlite+aiosqlite:///{settings.db_path}"


def enable_sqlite_foreign_keys(async_engine: AsyncEngine) -> None:
    """SQLite ignores foreign keys unless every connection opts in."""
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Create the async engine and sessionmaker
DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
enable_sqlite_foreign_keys(engine)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Provide a session for one request.

    The context manager closes the session and rolls back anything
    left uncommitted when the request fails.
    """
    async with AsyncSessionLocal() as session:
        yield session


def insert_ignore(db: AsyncSession, model: type, values: dict[str, Any]):
    """Table-level INSERT that silently skips rows whose key already exists.

    ``values`` are keyed by column name.
    """
    if db.get_bind().dialect.name == "postgresql":
        statement = pg_insert(model.__table__)
    else:
        statement = sqlite_insert(model.__table__)
    return statement.values(**values).on_conflict_do_nothing()


def _session_columns(sync_conn: Any) -> set[str]:
    return {column["name"] for column in inspect(sync_conn).get_columns("chat_sessions")}


async def resolve_session_schema(async_engine: AsyncEngine, configured: str = "auto") -> str:
    """Pick the conversation write path once, at startup."""
    if configured in {"extended", "legacy"}:
        return configured
    async with async_engine.connect() as conn:
        columns = await conn.run_sync(_session_columns)
    return "extended" if EXTENDED_SESSION_COLUMNS <= columns else "legacy"


async def seed_order_sets(db: AsyncSession) -> int:
    """Insert the catalog order sets that are not in the store yet."""
    inserted = 0
    for order_set in DEFAULT_ORDER_SETS:
        result = await db.execute(
            insert_ignore(
                db,
                OrderSet,
                {
                    "id": order_set.id,
                    "name": order_set.name,
                    "description": order_set.description,
                    "question_order": list(order_set.order),
                    "active": True,
                },
            )
        )
        inserted += result.rowcount or 0
    await db.commit()
    return inserted


async def init_db(async_engine: AsyncEngine | None = None) -> str:
    """Create tables, resolve the session schema and seed the catalog.

    Returns the resolved session schema (``extended`` or ``legacy``).
    """
    async_engine = async_engine or engine
    if async_engine.dialect.name == "sqlite" and async_engine.url.database not in (None, "", ":memory:"):
        Path(async_engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    schema = await resolve_session_schema(async_engine, settings.session_schema)
    if settings.seed_order_sets:
        session_factory = async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)
        async with session_factory() as db:
            inserted = await seed_order_sets(db)
        logger.info("Seeded %s catalog order sets", inserted)
    return schema
