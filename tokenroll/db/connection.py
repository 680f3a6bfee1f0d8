"""Database connection factory.

Provides the singleton writer connection plus a separate read connection for
SQLite (default, WAL mode) so queries never wait on an ingestion transaction.
For Postgres both roles share one asyncpg pool.
Backend selection via TOKENROLL_DB_BACKEND env var.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union, Any

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from tokenroll import config

logger = logging.getLogger("tokenroll.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None
_read_connection: DbConnection | None = None


async def open_sqlite(path: Path | str, *, read_only: bool = False) -> aiosqlite.Connection:
    """Open a SQLite connection configured for concurrent readers."""
    db_path = Path(path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    # WAL lets readers see the last committed snapshot while a writer is active
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    if read_only:
        await conn.execute("PRAGMA query_only=ON")
    return conn


async def get_connection() -> DbConnection:
    """Return the singleton writer connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        if not asyncpg:
            raise ImportError("asyncpg is required for Postgres backend.")

        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(config.DATABASE_URL)
        return _connection

    _connection = await open_sqlite(config.DB_PATH)
    logger.info("Database connection established: %s", config.DB_PATH)
    return _connection


async def get_read_connection() -> DbConnection:
    """Return the connection used by the query path.

    Must be called after migrations have created the schema.
    """
    global _read_connection
    if _read_connection is not None:
        return _read_connection

    if config.DB_BACKEND == "postgres":
        _read_connection = await get_connection()
        return _read_connection

    _read_connection = await open_sqlite(config.DB_PATH, read_only=True)
    logger.info("Read connection established: %s", config.DB_PATH)
    return _read_connection


async def close_connection() -> None:
    """Close the database connections."""
    global _connection, _read_connection
    if _read_connection is not None and _read_connection is not _connection:
        await _read_connection.close()
    _read_connection = None
    if _connection is not None:
        await _connection.close()  # asyncpg Pool has close() too
        _connection = None
        logger.info("Database connection closed")


def is_connected() -> bool:
    return _connection is not None
