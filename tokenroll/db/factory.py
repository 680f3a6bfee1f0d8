"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from tokenroll.db.repositories.offsets import SqliteLogFileStateRepository
from tokenroll.db.repositories.usage import SqliteUsageBucketRepository
from tokenroll.db.repositories.identity import SqliteSessionIdentityRepository


def is_sqlite(db: Any) -> bool:
    return isinstance(db, aiosqlite.Connection)


def get_log_file_state_repository(db: Any):
    if is_sqlite(db):
        return SqliteLogFileStateRepository(db)
    from tokenroll.db.repositories.postgres.offsets import PostgresLogFileStateRepository
    return PostgresLogFileStateRepository(db)


def get_usage_bucket_repository(db: Any):
    if is_sqlite(db):
        return SqliteUsageBucketRepository(db)
    from tokenroll.db.repositories.postgres.usage import PostgresUsageBucketRepository
    return PostgresUsageBucketRepository(db)


def get_session_identity_repository(db: Any):
    if is_sqlite(db):
        return SqliteSessionIdentityRepository(db)
    from tokenroll.db.repositories.postgres.identity import PostgresSessionIdentityRepository
    return PostgresSessionIdentityRepository(db)
