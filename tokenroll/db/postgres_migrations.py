"""Database schema creation and versioning for PostgreSQL."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("tokenroll.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (NOW()::text)
);

CREATE TABLE IF NOT EXISTS log_file_state (
    path              TEXT PRIMARY KEY,
    provider          TEXT NOT NULL,
    byte_offset       BIGINT NOT NULL DEFAULT 0 CHECK (byte_offset >= 0),
    file_size         BIGINT NOT NULL DEFAULT 0,
    last_scanned_at   TEXT DEFAULT '',
    generation        BIGINT NOT NULL DEFAULT 0,
    parser_state_json TEXT DEFAULT '{}',
    discovered_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_log_file_state_provider ON log_file_state(provider);

CREATE TABLE IF NOT EXISTS aggregation_bucket (
    session_id            TEXT NOT NULL,
    provider              TEXT NOT NULL,
    bucket_start          TEXT NOT NULL,
    tokens_in             BIGINT NOT NULL DEFAULT 0,
    tokens_out            BIGINT NOT NULL DEFAULT 0,
    cache_creation_tokens BIGINT NOT NULL DEFAULT 0,
    cache_read_tokens     BIGINT NOT NULL DEFAULT 0,
    cost_usd              DOUBLE PRECISION NOT NULL DEFAULT 0.0,
    event_count           BIGINT NOT NULL DEFAULT 0,
    last_updated          TEXT NOT NULL,
    PRIMARY KEY (session_id, provider, bucket_start)
);

CREATE INDEX IF NOT EXISTS idx_bucket_start ON aggregation_bucket(bucket_start);

CREATE TABLE IF NOT EXISTS session_identity (
    session_id   TEXT PRIMARY KEY,
    agent_name   TEXT NOT NULL,
    project_path TEXT NOT NULL DEFAULT '',
    last_seen_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_identity_agent   ON session_identity(agent_name);
CREATE INDEX IF NOT EXISTS idx_identity_project ON session_identity(project_path);

CREATE TABLE IF NOT EXISTS session_project (
    session_id   TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    last_seen_at TEXT NOT NULL
);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        try:
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        except asyncpg.UndefinedTableError:
            current_version = 0

        if current_version >= SCHEMA_VERSION:
            logger.info("Schema is up to date (version %s)", current_version)
            return

        logger.info("Running Postgres migrations: %s → %s", current_version, SCHEMA_VERSION)
        async with conn.transaction():
            await conn.execute(_TABLES)
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
        logger.info("Postgres migrations complete — schema version %s", SCHEMA_VERSION)
