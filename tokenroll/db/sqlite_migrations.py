"""Database schema creation and versioning for SQLite.

Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("tokenroll.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Per-file scan progress ──────────────────────────────────────
CREATE TABLE IF NOT EXISTS log_file_state (
    path              TEXT PRIMARY KEY,
    provider          TEXT NOT NULL,
    byte_offset       INTEGER NOT NULL DEFAULT 0 CHECK (byte_offset >= 0),
    file_size         INTEGER NOT NULL DEFAULT 0,
    last_scanned_at   TEXT DEFAULT '',
    generation        INTEGER NOT NULL DEFAULT 0,
    parser_state_json TEXT DEFAULT '{}',
    discovered_at     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_log_file_state_provider ON log_file_state(provider);

-- ── 2. 30-minute usage buckets ─────────────────────────────────────
CREATE TABLE IF NOT EXISTS aggregation_bucket (
    session_id            TEXT NOT NULL,
    provider              TEXT NOT NULL,
    bucket_start          TEXT NOT NULL,
    tokens_in             INTEGER NOT NULL DEFAULT 0,
    tokens_out            INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens     INTEGER NOT NULL DEFAULT 0,
    cost_usd              REAL NOT NULL DEFAULT 0.0,
    event_count           INTEGER NOT NULL DEFAULT 0,
    last_updated          TEXT NOT NULL,
    PRIMARY KEY (session_id, provider, bucket_start)
);

CREATE INDEX IF NOT EXISTS idx_bucket_start ON aggregation_bucket(bucket_start);

-- ── 3. Session identity (externally owned mapping) ─────────────────
CREATE TABLE IF NOT EXISTS session_identity (
    session_id   TEXT PRIMARY KEY,
    agent_name   TEXT NOT NULL,
    project_path TEXT NOT NULL DEFAULT '',
    last_seen_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_identity_agent   ON session_identity(agent_name);
CREATE INDEX IF NOT EXISTS idx_identity_project ON session_identity(project_path);

-- ── 4. Project seen in the logs, used when no identity is mapped ───
CREATE TABLE IF NOT EXISTS session_project (
    session_id   TEXT PRIMARY KEY,
    project_path TEXT NOT NULL,
    last_seen_at TEXT NOT NULL
);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete — schema version %s", SCHEMA_VERSION)
