"""PostgreSQL implementation of the per-file offset store."""
from __future__ import annotations

import json

import asyncpg

from tokenroll.db.repositories.offsets import row_to_state
from tokenroll.models import LogFileState


class PostgresLogFileStateRepository:
    def __init__(self, db: asyncpg.Pool | asyncpg.Connection):
        self.db = db

    async def get(self, path: str) -> LogFileState | None:
        row = await self.db.fetchrow("SELECT * FROM log_file_state WHERE path = $1", path)
        return row_to_state(row) if row else None

    async def list_all(self, provider: str | None = None) -> list[LogFileState]:
        if provider:
            rows = await self.db.fetch(
                "SELECT * FROM log_file_state WHERE provider = $1 ORDER BY path", provider
            )
        else:
            rows = await self.db.fetch("SELECT * FROM log_file_state ORDER BY path")
        return [row_to_state(r) for r in rows]

    async def ensure(self, path: str, provider: str, discovered_at: str) -> None:
        await self.db.execute(
            """INSERT INTO log_file_state (path, provider, discovered_at)
               VALUES ($1, $2, $3)
               ON CONFLICT(path) DO NOTHING""",
            path, provider, discovered_at,
        )

    async def compare_and_advance(self, expected_generation: int, state: LogFileState) -> bool:
        status = await self.db.execute(
            """UPDATE log_file_state SET
                 byte_offset = $1, file_size = $2, last_scanned_at = $3,
                 parser_state_json = $4, generation = generation + 1
               WHERE path = $5 AND generation = $6""",
            state.byte_offset,
            state.file_size,
            state.last_scanned_at,
            json.dumps(state.parser_state),
            state.path,
            expected_generation,
        )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        return status.split()[-1] == "1"

    async def count(self) -> int:
        return int(await self.db.fetchval("SELECT COUNT(*) FROM log_file_state") or 0)
