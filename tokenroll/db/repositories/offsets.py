"""SQLite implementation of the per-file offset store."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

from tokenroll.models import LogFileState


def row_to_state(row: Any) -> LogFileState:
    data = dict(row)
    try:
        parser_state = json.loads(data.get("parser_state_json") or "{}")
    except json.JSONDecodeError:
        parser_state = {}
    return LogFileState(
        path=data["path"],
        provider=data["provider"],
        byte_offset=int(data.get("byte_offset") or 0),
        file_size=int(data.get("file_size") or 0),
        last_scanned_at=data.get("last_scanned_at") or "",
        generation=int(data.get("generation") or 0),
        parser_state=parser_state if isinstance(parser_state, dict) else {},
    )


class SqliteLogFileStateRepository:
    """Track scan progress per log file.

    Write methods never commit; the caller owns the transaction.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, path: str) -> LogFileState | None:
        async with self.db.execute("SELECT * FROM log_file_state WHERE path = ?", (path,)) as cur:
            row = await cur.fetchone()
            return row_to_state(row) if row else None

    async def list_all(self, provider: str | None = None) -> list[LogFileState]:
        if provider:
            query = "SELECT * FROM log_file_state WHERE provider = ? ORDER BY path"
            params: tuple = (provider,)
        else:
            query = "SELECT * FROM log_file_state ORDER BY path"
            params = ()
        async with self.db.execute(query, params) as cur:
            return [row_to_state(r) for r in await cur.fetchall()]

    async def ensure(self, path: str, provider: str, discovered_at: str) -> None:
        await self.db.execute(
            """INSERT INTO log_file_state (path, provider, discovered_at)
               VALUES (?, ?, ?)
               ON CONFLICT(path) DO NOTHING""",
            (path, provider, discovered_at),
        )

    async def compare_and_advance(self, expected_generation: int, state: LogFileState) -> bool:
        """Advance a file's offset only if nobody committed since `expected_generation`."""
        cur = await self.db.execute(
            """UPDATE log_file_state SET
                 byte_offset = ?, file_size = ?, last_scanned_at = ?,
                 parser_state_json = ?, generation = generation + 1
               WHERE path = ? AND generation = ?""",
            (
                state.byte_offset,
                state.file_size,
                state.last_scanned_at,
                json.dumps(state.parser_state),
                state.path,
                expected_generation,
            ),
        )
        return cur.rowcount == 1

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM log_file_state") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0
