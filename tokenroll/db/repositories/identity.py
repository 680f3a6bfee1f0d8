"""SQLite access to the session → agent/project mapping and log-derived projects."""
from __future__ import annotations

import aiosqlite

from tokenroll.models import SessionIdentity


class SqliteSessionIdentityRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_all(self) -> list[SessionIdentity]:
        async with self.db.execute(
            "SELECT session_id, agent_name, project_path, last_seen_at FROM session_identity"
        ) as cur:
            rows = await cur.fetchall()
        return [
            SessionIdentity(
                session_id=r["session_id"],
                agent_name=r["agent_name"],
                project_path=r["project_path"] or "",
                last_seen_at=r["last_seen_at"] or "",
            )
            for r in rows
        ]

    async def upsert(self, identity: SessionIdentity) -> None:
        await self.db.execute(
            """INSERT INTO session_identity (session_id, agent_name, project_path, last_seen_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(session_id) DO UPDATE SET
                 agent_name = excluded.agent_name,
                 project_path = excluded.project_path,
                 last_seen_at = excluded.last_seen_at""",
            (identity.session_id, identity.agent_name, identity.project_path, identity.last_seen_at),
        )

    async def list_projects(self) -> dict[str, str]:
        async with self.db.execute("SELECT session_id, project_path FROM session_project") as cur:
            rows = await cur.fetchall()
        return {r["session_id"]: r["project_path"] for r in rows}

    async def upsert_project(self, session_id: str, project_path: str, seen_at: str) -> None:
        await self.db.execute(
            """INSERT INTO session_project (session_id, project_path, last_seen_at)
               VALUES (?, ?, ?)
               ON CONFLICT(session_id) DO UPDATE SET
                 project_path = excluded.project_path,
                 last_seen_at = excluded.last_seen_at""",
            (session_id, project_path, seen_at),
        )
