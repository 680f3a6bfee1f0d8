"""PostgreSQL access to the session → agent/project mapping and log-derived projects."""
from __future__ import annotations

import asyncpg

from tokenroll.models import SessionIdentity


class PostgresSessionIdentityRepository:
    def __init__(self, db: asyncpg.Pool | asyncpg.Connection):
        self.db = db

    async def list_all(self) -> list[SessionIdentity]:
        rows = await self.db.fetch(
            "SELECT session_id, agent_name, project_path, last_seen_at FROM session_identity"
        )
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
               VALUES ($1, $2, $3, $4)
               ON CONFLICT(session_id) DO UPDATE SET
                 agent_name = EXCLUDED.agent_name,
                 project_path = EXCLUDED.project_path,
                 last_seen_at = EXCLUDED.last_seen_at""",
            identity.session_id, identity.agent_name, identity.project_path, identity.last_seen_at,
        )

    async def list_projects(self) -> dict[str, str]:
        rows = await self.db.fetch("SELECT session_id, project_path FROM session_project")
        return {r["session_id"]: r["project_path"] for r in rows}

    async def upsert_project(self, session_id: str, project_path: str, seen_at: str) -> None:
        await self.db.execute(
            """INSERT INTO session_project (session_id, project_path, last_seen_at)
               VALUES ($1, $2, $3)
               ON CONFLICT(session_id) DO UPDATE SET
                 project_path = EXCLUDED.project_path,
                 last_seen_at = EXCLUDED.last_seen_at""",
            session_id, project_path, seen_at,
        )
