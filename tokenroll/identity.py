"""Read-side session identity lookup.

Identity is joined at query time, never written into buckets, so a mapping
that shows up after its usage was ingested still attributes that usage.
Sessions without a mapping fall back to the project seen in their logs.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from tokenroll import config
from tokenroll.db.factory import get_session_identity_repository
from tokenroll.models import SessionIdentity, project_name_of

logger = logging.getLogger("tokenroll.identity")


def matches_project(project_path: str, project: str) -> bool:
    """True when `project` names the same full path or its last component."""
    wanted = project.strip().rstrip("/")
    if not wanted:
        return True
    if not project_path:
        return False
    return project_path.rstrip("/") == wanted or project_name_of(project_path) == wanted


@dataclass(frozen=True)
class IdentitySnapshot:
    identities: dict[str, SessionIdentity] = field(default_factory=dict)
    projects: dict[str, str] = field(default_factory=dict)

    def get(self, session_id: str) -> SessionIdentity | None:
        return self.identities.get(session_id)

    def project_for(self, session_id: str) -> str:
        """Mapped project path, else the project seen in the session's logs."""
        identity = self.identities.get(session_id)
        if identity is not None and identity.project_path:
            return identity.project_path
        return self.projects.get(session_id, "")


class IdentityResolver:
    """Cached snapshot of the identity store, refreshed on a TTL."""

    def __init__(
        self,
        db: Any,
        *,
        refresh_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repo = get_session_identity_repository(db)
        self.refresh_seconds = config.IDENTITY_REFRESH_SECONDS if refresh_seconds is None else refresh_seconds
        self._clock = clock
        self._snapshot = IdentitySnapshot()
        self._loaded = False
        self._loaded_at: float | None = None
        self._generation = 0
        self._lock = asyncio.Lock()

    def invalidate(self) -> None:
        self._generation += 1
        self._loaded_at = None

    async def refresh(self) -> int:
        generation = self._generation
        identities = await self.repo.list_all()
        projects = await self.repo.list_projects()
        self._snapshot = IdentitySnapshot(
            identities={identity.session_id: identity for identity in identities},
            projects=projects,
        )
        self._loaded = True
        # Rows read before an invalidation may predate the write behind it.
        if generation == self._generation:
            self._loaded_at = self._clock()
        return len(self._snapshot.identities)

    async def snapshot(self) -> IdentitySnapshot:
        async with self._lock:
            expired = self._loaded_at is None or self._clock() - self._loaded_at >= self.refresh_seconds
            if expired:
                try:
                    await self.refresh()
                except Exception as exc:
                    if not self._loaded:
                        raise
                    logger.warning("Identity refresh failed, keeping previous snapshot: %s", exc)
            return self._snapshot

    async def resolve(self, session_id: str) -> SessionIdentity | None:
        """Return the identity for a session, or None when unresolved."""
        return (await self.snapshot()).get(session_id)

    async def sessions_matching(self, agent: str | None = None, project: str | None = None) -> set[str]:
        current = await self.snapshot()
        if agent:
            candidates = [sid for sid, identity in current.identities.items() if identity.agent_name == agent]
        else:
            candidates = set(current.identities) | set(current.projects)
        return {
            session_id
            for session_id in candidates
            if not project or matches_project(current.project_for(session_id), project)
        }
