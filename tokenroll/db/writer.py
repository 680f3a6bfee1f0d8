"""Single-writer gateway for ingestion state.

Every mutation of `log_file_state`, `aggregation_bucket` and the identity
mapping goes through `UsageWriter`, so a bucket delta is never visible
without the offset advance that produced it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable

from tokenroll.date_utils import utc_now_iso
from tokenroll.db.factory import (
    get_log_file_state_repository,
    get_session_identity_repository,
    get_usage_bucket_repository,
    is_sqlite,
)
from tokenroll.errors import CommitFailure
from tokenroll.models import BucketDelta, BucketKey, LogFileState, SessionIdentity
from tokenroll.observability import start_span

logger = logging.getLogger("tokenroll.db")


@dataclass
class _TransactionRepos:
    offsets: Any
    buckets: Any
    identities: Any


class _StaleGeneration(Exception):
    pass


class UsageWriter:
    def __init__(self, db: Any):  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        self.db = db
        # One SQLite connection carries one transaction at a time.
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_TransactionRepos]:
        """Yield repositories bound to one transaction; commit on exit, roll back on error."""
        if is_sqlite(self.db):
            async with self._lock:
                repos = self._repos(self.db)
                try:
                    yield repos
                    await self.db.commit()
                except BaseException:
                    await self.db.rollback()
                    raise
        else:
            async with self.db.acquire() as conn:
                async with conn.transaction():
                    yield self._repos(conn)

    @staticmethod
    def _repos(conn: Any) -> _TransactionRepos:
        return _TransactionRepos(
            offsets=get_log_file_state_repository(conn),
            buckets=get_usage_bucket_repository(conn),
            identities=get_session_identity_repository(conn),
        )

    async def commit_scan(
        self,
        base_generation: int,
        new_state: LogFileState,
        deltas: dict[BucketKey, BucketDelta],
        identities: Iterable[SessionIdentity] = (),
        projects: dict[str, str] | None = None,
    ) -> None:
        """Apply bucket deltas and advance the offset atomically.

        Identities and session projects discovered in the same byte range are
        written in the same transaction.

        Raises CommitFailure when the transaction fails or when the file was
        committed by someone else since `base_generation`.
        """
        with start_span("tokenroll.commit", {"path": new_state.path, "buckets": len(deltas)}):
            try:
                async with self.transaction() as tx:
                    await tx.buckets.apply_deltas(deltas, utc_now_iso())
                    if not await tx.offsets.compare_and_advance(base_generation, new_state):
                        raise _StaleGeneration()
                    await self._upsert_identities(tx, identities)
                    seen_at = utc_now_iso()
                    for session_id, project_path in (projects or {}).items():
                        await tx.identities.upsert_project(session_id, project_path, seen_at)
            except _StaleGeneration:
                logger.warning("Stale scan of %s discarded (generation %s)", new_state.path, base_generation)
                raise CommitFailure(new_state.path, "offset changed during scan", stale=True)
            except CommitFailure:
                raise
            except Exception as exc:
                raise CommitFailure(new_state.path, str(exc)) from exc

    async def ensure_states(self, files: Iterable[tuple[str, str]]) -> int:
        """Create state rows for newly discovered (path, provider) pairs."""
        discovered_at = utc_now_iso()
        count = 0
        async with self.transaction() as tx:
            for path, provider in files:
                await tx.offsets.ensure(path, provider, discovered_at)
                count += 1
        return count

    async def list_states(self, provider: str | None = None) -> list[LogFileState]:
        async with self.transaction() as tx:
            return await tx.offsets.list_all(provider)

    async def record_identities(self, identities: Iterable[SessionIdentity]) -> int:
        """Write through the identity mapping contract."""
        async with self.transaction() as tx:
            return await self._upsert_identities(tx, identities)

    @staticmethod
    async def _upsert_identities(tx: _TransactionRepos, identities: Iterable[SessionIdentity]) -> int:
        now = utc_now_iso()
        count = 0
        for identity in identities:
            if not identity.session_id or not identity.agent_name:
                continue
            await tx.identities.upsert(
                SessionIdentity(
                    session_id=identity.session_id,
                    agent_name=identity.agent_name,
                    project_path=identity.project_path,
                    last_seen_at=identity.last_seen_at or now,
                )
            )
            count += 1
        return count
