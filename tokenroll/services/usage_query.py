"""Read path over aggregation buckets.

Queries run on the read connection only and join identity at read time.
When storage fails, the last successful answer to the same question is
served again with `stale=True`.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from tokenroll import config
from tokenroll.date_utils import format_utc
from tokenroll.db.factory import get_log_file_state_repository, get_usage_bucket_repository
from tokenroll.identity import IdentityResolver, IdentitySnapshot, matches_project
from tokenroll.models import (
    GroupUsage,
    GroupUsageResult,
    StorageStats,
    TimeseriesPoint,
    TimeseriesResult,
    UsageBucketRow,
    UsageFilter,
    UsageQueryResult,
    UsageSummary,
    project_name_of,
)

logger = logging.getLogger("tokenroll.query")

STORAGE_ERRORS: tuple[type[BaseException], ...] = (aiosqlite.Error, OSError)
if asyncpg is not None:
    STORAGE_ERRORS = STORAGE_ERRORS + (asyncpg.PostgresError, asyncpg.InterfaceError)

SUPPORTED_BUCKET_MINUTES = (30, 60)
_MAX_CACHED_RESULTS = 256


def _bounds(start: datetime | str, end: datetime | str) -> tuple[str, str]:
    def _fmt(value: datetime | str) -> str:
        return value if isinstance(value, str) else format_utc(value)
    return _fmt(start), _fmt(end)


def _row_to_model(row: dict, snapshot: IdentitySnapshot) -> UsageBucketRow:
    identity = snapshot.get(row["session_id"])
    return UsageBucketRow(
        sessionId=row["session_id"],
        provider=row["provider"],
        bucketStart=row["bucket_start"],
        tokensIn=int(row.get("tokens_in") or 0),
        tokensOut=int(row.get("tokens_out") or 0),
        cacheCreationTokens=int(row.get("cache_creation_tokens") or 0),
        cacheReadTokens=int(row.get("cache_read_tokens") or 0),
        costUsd=float(row.get("cost_usd") or 0.0),
        eventCount=int(row.get("event_count") or 0),
        lastUpdated=row.get("last_updated") or "",
        agentName=identity.agent_name if identity else config.UNKNOWN_AGENT,
        projectPath=snapshot.project_for(row["session_id"]),
        identityResolved=identity is not None,
    )


class UsageQueryService:
    def __init__(self, db: Any, resolver: IdentityResolver):
        self.db = db
        self.resolver = resolver
        self.bucket_repo = get_usage_bucket_repository(db)
        self.state_repo = get_log_file_state_repository(db)
        self._last_good: OrderedDict[tuple, Any] = OrderedDict()

    async def _with_fallback(self, key: tuple, loader: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await loader()
        except STORAGE_ERRORS as exc:
            cached = self._last_good.get(key)
            if cached is None:
                raise
            logger.warning("Serving stale %s result after storage error: %s", key[0], exc)
            return cached.model_copy(update={"stale": True})
        self._last_good[key] = result
        self._last_good.move_to_end(key)
        while len(self._last_good) > _MAX_CACHED_RESULTS:
            self._last_good.popitem(last=False)
        return result

    async def _session_scope(self, usage_filter: UsageFilter, start: str, end: str) -> set[str] | None:
        """Resolve the filter into the session set pushed down to storage; None means all."""
        agent = (usage_filter.agent or "").strip()
        project = (usage_filter.project or "").strip()
        scope: set[str] | None = None
        if agent == config.UNKNOWN_AGENT:
            snapshot = await self.resolver.snapshot()
            in_range = await self.bucket_repo.totals_by_session(start, end)
            scope = {
                row["session_id"]
                for row in in_range
                if snapshot.get(row["session_id"]) is None
                and (not project or matches_project(snapshot.project_for(row["session_id"]), project))
            }
        elif agent or project:
            scope = await self.resolver.sessions_matching(agent=agent or None, project=project or None)
        if usage_filter.sessionId:
            wanted = {usage_filter.sessionId}
            scope = wanted if scope is None else scope & wanted
        return scope

    async def query(
        self,
        usage_filter: UsageFilter,
        start: datetime | str,
        end: datetime | str,
    ) -> UsageQueryResult:
        """Bucket rows in `[start, end)` ordered by bucket start, session, provider."""
        lo, hi = _bounds(start, end)

        async def load() -> UsageQueryResult:
            scope = await self._session_scope(usage_filter, lo, hi)
            if scope is not None and not scope:
                return UsageQueryResult(items=[])
            rows = await self.bucket_repo.list_rows(lo, hi, scope)
            snapshot = await self.resolver.snapshot()
            return UsageQueryResult(items=[_row_to_model(row, snapshot) for row in rows])

        return await self._with_fallback(("query", usage_filter.cache_key(), lo, hi), load)

    async def summary(
        self,
        usage_filter: UsageFilter,
        start: datetime | str,
        end: datetime | str,
    ) -> UsageSummary:
        lo, hi = _bounds(start, end)

        async def load() -> UsageSummary:
            scope = await self._session_scope(usage_filter, lo, hi)
            if scope is not None and not scope:
                return UsageSummary()
            row = await self.bucket_repo.summary(lo, hi, scope)
            tokens_in = int(row.get("tokens_in") or 0)
            tokens_out = int(row.get("tokens_out") or 0)
            cache_creation = int(row.get("cache_creation_tokens") or 0)
            cache_read = int(row.get("cache_read_tokens") or 0)
            return UsageSummary(
                tokensIn=tokens_in,
                tokensOut=tokens_out,
                cacheCreationTokens=cache_creation,
                cacheReadTokens=cache_read,
                totalTokens=tokens_in + tokens_out + cache_creation + cache_read,
                costUsd=round(float(row.get("cost_usd") or 0.0), 6),
                eventCount=int(row.get("event_count") or 0),
                sessionCount=int(row.get("session_count") or 0),
            )

        return await self._with_fallback(("summary", usage_filter.cache_key(), lo, hi), load)

    async def timeseries(
        self,
        usage_filter: UsageFilter,
        start: datetime | str,
        end: datetime | str,
        bucket_minutes: int = 30,
    ) -> TimeseriesResult:
        if bucket_minutes not in SUPPORTED_BUCKET_MINUTES:
            raise ValueError(f"bucket_minutes must be one of {SUPPORTED_BUCKET_MINUTES}")
        lo, hi = _bounds(start, end)

        async def load() -> TimeseriesResult:
            scope = await self._session_scope(usage_filter, lo, hi)
            if scope is not None and not scope:
                return TimeseriesResult(points=[], bucketMinutes=bucket_minutes)
            rows = await self.bucket_repo.timeseries(lo, hi, scope, bucket_minutes=bucket_minutes)
            return TimeseriesResult(
                points=[
                    TimeseriesPoint(
                        timestamp=row["timestamp"],
                        totalTokens=int(row.get("total_tokens") or 0),
                        costUsd=round(float(row.get("cost_usd") or 0.0), 6),
                    )
                    for row in rows
                ],
                bucketMinutes=bucket_minutes,
            )

        key = ("timeseries", usage_filter.cache_key(), lo, hi, bucket_minutes)
        return await self._with_fallback(key, load)

    async def _grouped(
        self,
        lo: str,
        hi: str,
        key_for: Callable[[str, IdentitySnapshot], str | None],
    ) -> GroupUsageResult:
        rows = await self.bucket_repo.totals_by_session(lo, hi)
        snapshot = await self.resolver.snapshot()
        groups: dict[str, GroupUsage] = {}
        for row in rows:
            group_key = key_for(row["session_id"], snapshot)
            if group_key is None:
                continue
            group = groups.setdefault(group_key, GroupUsage(key=group_key))
            group.totalTokens += int(row.get("total_tokens") or 0)
            group.costUsd = round(group.costUsd + float(row.get("cost_usd") or 0.0), 6)
            group.sessionCount += 1
        items = sorted(groups.values(), key=lambda g: (-g.totalTokens, g.key))
        return GroupUsageResult(items=items)

    async def by_agent(
        self,
        start: datetime | str,
        end: datetime | str,
        project: str | None = None,
    ) -> GroupUsageResult:
        """Totals per agent; unresolved sessions are grouped under the unknown agent."""
        lo, hi = _bounds(start, end)
        wanted_project = (project or "").strip()

        def key_for(session_id: str, snapshot: IdentitySnapshot) -> str | None:
            if wanted_project and not matches_project(snapshot.project_for(session_id), wanted_project):
                return None
            identity = snapshot.get(session_id)
            return identity.agent_name if identity else config.UNKNOWN_AGENT

        return await self._with_fallback(("by_agent", wanted_project, lo, hi), lambda: self._grouped(lo, hi, key_for))

    async def by_project(self, start: datetime | str, end: datetime | str) -> GroupUsageResult:
        lo, hi = _bounds(start, end)

        def key_for(session_id: str, snapshot: IdentitySnapshot) -> str:
            project_path = snapshot.project_for(session_id)
            return project_name_of(project_path) if project_path else config.UNKNOWN_AGENT

        return await self._with_fallback(("by_project", lo, hi), lambda: self._grouped(lo, hi, key_for))

    async def stats(self) -> StorageStats:
        async def load() -> StorageStats:
            row = await self.bucket_repo.stats()
            tracked = await self.state_repo.count()
            snapshot = await self.resolver.snapshot()
            return StorageStats(
                totalRows=int(row.get("total_rows") or 0),
                uniqueSessions=int(row.get("unique_sessions") or 0),
                uniqueProviders=int(row.get("unique_providers") or 0),
                uniqueAgents=len({identity.agent_name for identity in snapshot.identities.values()}),
                trackedFiles=tracked,
                oldestBucket=row.get("oldest_bucket"),
                newestBucket=row.get("newest_bucket"),
            )

        return await self._with_fallback(("stats",), load)
