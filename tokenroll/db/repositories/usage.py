"""SQLite implementation of the aggregation bucket store."""
from __future__ import annotations

from typing import Collection

import aiosqlite

from tokenroll.models import BucketDelta, BucketKey


def _session_clause(session_ids: Collection[str] | None) -> tuple[str, list]:
    if session_ids is None:
        return "", []
    if not session_ids:
        return " AND 0", []
    placeholders = ", ".join("?" for _ in session_ids)
    return f" AND session_id IN ({placeholders})", list(session_ids)


class SqliteUsageBucketRepository:
    """30-minute usage buckets keyed by (session, provider, bucket start).

    `apply_deltas` is additive and never commits; the caller owns the transaction.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def apply_deltas(self, deltas: dict[BucketKey, BucketDelta], updated_at: str) -> None:
        for key, delta in deltas.items():
            await self.db.execute(
                """INSERT INTO aggregation_bucket (
                    session_id, provider, bucket_start,
                    tokens_in, tokens_out, cache_creation_tokens, cache_read_tokens,
                    cost_usd, event_count, last_updated
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, provider, bucket_start) DO UPDATE SET
                    tokens_in = tokens_in + excluded.tokens_in,
                    tokens_out = tokens_out + excluded.tokens_out,
                    cache_creation_tokens = cache_creation_tokens + excluded.cache_creation_tokens,
                    cache_read_tokens = cache_read_tokens + excluded.cache_read_tokens,
                    cost_usd = cost_usd + excluded.cost_usd,
                    event_count = event_count + excluded.event_count,
                    last_updated = excluded.last_updated
                """,
                (
                    key.session_id, key.provider, key.bucket_start,
                    delta.tokens_in, delta.tokens_out,
                    delta.cache_creation_tokens, delta.cache_read_tokens,
                    delta.cost_usd, delta.event_count, updated_at,
                ),
            )

    async def get(self, key: BucketKey) -> dict | None:
        async with self.db.execute(
            """SELECT * FROM aggregation_bucket
               WHERE session_id = ? AND provider = ? AND bucket_start = ?""",
            (key.session_id, key.provider, key.bucket_start),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_rows(
        self,
        start: str,
        end: str,
        session_ids: Collection[str] | None = None,
    ) -> list[dict]:
        clause, extra = _session_clause(session_ids)
        query = (
            "SELECT * FROM aggregation_bucket WHERE bucket_start >= ? AND bucket_start < ?"
            f"{clause} ORDER BY bucket_start, session_id, provider"
        )
        async with self.db.execute(query, [start, end, *extra]) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def summary(
        self,
        start: str,
        end: str,
        session_ids: Collection[str] | None = None,
    ) -> dict:
        clause, extra = _session_clause(session_ids)
        query = f"""
            SELECT
                COALESCE(SUM(tokens_in), 0) AS tokens_in,
                COALESCE(SUM(tokens_out), 0) AS tokens_out,
                COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens,
                COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                COALESCE(SUM(cost_usd), 0) AS cost_usd,
                COALESCE(SUM(event_count), 0) AS event_count,
                COUNT(DISTINCT session_id) AS session_count
            FROM aggregation_bucket
            WHERE bucket_start >= ? AND bucket_start < ?{clause}
        """
        async with self.db.execute(query, [start, end, *extra]) as cur:
            row = await cur.fetchone()
        return dict(row) if row else {}

    async def timeseries(
        self,
        start: str,
        end: str,
        session_ids: Collection[str] | None = None,
        bucket_minutes: int = 30,
    ) -> list[dict]:
        if bucket_minutes == 60:
            group_expr = "substr(bucket_start, 1, 13) || ':00:00Z'"
        else:
            group_expr = "bucket_start"
        clause, extra = _session_clause(session_ids)
        query = f"""
            SELECT
                {group_expr} AS timestamp,
                COALESCE(SUM(tokens_in + tokens_out + cache_creation_tokens + cache_read_tokens), 0) AS total_tokens,
                COALESCE(SUM(cost_usd), 0) AS cost_usd
            FROM aggregation_bucket
            WHERE bucket_start >= ? AND bucket_start < ?{clause}
            GROUP BY {group_expr}
            ORDER BY timestamp
        """
        async with self.db.execute(query, [start, end, *extra]) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def totals_by_session(self, start: str, end: str) -> list[dict]:
        async with self.db.execute(
            """SELECT
                   session_id,
                   COALESCE(SUM(tokens_in + tokens_out + cache_creation_tokens + cache_read_tokens), 0) AS total_tokens,
                   COALESCE(SUM(cost_usd), 0) AS cost_usd
               FROM aggregation_bucket
               WHERE bucket_start >= ? AND bucket_start < ?
               GROUP BY session_id""",
            (start, end),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def stats(self) -> dict:
        async with self.db.execute(
            """SELECT
                   COUNT(*) AS total_rows,
                   COUNT(DISTINCT session_id) AS unique_sessions,
                   COUNT(DISTINCT provider) AS unique_providers,
                   MIN(bucket_start) AS oldest_bucket,
                   MAX(bucket_start) AS newest_bucket
               FROM aggregation_bucket"""
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else {}
