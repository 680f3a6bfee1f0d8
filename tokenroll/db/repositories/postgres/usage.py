"""PostgreSQL implementation of the aggregation bucket store."""
from __future__ import annotations

from typing import Collection

import asyncpg

from tokenroll.models import BucketDelta, BucketKey


def _session_clause(session_ids: Collection[str] | None, position: int) -> tuple[str, list]:
    if session_ids is None:
        return "", []
    return f" AND session_id = ANY(${position}::text[])", [list(session_ids)]


class PostgresUsageBucketRepository:
    def __init__(self, db: asyncpg.Pool | asyncpg.Connection):
        self.db = db

    async def apply_deltas(self, deltas: dict[BucketKey, BucketDelta], updated_at: str) -> None:
        for key, delta in deltas.items():
            await self.db.execute(
                """INSERT INTO aggregation_bucket (
                    session_id, provider, bucket_start,
                    tokens_in, tokens_out, cache_creation_tokens, cache_read_tokens,
                    cost_usd, event_count, last_updated
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT(session_id, provider, bucket_start) DO UPDATE SET
                    tokens_in = aggregation_bucket.tokens_in + EXCLUDED.tokens_in,
                    tokens_out = aggregation_bucket.tokens_out + EXCLUDED.tokens_out,
                    cache_creation_tokens = aggregation_bucket.cache_creation_tokens + EXCLUDED.cache_creation_tokens,
                    cache_read_tokens = aggregation_bucket.cache_read_tokens + EXCLUDED.cache_read_tokens,
                    cost_usd = aggregation_bucket.cost_usd + EXCLUDED.cost_usd,
                    event_count = aggregation_bucket.event_count + EXCLUDED.event_count,
                    last_updated = EXCLUDED.last_updated
                """,
                key.session_id, key.provider, key.bucket_start,
                delta.tokens_in, delta.tokens_out,
                delta.cache_creation_tokens, delta.cache_read_tokens,
                delta.cost_usd, delta.event_count, updated_at,
            )

    async def get(self, key: BucketKey) -> dict | None:
        row = await self.db.fetchrow(
            """SELECT * FROM aggregation_bucket
               WHERE session_id = $1 AND provider = $2 AND bucket_start = $3""",
            key.session_id, key.provider, key.bucket_start,
        )
        return dict(row) if row else None

    async def list_rows(
        self,
        start: str,
        end: str,
        session_ids: Collection[str] | None = None,
    ) -> list[dict]:
        clause, extra = _session_clause(session_ids, 3)
        rows = await self.db.fetch(
            "SELECT * FROM aggregation_bucket WHERE bucket_start >= $1 AND bucket_start < $2"
            f"{clause} ORDER BY bucket_start, session_id, provider",
            start, end, *extra,
        )
        return [dict(r) for r in rows]

    async def summary(
        self,
        start: str,
        end: str,
        session_ids: Collection[str] | None = None,
    ) -> dict:
        clause, extra = _session_clause(session_ids, 3)
        row = await self.db.fetchrow(
            f"""
            SELECT
                COALESCE(SUM(tokens_in), 0) AS tokens_in,
                COALESCE(SUM(tokens_out), 0) AS tokens_out,
                COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens,
                COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                COALESCE(SUM(cost_usd), 0) AS cost_usd,
                COALESCE(SUM(event_count), 0) AS event_count,
                COUNT(DISTINCT session_id) AS session_count
            FROM aggregation_bucket
            WHERE bucket_start >= $1 AND bucket_start < $2{clause}
            """,
            start, end, *extra,
        )
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
        clause, extra = _session_clause(session_ids, 3)
        rows = await self.db.fetch(
            f"""
            SELECT
                {group_expr} AS timestamp,
                COALESCE(SUM(tokens_in + tokens_out + cache_creation_tokens + cache_read_tokens), 0) AS total_tokens,
                COALESCE(SUM(cost_usd), 0) AS cost_usd
            FROM aggregation_bucket
            WHERE bucket_start >= $1 AND bucket_start < $2{clause}
            GROUP BY {group_expr}
            ORDER BY timestamp
            """,
            start, end, *extra,
        )
        return [dict(r) for r in rows]

    async def totals_by_session(self, start: str, end: str) -> list[dict]:
        rows = await self.db.fetch(
            """SELECT
                   session_id,
                   COALESCE(SUM(tokens_in + tokens_out + cache_creation_tokens + cache_read_tokens), 0) AS total_tokens,
                   COALESCE(SUM(cost_usd), 0) AS cost_usd
               FROM aggregation_bucket
               WHERE bucket_start >= $1 AND bucket_start < $2
               GROUP BY session_id""",
            start, end,
        )
        return [dict(r) for r in rows]

    async def stats(self) -> dict:
        row = await self.db.fetchrow(
            """SELECT
                   COUNT(*) AS total_rows,
                   COUNT(DISTINCT session_id) AS unique_sessions,
                   COUNT(DISTINCT provider) AS unique_providers,
                   MIN(bucket_start) AS oldest_bucket,
                   MAX(bucket_start) AS newest_bucket
               FROM aggregation_bucket"""
        )
        return dict(row) if row else {}
