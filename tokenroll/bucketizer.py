"""Fold usage events into fixed 30-minute bucket deltas.

Pure aggregation: the storage layer turns each delta into an additive upsert
(`existing + delta`), so folding the same byte range twice is prevented by
offset gating, not here.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from tokenroll import config
from tokenroll.date_utils import ensure_utc, format_utc
from tokenroll.models import BucketDelta, BucketKey, UsageEvent
from tokenroll.pricing import estimate_cost

BUCKET_SECONDS = config.BUCKET_MINUTES * 60


def bucket_start(timestamp: datetime) -> datetime:
    """Floor a timestamp to the start of its UTC bucket.

    A timestamp exactly on a boundary belongs to the bucket starting there.
    """
    epoch = int(ensure_utc(timestamp).timestamp())
    return datetime.fromtimestamp(epoch - (epoch % BUCKET_SECONDS), tz=timezone.utc)


def bucket_key(event: UsageEvent) -> BucketKey:
    return BucketKey(
        session_id=event.session_id,
        provider=event.provider,
        bucket_start=format_utc(bucket_start(event.timestamp)),
    )


def fold(events: Iterable[UsageEvent]) -> dict[BucketKey, BucketDelta]:
    deltas: dict[BucketKey, BucketDelta] = {}
    for event in events:
        key = bucket_key(event)
        delta = deltas.get(key)
        if delta is None:
            delta = BucketDelta()
            deltas[key] = delta
        delta.tokens_in += event.tokens_in
        delta.tokens_out += event.tokens_out
        delta.cache_creation_tokens += event.cache_creation_tokens
        delta.cache_read_tokens += event.cache_read_tokens
        delta.cost_usd += estimate_cost(
            event.provider,
            event.model,
            tokens_in=event.tokens_in,
            tokens_out=event.tokens_out,
            cache_creation_tokens=event.cache_creation_tokens,
            cache_read_tokens=event.cache_read_tokens,
        )
        delta.event_count += 1
    return deltas
