"""Core ingestion types and the Pydantic models served by the API."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

# ── Ingestion types ─────────────────────────────────────────────────


@dataclass(frozen=True)
class UsageEvent:
    """One normalized usage record. Never persisted."""

    timestamp: datetime
    session_id: str
    provider: str
    tokens_in: int
    tokens_out: int
    model: str = ""
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0


@dataclass(frozen=True)
class BucketKey:
    session_id: str
    provider: str
    bucket_start: str


@dataclass
class BucketDelta:
    tokens_in: int = 0
    tokens_out: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    event_count: int = 0


@dataclass(frozen=True)
class LogFileState:
    """Durable scan progress for one log file."""

    path: str
    provider: str
    byte_offset: int = 0
    file_size: int = 0
    last_scanned_at: str = ""
    generation: int = 0
    parser_state: dict[str, Any] = field(default_factory=dict)

    def advanced(self, **changes: Any) -> "LogFileState":
        return replace(self, **changes)


def project_name_of(project_path: str) -> str:
    return project_path.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class SessionIdentity:
    session_id: str
    agent_name: str
    project_path: str
    last_seen_at: str = ""

    @property
    def project_name(self) -> str:
        return project_name_of(self.project_path)


# ── API models ──────────────────────────────────────────────────────


class UsageFilter(BaseModel):
    project: Optional[str] = None
    agent: Optional[str] = None
    sessionId: Optional[str] = None

    def cache_key(self) -> tuple[str, str, str]:
        return (self.project or "", self.agent or "", self.sessionId or "")


class UsageBucketRow(BaseModel):
    sessionId: str
    provider: str
    bucketStart: str
    tokensIn: int = 0
    tokensOut: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    costUsd: float = 0.0
    eventCount: int = 0
    lastUpdated: str = ""
    agentName: str = "unknown"
    projectPath: str = ""
    identityResolved: bool = False


class UsageQueryResult(BaseModel):
    items: list[UsageBucketRow] = Field(default_factory=list)
    stale: bool = False


class UsageSummary(BaseModel):
    tokensIn: int = 0
    tokensOut: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    totalTokens: int = 0
    costUsd: float = 0.0
    eventCount: int = 0
    sessionCount: int = 0
    stale: bool = False


class TimeseriesPoint(BaseModel):
    timestamp: str
    totalTokens: int = 0
    costUsd: float = 0.0


class TimeseriesResult(BaseModel):
    points: list[TimeseriesPoint] = Field(default_factory=list)
    bucketMinutes: int = 30
    stale: bool = False


class GroupUsage(BaseModel):
    key: str
    totalTokens: int = 0
    costUsd: float = 0.0
    sessionCount: int = 0


class GroupUsageResult(BaseModel):
    items: list[GroupUsage] = Field(default_factory=list)
    stale: bool = False


class StorageStats(BaseModel):
    totalRows: int = 0
    uniqueSessions: int = 0
    uniqueProviders: int = 0
    uniqueAgents: int = 0
    trackedFiles: int = 0
    oldestBucket: Optional[str] = None
    newestBucket: Optional[str] = None
    stale: bool = False


class TriggerScanResult(BaseModel):
    started: bool
    reason: Optional[str] = None
    cycleId: Optional[str] = None
