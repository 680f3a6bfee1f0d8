"""Token usage API: scan control, bucket queries and identity writes."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from tokenroll import config
from tokenroll.bucketizer import bucket_start
from tokenroll.date_utils import format_utc, parse_timestamp, utc_now
from tokenroll.errors import ScanCycleError
from tokenroll.models import (
    GroupUsageResult,
    StorageStats,
    TimeseriesResult,
    TriggerScanResult,
    UsageFilter,
    UsageQueryResult,
    UsageSummary,
)
from tokenroll.services.usage_query import STORAGE_ERRORS, SUPPORTED_BUCKET_MINUTES

logger = logging.getLogger("tokenroll.api")

usage_router = APIRouter(prefix="/api/usage", tags=["usage"])

RangeName = Literal["today", "last_24h", "last_7d"]


class ScanRequest(BaseModel):
    wait: bool = False
    trigger: str = "api"


class IdentityRequest(BaseModel):
    sessionId: str = Field(..., min_length=1)
    agentName: str = Field(..., min_length=1)
    projectPath: str = ""


def _get_engine(request: Request):
    engine = getattr(request.app.state, "usage_engine", None)
    if not engine:
        raise HTTPException(status_code=503, detail="Usage engine not initialized")
    return engine


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    range_name: Optional[str],
    now: datetime | None = None,
) -> tuple[str, str]:
    """Turn explicit bounds or a named range into `[start, end)` bucket keys."""
    current = now or utc_now()
    if start or end:
        start_dt = parse_timestamp(start) if start else None
        end_dt = parse_timestamp(end) if end else current
        if (start and start_dt is None) or end_dt is None:
            raise HTTPException(status_code=400, detail="start/end must be ISO-8601 timestamps")
        if start_dt is None:
            start_dt = end_dt - timedelta(hours=24)
    elif range_name == "today":
        start_dt = current.replace(hour=0, minute=0, second=0, microsecond=0)
        end_dt = current
    elif range_name == "last_7d":
        start_dt = bucket_start(current - timedelta(days=7))
        end_dt = current
    else:
        start_dt = bucket_start(current - timedelta(hours=24))
        end_dt = current
    if end_dt <= start_dt:
        raise HTTPException(status_code=400, detail="end must be after start")
    # Include the bucket in progress.
    if end_dt == current:
        end_dt = bucket_start(current) + timedelta(minutes=config.BUCKET_MINUTES)
    return format_utc(start_dt), format_utc(end_dt)


def _filter(project: Optional[str], agent: Optional[str], session_id: Optional[str]) -> UsageFilter:
    return UsageFilter(project=project or None, agent=agent or None, sessionId=session_id or None)


@usage_router.post("/scan", response_model=TriggerScanResult)
async def trigger_scan(request: Request, req: Optional[ScanRequest] = None):
    """Start a scan cycle; reports `already_running` instead of queueing."""
    engine = _get_engine(request)
    payload = req or ScanRequest()
    try:
        return await engine.trigger_scan(trigger=payload.trigger, wait=payload.wait)
    except ScanCycleError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@usage_router.get("/scan/status")
async def get_scan_status(request: Request, limit: int = Query(20, ge=1, le=200)):
    engine = _get_engine(request)
    status = engine.status()
    return {
        **status,
        "cycles": engine.scheduler.history(limit),
    }


@usage_router.get("/buckets", response_model=UsageQueryResult)
async def list_buckets(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    range_name: Optional[RangeName] = Query(None, alias="range"),
    project: Optional[str] = None,
    agent: Optional[str] = None,
    sessionId: Optional[str] = None,
):
    engine = _get_engine(request)
    lo, hi = resolve_range(start, end, range_name)
    try:
        return await engine.query_service.query(_filter(project, agent, sessionId), lo, hi)
    except STORAGE_ERRORS as exc:
        logger.error("Bucket query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.get("/summary", response_model=UsageSummary)
async def get_summary(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    range_name: Optional[RangeName] = Query(None, alias="range"),
    project: Optional[str] = None,
    agent: Optional[str] = None,
    sessionId: Optional[str] = None,
):
    engine = _get_engine(request)
    lo, hi = resolve_range(start, end, range_name)
    try:
        return await engine.query_service.summary(_filter(project, agent, sessionId), lo, hi)
    except STORAGE_ERRORS as exc:
        logger.error("Summary query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.get("/timeseries", response_model=TimeseriesResult)
async def get_timeseries(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    range_name: Optional[RangeName] = Query(None, alias="range"),
    bucketMinutes: int = 30,
    project: Optional[str] = None,
    agent: Optional[str] = None,
    sessionId: Optional[str] = None,
):
    engine = _get_engine(request)
    if bucketMinutes not in SUPPORTED_BUCKET_MINUTES:
        raise HTTPException(status_code=400, detail=f"bucketMinutes must be one of {list(SUPPORTED_BUCKET_MINUTES)}")
    lo, hi = resolve_range(start, end, range_name)
    try:
        return await engine.query_service.timeseries(
            _filter(project, agent, sessionId), lo, hi, bucket_minutes=bucketMinutes
        )
    except STORAGE_ERRORS as exc:
        logger.error("Timeseries query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.get("/by-agent", response_model=GroupUsageResult)
async def get_usage_by_agent(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    range_name: Optional[RangeName] = Query(None, alias="range"),
    project: Optional[str] = None,
):
    engine = _get_engine(request)
    lo, hi = resolve_range(start, end, range_name)
    try:
        return await engine.query_service.by_agent(lo, hi, project=project)
    except STORAGE_ERRORS as exc:
        logger.error("Per-agent query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.get("/by-project", response_model=GroupUsageResult)
async def get_usage_by_project(
    request: Request,
    start: Optional[str] = None,
    end: Optional[str] = None,
    range_name: Optional[RangeName] = Query(None, alias="range"),
):
    engine = _get_engine(request)
    lo, hi = resolve_range(start, end, range_name)
    try:
        return await engine.query_service.by_project(lo, hi)
    except STORAGE_ERRORS as exc:
        logger.error("Per-project query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.get("/stats", response_model=StorageStats)
async def get_storage_stats(request: Request):
    engine = _get_engine(request)
    try:
        return await engine.query_service.stats()
    except STORAGE_ERRORS as exc:
        logger.error("Stats query failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc


@usage_router.post("/identities")
async def upsert_identity(request: Request, req: IdentityRequest):
    """Record the agent and project a session belongs to."""
    engine = _get_engine(request)
    try:
        identity = await engine.upsert_identity(req.sessionId, req.agentName, req.projectPath)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except STORAGE_ERRORS as exc:
        logger.error("Identity write failed: %s", exc)
        raise HTTPException(status_code=503, detail="Usage storage unavailable") from exc
    return {
        "status": "ok",
        "sessionId": identity.session_id,
        "agentName": identity.agent_name,
        "projectPath": identity.project_path,
    }
