import types
import unittest
from datetime import datetime, timezone

import aiosqlite
from fastapi import HTTPException

from tokenroll.errors import ScanCycleError
from tokenroll.models import (
    GroupUsage,
    GroupUsageResult,
    SessionIdentity,
    StorageStats,
    TimeseriesResult,
    TriggerScanResult,
    UsageFilter,
    UsageQueryResult,
    UsageSummary,
)
from tokenroll.routers import usage as usage_router

START = "2026-03-01T00:00:00Z"
END = "2026-03-02T00:00:00Z"


class _FakeQueryService:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.fail = False

    def _record(self, *args) -> None:
        if self.fail:
            raise aiosqlite.OperationalError("database is locked")
        self.calls.append(args)

    async def query(self, usage_filter: UsageFilter, start, end):
        self._record("query", usage_filter, start, end)
        return UsageQueryResult(items=[])

    async def summary(self, usage_filter: UsageFilter, start, end):
        self._record("summary", usage_filter, start, end)
        return UsageSummary(totalTokens=42, sessionCount=1)

    async def timeseries(self, usage_filter: UsageFilter, start, end, bucket_minutes=30):
        self._record("timeseries", usage_filter, start, end, bucket_minutes)
        return TimeseriesResult(points=[], bucketMinutes=bucket_minutes)

    async def by_agent(self, start, end, project=None):
        self._record("by_agent", start, end, project)
        return GroupUsageResult(items=[GroupUsage(key="BlueLake", totalTokens=5, sessionCount=1)])

    async def by_project(self, start, end):
        self._record("by_project", start, end)
        return GroupUsageResult(items=[])

    async def stats(self):
        self._record("stats")
        return StorageStats(totalRows=3)


class _FakeScheduler:
    def history(self, limit=None):
        return [{"id": "cycle-1", "status": "completed"}][:limit]


class _FakeUsageEngine:
    def __init__(self) -> None:
        self.query_service = _FakeQueryService()
        self.scheduler = _FakeScheduler()
        self.scan_calls: list[dict] = []
        self.running = False
        self.cycle_fails = False
        self.identities: list[tuple] = []

    async def trigger_scan(self, trigger="api", wait=False):
        self.scan_calls.append({"trigger": trigger, "wait": wait})
        if self.cycle_fails:
            raise ScanCycleError("cycle-9", "database is locked")
        if self.running:
            return TriggerScanResult(started=False, reason="already_running", cycleId="cycle-1")
        return TriggerScanResult(started=True, cycleId="cycle-2")

    async def upsert_identity(self, session_id, agent_name, project_path=""):
        if not session_id.strip():
            raise ValueError("session_id and agent_name are required")
        self.identities.append((session_id, agent_name, project_path))
        return SessionIdentity(session_id, agent_name, project_path.rstrip("/"))

    def status(self):
        return {"scheduler": {"state": "idle"}, "watcher": "stopped"}


class UsageRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, engine):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(state=types.SimpleNamespace(usage_engine=engine))
        )

    async def test_missing_engine_is_unavailable(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_storage_stats(self._request(None))
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_trigger_scan_reports_already_running(self) -> None:
        engine = _FakeUsageEngine()
        request = self._request(engine)

        started = await usage_router.trigger_scan(request, None)
        engine.running = True
        refused = await usage_router.trigger_scan(request, usage_router.ScanRequest(wait=False, trigger="cli"))

        self.assertTrue(started.started)
        self.assertFalse(refused.started)
        self.assertEqual(refused.reason, "already_running")
        self.assertEqual(engine.scan_calls, [{"trigger": "api", "wait": False}, {"trigger": "cli", "wait": False}])

    async def test_failed_waited_cycle_is_unavailable(self) -> None:
        engine = _FakeUsageEngine()
        engine.cycle_fails = True

        with self.assertRaises(HTTPException) as ctx:
            await usage_router.trigger_scan(self._request(engine), usage_router.ScanRequest(wait=True))

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertIn("cycle-9", ctx.exception.detail)

    async def test_scan_status_includes_cycle_history(self) -> None:
        payload = await usage_router.get_scan_status(self._request(_FakeUsageEngine()), limit=5)

        self.assertEqual(payload["scheduler"]["state"], "idle")
        self.assertEqual(payload["cycles"][0]["id"], "cycle-1")

    async def test_bucket_query_passes_filter_and_bounds(self) -> None:
        engine = _FakeUsageEngine()

        await usage_router.list_buckets(
            self._request(engine),
            start=START,
            end=END,
            range_name=None,
            project="jat",
            agent="",
            sessionId=None,
        )

        kind, usage_filter, lo, hi = engine.query_service.calls[0]
        self.assertEqual(kind, "query")
        self.assertEqual(usage_filter, UsageFilter(project="jat"))
        self.assertEqual((lo, hi), (START, END))

    async def test_summary_and_groupings(self) -> None:
        engine = _FakeUsageEngine()
        request = self._request(engine)

        summary = await usage_router.get_summary(
            request, start=START, end=END, range_name=None, project=None, agent="BlueLake", sessionId=None
        )
        agents = await usage_router.get_usage_by_agent(request, start=START, end=END, range_name=None, project="jat")
        await usage_router.get_usage_by_project(request, start=START, end=END, range_name=None)
        stats = await usage_router.get_storage_stats(request)

        self.assertEqual(summary.totalTokens, 42)
        self.assertEqual(agents.items[0].key, "BlueLake")
        self.assertEqual(stats.totalRows, 3)
        self.assertEqual(
            [call[0] for call in engine.query_service.calls],
            ["summary", "by_agent", "by_project", "stats"],
        )
        self.assertEqual(engine.query_service.calls[1][3], "jat")

    async def test_timeseries_rejects_unsupported_width(self) -> None:
        engine = _FakeUsageEngine()
        request = self._request(engine)

        hourly = await usage_router.get_timeseries(
            request, start=START, end=END, range_name=None, bucketMinutes=60, project=None, agent=None, sessionId=None
        )
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_timeseries(
                request, start=START, end=END, range_name=None, bucketMinutes=15, project=None, agent=None, sessionId=None
            )

        self.assertEqual(hourly.bucketMinutes, 60)
        self.assertEqual(ctx.exception.status_code, 400)

    async def test_storage_errors_become_503(self) -> None:
        engine = _FakeUsageEngine()
        engine.query_service.fail = True

        with self.assertRaises(HTTPException) as ctx:
            await usage_router.get_summary(
                self._request(engine), start=START, end=END, range_name=None, project=None, agent=None, sessionId=None
            )

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_upsert_identity(self) -> None:
        engine = _FakeUsageEngine()
        request = self._request(engine)

        payload = await usage_router.upsert_identity(
            request, usage_router.IdentityRequest(sessionId="sess-1", agentName="BlueLake", projectPath="/code/jat/")
        )
        with self.assertRaises(HTTPException) as ctx:
            await usage_router.upsert_identity(
                request, usage_router.IdentityRequest(sessionId="  ", agentName="BlueLake")
            )

        self.assertEqual(payload["agentName"], "BlueLake")
        self.assertEqual(payload["projectPath"], "/code/jat")
        self.assertEqual(ctx.exception.status_code, 400)


class ResolveRangeTests(unittest.TestCase):
    NOW = datetime(2026, 3, 1, 10, 44, 12, tzinfo=timezone.utc)

    def test_default_is_last_24h_including_current_bucket(self) -> None:
        self.assertEqual(
            usage_router.resolve_range(None, None, None, now=self.NOW),
            ("2026-02-28T10:30:00Z", "2026-03-01T11:00:00Z"),
        )

    def test_named_ranges(self) -> None:
        self.assertEqual(
            usage_router.resolve_range(None, None, "today", now=self.NOW),
            ("2026-03-01T00:00:00Z", "2026-03-01T11:00:00Z"),
        )
        self.assertEqual(
            usage_router.resolve_range(None, None, "last_7d", now=self.NOW)[0],
            "2026-02-22T10:30:00Z",
        )

    def test_explicit_bounds(self) -> None:
        self.assertEqual(
            usage_router.resolve_range("2026-03-01T08:00:00+02:00", "2026-03-01T09:00:00Z", None, now=self.NOW),
            ("2026-03-01T06:00:00Z", "2026-03-01T09:00:00Z"),
        )
        self.assertEqual(
            usage_router.resolve_range(None, "2026-03-01T09:00:00Z", None, now=self.NOW),
            ("2026-02-28T09:00:00Z", "2026-03-01T09:00:00Z"),
        )

    def test_invalid_bounds_are_rejected(self) -> None:
        for start, end in (("not-a-date", None), ("2026-03-01T09:00:00Z", "2026-03-01T08:00:00Z")):
            with self.assertRaises(HTTPException) as ctx:
                usage_router.resolve_range(start, end, None, now=self.NOW)
            self.assertEqual(ctx.exception.status_code, 400)


if __name__ == "__main__":
    unittest.main()
