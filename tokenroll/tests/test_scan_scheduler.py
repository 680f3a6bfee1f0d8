import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from tokenroll.config import ProviderRoot
from tokenroll.db.repositories.identity import SqliteSessionIdentityRepository
from tokenroll.db.repositories.usage import SqliteUsageBucketRepository
from tokenroll.db.scanner import LogScanner, ScanOutcome
from tokenroll.db.scheduler import ScanScheduler
from tokenroll.db.sqlite_migrations import run_migrations
from tokenroll.db.writer import UsageWriter
from tokenroll.errors import CommitFailure, LogIoError, ParseCorruption, ScanCycleError
from tokenroll.models import BucketKey


class _BlockingScanner:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.calls: list[str] = []

    async def scan_and_commit(self, state):
        self.calls.append(state.path)
        await self.release.wait()
        return ScanOutcome(state=state, new_state=state)


class _ScriptedScanner:
    """Fails or succeeds per file name."""

    async def scan_and_commit(self, state):
        name = Path(state.path).stem
        if name == "io":
            raise LogIoError(state.path, "permission denied")
        if name == "corrupt":
            raise ParseCorruption("line too long", path=state.path)
        if name == "commit":
            raise CommitFailure(state.path, "database is locked")
        if name == "slow":
            raise asyncio.TimeoutError()
        if name == "hang":
            await asyncio.sleep(3600)
        if name == "boom":
            raise KeyError("unexpected")
        return ScanOutcome(state=state, new_state=state.advanced(byte_offset=state.byte_offset + 1))


class ScanSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.writer = UsageWriter(self.db)

        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.base = Path(tmpdir.name)
        self.logs = self.base / "projects"
        self.logs.mkdir()
        self.roots = [ProviderRoot(provider="claude_code", path=self.logs, max_depth=2)]

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _log(self, name: str, content: str = "") -> Path:
        path = self.logs / "-home-dev-jat" / f"{name}.jsonl"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return path

    def _scheduler(self, scanner, **kwargs) -> ScanScheduler:
        options = {"workers": 2, "cycle_budget_seconds": 5.0, "startup_delay_seconds": 0, "interval_seconds": 3600}
        options.update(kwargs)
        return ScanScheduler(self.writer, scanner, roots=self.roots, **options)

    async def _wait_idle(self, scheduler: ScanScheduler) -> None:
        for _ in range(500):
            if scheduler.state == "idle":
                return
            await asyncio.sleep(0.01)
        self.fail("scheduler did not return to idle")

    async def test_trigger_while_running_is_refused(self) -> None:
        self._log("sess-1")
        scanner = _BlockingScanner()
        scheduler = self._scheduler(scanner)

        first = await scheduler.trigger_scan("api")
        for _ in range(500):
            if scanner.calls:
                break
            await asyncio.sleep(0.01)
        second = await scheduler.trigger_scan("watcher")

        self.assertTrue(first.started)
        self.assertFalse(second.started)
        self.assertEqual(second.reason, "already_running")
        self.assertEqual(second.cycleId, first.cycleId)
        self.assertEqual(scheduler.state, "running")

        scanner.release.set()
        await self._wait_idle(scheduler)

        third = await scheduler.trigger_scan("api", wait=True)
        self.assertTrue(third.started)
        self.assertEqual([c["status"] for c in scheduler.history()], ["completed", "completed"])

    async def test_file_failures_are_counted_not_raised(self) -> None:
        for name in ("ok", "io", "corrupt", "commit", "slow", "boom"):
            self._log(name)
        scheduler = self._scheduler(_ScriptedScanner())

        result = await scheduler.trigger_scan("api", wait=True)

        self.assertTrue(result.started)
        report = scheduler.history(1)[0]
        self.assertEqual(report["status"], "completed")
        self.assertEqual(report["filesDiscovered"], 6)
        self.assertEqual(
            {k: v for k, v in report["outcomes"].items() if v},
            {"committed": 1, "io_error": 1, "parse_corruption": 1, "commit_failure": 1, "timeout": 1, "error": 1},
        )
        self.assertEqual(scheduler.state, "idle")

    async def test_cycle_budget_cancels_unfinished_files(self) -> None:
        self._log("ok")
        self._log("hang")
        scheduler = self._scheduler(_ScriptedScanner(), cycle_budget_seconds=0.2)

        await scheduler.trigger_scan("api", wait=True)

        report = scheduler.history(1)[0]
        self.assertEqual(report["status"], "completed")
        self.assertEqual(report["outcomes"]["committed"], 1)
        self.assertEqual(report["outcomes"]["timeout"], 1)

    async def test_storage_failure_fails_cycle_and_returns_to_idle(self) -> None:
        self._log("ok")
        scheduler = self._scheduler(_ScriptedScanner())

        with patch.object(UsageWriter, "list_states", side_effect=aiosqlite.OperationalError("no such table")):
            with self.assertRaises(ScanCycleError):
                await scheduler.trigger_scan("api", wait=True)

        self.assertEqual(scheduler.state, "idle")
        self.assertEqual(scheduler.history(1)[0]["status"], "failed")
        self.assertIn("no such table", scheduler.history(1)[0]["error"])

    async def test_cycle_ingests_logs_and_marker_identities(self) -> None:
        line = json.dumps(
            {
                "timestamp": "2026-03-01T10:05:00Z",
                "sessionId": "sess-1",
                "message": {"model": "claude-haiku-4-5", "usage": {"input_tokens": 10, "output_tokens": 4}},
            }
        )
        self._log("sess-1", line + "\n")
        project = self.base / "jat"
        (project / ".claude" / "sessions").mkdir(parents=True)
        (project / ".claude" / "sessions" / "agent-sess-1.txt").write_text("BlueLake\n", encoding="utf-8")
        invalidations: list[bool] = []
        scheduler = ScanScheduler(
            self.writer,
            LogScanner(self.writer),
            roots=lambda: self.roots,
            project_paths=[project],
            workers=1,
            on_identities_changed=lambda: invalidations.append(True),
        )

        await scheduler.trigger_scan("api", wait=True)
        await scheduler.trigger_scan("api", wait=True)

        bucket = await SqliteUsageBucketRepository(self.db).get(BucketKey("sess-1", "claude_code", "2026-03-01T10:00:00Z"))
        self.assertEqual((bucket["tokens_in"], bucket["tokens_out"], bucket["event_count"]), (10, 4, 1))
        identities = await SqliteSessionIdentityRepository(self.db).list_all()
        self.assertEqual([(i.session_id, i.agent_name, i.project_path) for i in identities], [("sess-1", "BlueLake", str(project))])
        self.assertTrue(invalidations)
        latest, earlier = scheduler.history(2)
        self.assertEqual(earlier["outcomes"]["committed"], 1)
        self.assertEqual(latest["outcomes"]["unchanged"], 1)
        self.assertEqual(latest["identitiesRecorded"], 1)

    async def test_periodic_loop_runs_timer_cycles(self) -> None:
        self._log("ok")
        scheduler = self._scheduler(_ScriptedScanner())

        await scheduler.start()
        for _ in range(500):
            if scheduler.history():
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        self.assertEqual(scheduler.history(1)[0]["trigger"], "timer")
        self.assertEqual(scheduler.status()["state"], "idle")


if __name__ == "__main__":
    unittest.main()
