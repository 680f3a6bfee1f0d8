import json
import os
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from tokenroll.config import ProviderRoot
from tokenroll.db.repositories.offsets import SqliteLogFileStateRepository
from tokenroll.db.repositories.usage import SqliteUsageBucketRepository
from tokenroll.db.scanner import LogScanner, discover_log_files
from tokenroll.db.sqlite_migrations import run_migrations
from tokenroll.db.writer import UsageWriter
from tokenroll.errors import CommitFailure, LogIoError, ParseCorruption
from tokenroll.models import BucketKey

CODEX_UUID = "0199a1b2-c3d4-4e5f-8a9b-0c1d2e3f4a5b"


def _claude_line(timestamp: str, tokens_in: int = 100, tokens_out: int = 50, session_id: str = "sess-1") -> str:
    return json.dumps(
        {
            "type": "assistant",
            "timestamp": timestamp,
            "sessionId": session_id,
            "message": {
                "model": "claude-sonnet-4-5",
                "usage": {"input_tokens": tokens_in, "output_tokens": tokens_out},
            },
        }
    ) + "\n"


def _codex_line(timestamp: str, input_tokens: int, output_tokens: int) -> str:
    return json.dumps(
        {
            "timestamp": timestamp,
            "type": "event_msg",
            "payload": {
                "type": "token_count",
                "info": {
                    "total_token_usage": {
                        "input_tokens": input_tokens,
                        "cached_input_tokens": 0,
                        "output_tokens": output_tokens,
                        "total_tokens": input_tokens + output_tokens,
                    }
                },
            },
        }
    ) + "\n"


class LogScannerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.writer = UsageWriter(self.db)
        self.scanner = LogScanner(self.writer, read_budget_seconds=10)
        self.buckets = SqliteUsageBucketRepository(self.db)
        self.offsets = SqliteLogFileStateRepository(self.db)

        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.path = self.root / "sess-1.jsonl"

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _append(self, text: str | bytes, path: Path | None = None) -> None:
        target = path or self.path
        data = text.encode("utf-8") if isinstance(text, str) else text
        with target.open("ab") as handle:
            handle.write(data)

    async def _state(self, path: Path | None = None, provider: str = "claude_code"):
        target = str(path or self.path)
        await self.writer.ensure_states([(target, provider)])
        return await self.offsets.get(target)

    async def _bucket(self, bucket_start: str, session_id: str = "sess-1", provider: str = "claude_code"):
        return await self.buckets.get(BucketKey(session_id, provider, bucket_start))

    async def test_two_lines_fill_two_buckets_and_rescan_is_unchanged(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z") + _claude_line("2026-03-01T10:40:00Z"))

        outcome = await self.scanner.scan_and_commit(await self._state())

        self.assertTrue(outcome.changed)
        self.assertEqual(len(outcome.events), 2)
        first = await self._bucket("2026-03-01T10:00:00Z")
        second = await self._bucket("2026-03-01T10:30:00Z")
        self.assertEqual((first["tokens_in"], first["tokens_out"], first["event_count"]), (100, 50, 1))
        self.assertEqual((second["tokens_in"], second["tokens_out"], second["event_count"]), (100, 50, 1))

        state = await self._state()
        self.assertEqual(state.byte_offset, self.path.stat().st_size)
        self.assertEqual(state.generation, 1)

        again = await self.scanner.scan_and_commit(state)

        self.assertFalse(again.changed)
        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["tokens_in"], 100)
        self.assertEqual((await self._state()).generation, 1)

    async def test_appended_lines_are_added_once(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z"))
        await self.scanner.scan_and_commit(await self._state())
        self._append(_claude_line("2026-03-01T10:10:00Z", tokens_in=7, tokens_out=3))

        await self.scanner.scan_and_commit(await self._state())
        await self.scanner.scan_and_commit(await self._state())

        bucket = await self._bucket("2026-03-01T10:00:00Z")
        self.assertEqual((bucket["tokens_in"], bucket["tokens_out"], bucket["event_count"]), (107, 53, 2))

    async def test_stale_state_cannot_commit_twice(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z"))
        stale = await self._state()
        await self.scanner.scan_and_commit(stale)

        with self.assertRaises(CommitFailure) as ctx:
            await self.scanner.scan_and_commit(stale)

        self.assertTrue(ctx.exception.stale)
        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["tokens_in"], 100)

    async def test_partial_line_waits_for_newline(self) -> None:
        first = _claude_line("2026-03-01T10:05:00Z")
        second = _claude_line("2026-03-01T10:06:00Z", tokens_in=1, tokens_out=1)
        self._append(first + second[:25])

        await self.scanner.scan_and_commit(await self._state())

        self.assertEqual((await self._state()).byte_offset, len(first.encode("utf-8")))
        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["event_count"], 1)

        self._append(second[25:])
        await self.scanner.scan_and_commit(await self._state())

        bucket = await self._bucket("2026-03-01T10:00:00Z")
        self.assertEqual((bucket["tokens_in"], bucket["event_count"]), (101, 2))
        self.assertEqual((await self._state()).byte_offset, self.path.stat().st_size)

    async def test_partial_line_only_is_unchanged(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z").rstrip("\n"))

        outcome = await self.scanner.scan_and_commit(await self._state())

        self.assertFalse(outcome.changed)
        self.assertEqual((await self._state()).byte_offset, 0)

    async def test_truncated_file_is_rescanned_from_start(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z") + _claude_line("2026-03-01T10:06:00Z"))
        await self.scanner.scan_and_commit(await self._state())

        self.path.write_text(_claude_line("2026-03-01T10:07:00Z", tokens_in=5, tokens_out=5), encoding="utf-8")
        outcome = await self.scanner.scan_and_commit(await self._state())

        self.assertTrue(outcome.rotated)
        bucket = await self._bucket("2026-03-01T10:00:00Z")
        self.assertEqual((bucket["tokens_in"], bucket["event_count"]), (205, 3))
        self.assertEqual((await self._state()).byte_offset, self.path.stat().st_size)

    async def test_failed_commit_applies_nothing_and_retries_cleanly(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z"))
        state = await self._state()

        with patch.object(
            SqliteLogFileStateRepository,
            "compare_and_advance",
            side_effect=aiosqlite.OperationalError("disk I/O error"),
        ):
            with self.assertRaises(CommitFailure) as ctx:
                await self.scanner.scan_and_commit(state)

        self.assertFalse(ctx.exception.stale)
        self.assertIsNone(await self._bucket("2026-03-01T10:00:00Z"))
        self.assertEqual((await self._state()).byte_offset, 0)

        await self.scanner.scan_and_commit(await self._state())

        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["tokens_in"], 100)

    async def test_malformed_lines_are_counted_and_skipped(self) -> None:
        self._append(_claude_line("2026-03-01T10:05:00Z"))
        self._append("{broken json\n")
        self._append(b"\xff\xfe\xfd\n")
        self._append("\n   \n")
        self._append(_claude_line("2026-03-01T10:06:00Z").replace("\n", "\r\n"))

        outcome = await self.scanner.scan_and_commit(await self._state())

        self.assertEqual(outcome.malformed_lines, 2)
        self.assertEqual(len(outcome.events), 2)
        self.assertEqual((await self._state()).byte_offset, self.path.stat().st_size)

    async def test_oversized_line_without_newline_is_corrupt(self) -> None:
        scanner = LogScanner(self.writer, max_pending_line_bytes=16)
        self._append("x" * 64)

        with self.assertRaises(ParseCorruption):
            await scanner.scan_and_commit(await self._state())

    async def test_read_is_bounded_per_pass(self) -> None:
        lines = [_claude_line(f"2026-03-01T10:0{i}:00Z", tokens_in=1, tokens_out=0) for i in range(4)]
        self._append("".join(lines))
        scanner = LogScanner(self.writer, max_read_bytes=len(lines[0]) * 2 + 10)

        await scanner.scan_and_commit(await self._state())
        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["event_count"], 2)

        await scanner.scan_and_commit(await self._state())
        self.assertEqual((await self._bucket("2026-03-01T10:00:00Z"))["event_count"], 4)

    async def test_missing_file_is_io_error(self) -> None:
        state = await self._state(self.root / "gone.jsonl")
        with self.assertRaises(LogIoError):
            await self.scanner.scan_and_commit(state)

    async def test_codex_baseline_is_persisted_with_offset(self) -> None:
        path = self.root / f"rollout-2026-03-01T10-00-00-{CODEX_UUID}.jsonl"
        self._append(_codex_line("2026-03-01T10:01:00Z", 1000, 100), path)
        await self.scanner.scan_and_commit(await self._state(path, "codex"))

        state = await self._state(path, "codex")
        self.assertEqual(state.parser_state["cumulative"]["input_tokens"], 1000)

        self._append(_codex_line("2026-03-01T10:02:00Z", 1250, 130), path)
        await self.scanner.scan_and_commit(state)

        bucket = await self._bucket("2026-03-01T10:00:00Z", session_id=f"codex:{CODEX_UUID}", provider="codex")
        self.assertEqual((bucket["tokens_in"], bucket["tokens_out"], bucket["event_count"]), (1250, 130, 2))
        self.assertEqual(bucket["cost_usd"], 0.0)

    async def test_marker_identities_commit_with_offset(self) -> None:
        marker = json.dumps(
            {"type": "user", "message": {"content": "[JAT_AGENT_NAME:BlueLake][JAT_PROJECT_PATH:/code/jat]"}}
        )
        self._append(marker + "\n" + _claude_line("2026-03-01T10:05:00Z"))

        await self.scanner.scan_and_commit(await self._state())

        async with self.db.execute("SELECT agent_name, project_path FROM session_identity WHERE session_id = ?", ("sess-1",)) as cur:
            row = await cur.fetchone()
        self.assertEqual((row["agent_name"], row["project_path"]), ("BlueLake", "/code/jat"))


class DiscoverLogFilesTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)

    def _touch(self, relative: str, mtime: float | None = None) -> Path:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{}\n", encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    def test_depth_hidden_dirs_and_lookback(self) -> None:
        now = time.time()
        recent = self._touch("claude/-home-dev-jat/sess-1.jsonl")
        self._touch("claude/-home-dev-jat/sess-1/subagents/agent-a.jsonl")
        self._touch("claude/.cache/sess-2.jsonl")
        self._touch("claude/-home-dev-jat/notes.txt")
        codex_recent = self._touch("codex/2026/03/01/rollout-a.jsonl")
        self._touch("codex/2025/01/01/rollout-old.jsonl", mtime=now - 90 * 86400)

        found = discover_log_files(
            [
                ProviderRoot(provider="claude_code", path=self.root / "claude", max_depth=2),
                ProviderRoot(provider="codex", path=self.root / "codex", lookback_days=30),
                ProviderRoot(provider="codex", path=self.root / "missing"),
            ],
            now=now,
        )

        self.assertEqual(
            found,
            sorted([(str(recent), "claude_code"), (str(codex_recent), "codex")]),
        )


if __name__ == "__main__":
    unittest.main()
