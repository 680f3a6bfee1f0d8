"""Scan cycle scheduler.

Runs full scan cycles on a timer and on explicit trigger. Only one cycle runs
at a time; a trigger that arrives while a cycle is running is refused with
`already_running` instead of queueing.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from tokenroll import config
from tokenroll.config import ProviderRoot
from tokenroll.date_utils import utc_now_iso
from tokenroll.db.scanner import LogScanner, discover_log_files
from tokenroll.db.writer import UsageWriter
from tokenroll.errors import CommitFailure, LogIoError, ParseCorruption, ScanCycleError
from tokenroll.identity_sources import discover_identities
from tokenroll.models import LogFileState, TriggerScanResult
from tokenroll.observability import record_cycle, record_file_scan, start_span

logger = logging.getLogger("tokenroll.scheduler")

FILE_OUTCOMES = (
    "committed",
    "unchanged",
    "io_error",
    "parse_corruption",
    "commit_failure",
    "timeout",
    "error",
)


@dataclass
class CycleReport:
    id: str
    trigger: str
    status: str = "running"
    startedAt: str = ""
    finishedAt: str = ""
    durationMs: int = 0
    filesDiscovered: int = 0
    outcomes: dict[str, int] = field(default_factory=lambda: {name: 0 for name in FILE_OUTCOMES})
    events: int = 0
    malformedLines: int = 0
    identitiesRecorded: int = 0
    error: str = ""

    def count(self, outcome: str) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ScanScheduler:
    """Single-flight scan cycles over the configured provider roots."""

    def __init__(
        self,
        writer: UsageWriter,
        scanner: LogScanner,
        *,
        roots: Sequence[ProviderRoot] | Callable[[], Sequence[ProviderRoot]],
        project_paths: Sequence[Path] | Callable[[], Sequence[Path]] = (),
        interval_seconds: float | None = None,
        startup_delay_seconds: float | None = None,
        workers: int | None = None,
        cycle_budget_seconds: float | None = None,
        history_size: int | None = None,
        on_identities_changed: Callable[[], None] | None = None,
    ):
        self.writer = writer
        self.scanner = scanner
        self._roots = roots
        self._project_paths = project_paths
        self.interval_seconds = config.SCAN_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.startup_delay_seconds = (
            config.STARTUP_SCAN_DELAY_SECONDS if startup_delay_seconds is None else startup_delay_seconds
        )
        self.workers = max(1, config.SCAN_WORKERS if workers is None else workers)
        self.cycle_budget_seconds = (
            config.SCAN_CYCLE_BUDGET_SECONDS if cycle_budget_seconds is None else cycle_budget_seconds
        )
        self.history_size = max(1, config.CYCLE_HISTORY if history_size is None else history_size)
        self._on_identities_changed = on_identities_changed

        self._state = "idle"
        self._current: CycleReport | None = None
        self._history: list[CycleReport] = []
        self._cycle_task: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None
        self.last_completed_at = ""

    # ── State ───────────────────────────────────────────────────────

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == "running"

    def roots(self) -> list[ProviderRoot]:
        return list(self._roots() if callable(self._roots) else self._roots)

    def project_paths(self) -> list[Path]:
        return list(self._project_paths() if callable(self._project_paths) else self._project_paths)

    def history(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Recent cycle reports, newest first."""
        reports = self._history[: limit or self.history_size]
        return [copy.deepcopy(report.to_dict()) for report in reports]

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state,
            "currentCycle": self._current.to_dict() if self._current else None,
            "lastCompletedAt": self.last_completed_at,
            "intervalSeconds": self.interval_seconds,
            "workers": self.workers,
            "recentCycles": self.history(5),
        }

    # ── Triggering ──────────────────────────────────────────────────

    async def trigger_scan(self, trigger: str = "api", wait: bool = False) -> TriggerScanResult:
        """Start a cycle unless one is running.

        With `wait=True` the call returns when the cycle finishes and re-raises
        a cycle-level failure; per-file failures never surface here.
        """
        if self._state == "running":
            return TriggerScanResult(
                started=False,
                reason="already_running",
                cycleId=self._current.id if self._current else None,
            )

        # No await between the check and the transition keeps this single-flight.
        report = CycleReport(id=f"SCAN-{uuid.uuid4()}", trigger=trigger, startedAt=utc_now_iso())
        self._state = "running"
        self._current = report
        self._cycle_task = asyncio.create_task(self._run_cycle_guarded(report))

        if wait:
            await asyncio.shield(self._cycle_task)
            if report.status == "failed":
                raise ScanCycleError(report.id, report.error)
        return TriggerScanResult(started=True, cycleId=report.id)

    async def _run_cycle_guarded(self, report: CycleReport) -> None:
        t0 = time.monotonic()
        try:
            await self.run_cycle(report)
            report.status = "completed"
            self.last_completed_at = utc_now_iso()
        except asyncio.CancelledError:
            report.status = "cancelled"
            raise
        except Exception as exc:
            report.status = "failed"
            report.error = str(exc) or exc.__class__.__name__
            logger.exception("Scan cycle %s failed", report.id)
        finally:
            report.durationMs = int((time.monotonic() - t0) * 1000)
            report.finishedAt = utc_now_iso()
            self._history.insert(0, report)
            del self._history[self.history_size:]
            self._current = None
            self._state = "idle"
            record_cycle(report.trigger, report.status, report.durationMs)
            logger.info(
                "Scan cycle %s %s in %sms (trigger=%s files=%s outcomes=%s)",
                report.id,
                report.status,
                report.durationMs,
                report.trigger,
                report.filesDiscovered,
                {k: v for k, v in report.outcomes.items() if v},
            )

    # ── Cycle ───────────────────────────────────────────────────────

    async def run_cycle(self, report: CycleReport) -> CycleReport:
        with start_span("tokenroll.scan_cycle", {"cycle_id": report.id, "trigger": report.trigger}):
            project_paths = self.project_paths()
            if project_paths:
                identities = await asyncio.to_thread(discover_identities, project_paths)
                if identities:
                    report.identitiesRecorded = await self.writer.record_identities(identities)
                    if self._on_identities_changed:
                        self._on_identities_changed()

            files = await asyncio.to_thread(discover_log_files, self.roots())
            report.filesDiscovered = len(files)
            if not files:
                return report
            await self.writer.ensure_states(files)
            states = {state.path: state for state in await self.writer.list_states()}
            targets = [states[path] for path, _ in files if path in states]

            semaphore = asyncio.Semaphore(self.workers)
            tasks = [asyncio.create_task(self._scan_one(state, semaphore, report)) for state in targets]
            if not tasks:
                return report
            _done, pending = await asyncio.wait(tasks, timeout=self.cycle_budget_seconds)
            if pending:
                logger.warning(
                    "Scan cycle %s exceeded its %ss budget; %s files deferred to the next cycle",
                    report.id,
                    self.cycle_budget_seconds,
                    len(pending),
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                for _ in pending:
                    report.count("timeout")
        return report

    async def _scan_one(self, state: LogFileState, semaphore: asyncio.Semaphore, report: CycleReport) -> None:
        async with semaphore:
            t0 = time.monotonic()
            result = "error"
            try:
                outcome = await self.scanner.scan_and_commit(state)
                result = "committed" if outcome.changed else "unchanged"
                report.events += len(outcome.events)
                report.malformedLines += outcome.malformed_lines
                if (outcome.identities or outcome.projects) and self._on_identities_changed:
                    self._on_identities_changed()
            except asyncio.TimeoutError:
                result = "timeout"
                logger.warning("Reading %s exceeded the per-file budget", state.path)
            except LogIoError as exc:
                result = "io_error"
                logger.warning("Cannot read %s: %s", state.path, exc)
            except ParseCorruption as exc:
                result = "parse_corruption"
                logger.warning("Unparseable log %s: %s", state.path, exc)
            except CommitFailure as exc:
                result = "commit_failure"
                logger.warning("Commit failed for %s (stale=%s): %s", state.path, exc.stale, exc)
            except Exception:
                logger.exception("Unexpected error scanning %s", state.path)
            report.count(result)
            record_file_scan(state.provider, result, (time.monotonic() - t0) * 1000)

    # ── Periodic loop ───────────────────────────────────────────────

    async def start(self) -> None:
        if self._loop_task is not None:
            logger.warning("Scan scheduler already started")
            return
        self._loop_task = asyncio.create_task(self._periodic_loop())
        logger.info(
            "Scan scheduler started (interval=%ss, workers=%s)", self.interval_seconds, self.workers
        )

    async def stop(self) -> None:
        for task in (self._loop_task, self._cycle_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._cycle_task = None
        logger.info("Scan scheduler stopped")

    async def _periodic_loop(self) -> None:
        await asyncio.sleep(self.startup_delay_seconds)
        while True:
            result = await self.trigger_scan(trigger="timer")
            if not result.started:
                logger.info("Timer scan skipped: %s", result.reason)
            await asyncio.sleep(self.interval_seconds)
