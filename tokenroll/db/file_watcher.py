"""File watcher service using watchfiles.

Monitors provider log roots and triggers a scan cycle when session logs
change. The periodic timer remains the source of truth; a change that
arrives while a cycle is running is simply picked up by the next one.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

from watchfiles import Change, awatch

logger = logging.getLogger("tokenroll.watcher")


class FileWatcher:
    """Background file watcher that triggers scans on change.

    Uses `watchfiles` (Rust-accelerated) for efficient watching.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self, scheduler: Any, roots: Iterable[Path]) -> None:
        """Start watching provider roots in a background task."""
        if self._running:
            logger.warning("File watcher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._watch_loop(scheduler, list(roots)))
        logger.info("File watcher started")

    async def stop(self) -> None:
        """Stop the file watcher."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self, scheduler: Any, roots: list[Path]) -> None:
        """Main watching loop."""
        watch_paths = [p for p in roots if p.exists()]

        if not watch_paths:
            logger.warning("No watch paths exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info("Watching %s directories: %s", len(watch_paths), [str(p) for p in watch_paths])

        try:
            async for changes in awatch(*watch_paths):
                if not self._running:
                    break
                relevant = self.relevant_changes(changes)
                if not relevant:
                    continue
                result = await scheduler.trigger_scan(trigger="watcher")
                if result.started:
                    logger.info("Detected %s log changes, scan %s started", len(relevant), result.cycleId)
                else:
                    logger.debug("Detected %s log changes, scan not started: %s", len(relevant), result.reason)
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error("File watcher error: %s", e)
        finally:
            self._running = False

    @staticmethod
    def relevant_changes(changes: set[tuple[Change, str]]) -> list[Path]:
        """Keep added or modified session logs; deletions need no scan."""
        return sorted(
            Path(path_str)
            for change_type, path_str in changes
            if Path(path_str).suffix == ".jsonl" and change_type in (Change.modified, Change.added)
        )
