"""Process-wide usage engine.

`UsageEngine` owns every long-lived piece of the pipeline: the writer and
read connections, the scanner, the scheduler, the identity resolver and the
query service. Build it once at startup, call `start()`, and `stop()` on
shutdown.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Sequence

from tokenroll import config
from tokenroll.config import ProviderRoot
from tokenroll.date_utils import utc_now_iso
from tokenroll.db import connection, migrations
from tokenroll.db.file_watcher import FileWatcher
from tokenroll.db.scanner import LogScanner
from tokenroll.db.scheduler import ScanScheduler
from tokenroll.db.writer import UsageWriter
from tokenroll.identity import IdentityResolver
from tokenroll.models import SessionIdentity, TriggerScanResult
from tokenroll.services.usage_query import UsageQueryService

logger = logging.getLogger("tokenroll")


class UsageEngine:
    def __init__(
        self,
        db: Any,
        read_db: Any | None = None,
        *,
        roots: Sequence[ProviderRoot] | Callable[[], Sequence[ProviderRoot]] | None = None,
        project_paths: Sequence[Path] | Callable[[], Sequence[Path]] | None = None,
        scanner_options: dict[str, Any] | None = None,
        scheduler_options: dict[str, Any] | None = None,
    ):
        self.db = db
        self.read_db = read_db if read_db is not None else db
        self.writer = UsageWriter(db)
        self.scanner = LogScanner(self.writer, **(scanner_options or {}))
        self.resolver = IdentityResolver(self.read_db)
        self.query_service = UsageQueryService(self.read_db, self.resolver)
        self.scheduler = ScanScheduler(
            self.writer,
            self.scanner,
            roots=config.load_provider_roots if roots is None else roots,
            project_paths=config.load_identity_project_paths if project_paths is None else project_paths,
            on_identities_changed=self.resolver.invalidate,
            **(scheduler_options or {}),
        )
        self.watcher = FileWatcher()

    @classmethod
    async def build(cls, **kwargs: Any) -> "UsageEngine":
        """Open the configured backend, migrate it and wire an engine on top."""
        db = await connection.get_connection()
        await migrations.run_migrations(db)
        read_db = await connection.get_read_connection()
        return cls(db, read_db, **kwargs)

    async def start(self, *, periodic: bool = True, watch: bool | None = None) -> None:
        if periodic:
            await self.scheduler.start()
        if config.WATCH_ENABLED if watch is None else watch:
            await self.watcher.start(self.scheduler, [root.path for root in self.scheduler.roots()])
        logger.info("Usage engine started")

    async def stop(self) -> None:
        await self.watcher.stop()
        await self.scheduler.stop()
        logger.info("Usage engine stopped")

    async def trigger_scan(self, trigger: str = "api", wait: bool = False) -> TriggerScanResult:
        return await self.scheduler.trigger_scan(trigger=trigger, wait=wait)

    async def resolve(self, session_id: str) -> SessionIdentity | None:
        return await self.resolver.resolve(session_id)

    async def upsert_identity(self, session_id: str, agent_name: str, project_path: str = "") -> SessionIdentity:
        """Record which agent and project a session belongs to."""
        identity = SessionIdentity(
            session_id=session_id.strip(),
            agent_name=agent_name.strip(),
            project_path=project_path.strip().rstrip("/"),
            last_seen_at=utc_now_iso(),
        )
        if not identity.session_id or not identity.agent_name:
            raise ValueError("session_id and agent_name are required")
        await self.writer.record_identities([identity])
        self.resolver.invalidate()
        return identity

    def status(self) -> dict[str, Any]:
        return {
            "scheduler": self.scheduler.status(),
            "watcher": "running" if self.watcher.is_running else "stopped",
        }
