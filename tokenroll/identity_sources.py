"""Discover session → agent mappings from project marker files.

Agents record their session as `.claude/sessions/agent-<sessionId>.txt`
(older layouts use `.claude/agent-<sessionId>.txt`) holding the agent name.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from tokenroll.models import SessionIdentity

logger = logging.getLogger("tokenroll.identity")

_MARKER_PREFIX = "agent-"
_MARKER_SUFFIX = ".txt"


def _marker_dirs(project_path: Path) -> list[Path]:
    return [project_path / ".claude" / "sessions", project_path / ".claude"]


def discover_identities(project_paths: Iterable[Path]) -> list[SessionIdentity]:
    """Return one identity per marker file; the newer layout wins on duplicates."""
    found: dict[str, SessionIdentity] = {}
    for project_path in project_paths:
        project = Path(project_path).expanduser()
        for marker_dir in _marker_dirs(project):
            if not marker_dir.is_dir():
                continue
            for marker in sorted(marker_dir.glob(f"{_MARKER_PREFIX}*{_MARKER_SUFFIX}")):
                session_id = marker.name[len(_MARKER_PREFIX):-len(_MARKER_SUFFIX)].strip()
                if not session_id or session_id in found:
                    continue
                try:
                    agent_name = marker.read_text(encoding="utf-8").strip()
                except (OSError, UnicodeDecodeError) as exc:
                    logger.debug("Skipping unreadable marker %s: %s", marker, exc)
                    continue
                if not agent_name:
                    continue
                found[session_id] = SessionIdentity(
                    session_id=session_id,
                    agent_name=agent_name.splitlines()[0].strip(),
                    project_path=str(project).rstrip("/"),
                )
    return list(found.values())
