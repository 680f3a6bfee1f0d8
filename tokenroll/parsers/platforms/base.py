"""Provider parser contract shared by the platform decoders."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from tokenroll.errors import ParseCorruption
from tokenroll.models import SessionIdentity, UsageEvent

_AGENT_MARKER_PATTERN = re.compile(r"\[JAT_AGENT_NAME:([^\]]+)\]")
_PROJECT_MARKER_PATTERN = re.compile(r"\[JAT_PROJECT_PATH:([^\]]+)\]")


@dataclass
class ParseContext:
    """Per-file parsing state for one scan pass.

    `state` is provider-private and is persisted with the file offset, so it
    must only hold JSON-serializable values.
    """

    path: str
    provider: str
    session_id: str
    state: dict[str, Any] = field(default_factory=dict)
    identities: list[SessionIdentity] = field(default_factory=list)
    projects: dict[str, str] = field(default_factory=dict)
    default_project: str = ""

    def note_markers(self, raw_line: str) -> None:
        """Record agent/project markers and emit an identity once both are known."""
        if "JAT_" not in raw_line:
            return
        agent_match = _AGENT_MARKER_PATTERN.search(raw_line)
        project_match = _PROJECT_MARKER_PATTERN.search(raw_line)
        changed = False
        if agent_match and agent_match.group(1).strip() != self.state.get("agent_marker"):
            self.state["agent_marker"] = agent_match.group(1).strip()
            changed = True
        if project_match:
            project_path = project_match.group(1).strip().rstrip("/")
            if project_path != self.state.get("project_marker"):
                self.state["project_marker"] = project_path
                changed = True
        agent = self.state.get("agent_marker")
        project = self.state.get("project_marker")
        if changed and agent and project:
            self.identities.append(
                SessionIdentity(session_id=self.session_id, agent_name=agent, project_path=project)
            )

    def note_project(self, session_id: str, project_path: str | None = None) -> None:
        """Record the project a session ran in, once per change."""
        project = (project_path or self.default_project or "").strip().rstrip("/")
        if not project or not session_id:
            return
        known = self.state.setdefault("projects", {})
        if known.get(session_id) == project:
            return
        known[session_id] = project
        self.projects[session_id] = project


class ProviderParser(Protocol):
    provider: str

    def new_context(self, path: str, state: dict[str, Any] | None = None) -> ParseContext:
        ...

    def parse_line(self, line: str, ctx: ParseContext) -> UsageEvent | None:
        ...


def coerce_count(value: Any, field_name: str) -> int:
    """Coerce an optional token counter; absent values count as zero."""
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ParseCorruption(f"{field_name} is not numeric")
    if isinstance(value, (int, float)):
        count = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        count = int(value.strip())
    else:
        raise ParseCorruption(f"{field_name} is not numeric")
    if count < 0:
        raise ParseCorruption(f"{field_name} is negative")
    return count
