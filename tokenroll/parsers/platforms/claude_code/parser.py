"""Claude Code transcript decoder.

Transcripts live at `~/.claude/projects/<project-slug>/<session-id>.jsonl`.
Assistant entries carry per-message usage under `message.usage`.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from tokenroll.date_utils import parse_timestamp
from tokenroll.errors import ParseCorruption
from tokenroll.models import UsageEvent
from tokenroll.parsers.platforms.base import ParseContext, coerce_count

PROVIDER = "claude_code"

_USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def project_from_path(path: str) -> str:
    """Project name from the `-home-dev-code-jat` directory slug, or "" outside one."""
    for parent in Path(path).parents:
        if parent.name.startswith("-"):
            return parent.name.rsplit("-", 1)[-1]
    return ""


class ClaudeCodeParser:
    provider = PROVIDER

    def new_context(self, path: str, state: dict[str, Any] | None = None) -> ParseContext:
        return ParseContext(
            path=path,
            provider=PROVIDER,
            session_id=Path(path).stem,
            state=json.loads(json.dumps(state or {})),
            default_project=project_from_path(path),
        )

    def parse_line(self, line: str, ctx: ParseContext) -> UsageEvent | None:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ParseCorruption(f"invalid JSON: {exc.msg}", path=ctx.path) from exc
        if not isinstance(entry, dict):
            return None

        ctx.note_markers(line)

        message = entry.get("message")
        if not isinstance(message, dict):
            return None
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return None
        if not any(usage.get(key) is not None for key in _USAGE_FIELDS):
            return None

        raw_timestamp = entry.get("timestamp")
        if raw_timestamp in (None, ""):
            return None
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            raise ParseCorruption(f"unparseable timestamp {raw_timestamp!r}", path=ctx.path)

        session_id = entry.get("sessionId")
        if not isinstance(session_id, str) or not session_id.strip():
            session_id = ctx.session_id

        cwd = entry.get("cwd")
        ctx.note_project(session_id.strip(), cwd if isinstance(cwd, str) else None)

        model = message.get("model")
        return UsageEvent(
            timestamp=timestamp,
            session_id=session_id.strip(),
            provider=PROVIDER,
            tokens_in=coerce_count(usage.get("input_tokens"), "input_tokens"),
            tokens_out=coerce_count(usage.get("output_tokens"), "output_tokens"),
            cache_creation_tokens=coerce_count(
                usage.get("cache_creation_input_tokens"), "cache_creation_input_tokens"
            ),
            cache_read_tokens=coerce_count(usage.get("cache_read_input_tokens"), "cache_read_input_tokens"),
            model=model.strip() if isinstance(model, str) else "",
        )


parser = ClaudeCodeParser()
