"""Codex rollout decoder.

Rollouts live at `~/.codex/sessions/<yyyy>/<mm>/<dd>/rollout-<ts>-<uuid>.jsonl`.
`token_count` events report cumulative totals for the whole session, so each
event is turned into a delta against the previous totals. The baseline is kept
in the parse context state and persisted together with the file offset.
`session_meta` and `turn_context` payloads carry the working directory, which
is recorded as the session's project.
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from tokenroll.date_utils import parse_timestamp
from tokenroll.errors import ParseCorruption
from tokenroll.models import UsageEvent
from tokenroll.parsers.platforms.base import ParseContext, coerce_count

PROVIDER = "codex"

_SESSION_UUID_PATTERN = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.jsonl$",
    re.IGNORECASE,
)
_COUNTERS = ("input_tokens", "cached_input_tokens", "output_tokens", "total_tokens")


def session_id_from_path(path: str) -> str:
    match = _SESSION_UUID_PATTERN.search(Path(path).name)
    if match:
        return f"codex:{match.group(1).lower()}"
    return f"codex:{Path(path).stem}"


class CodexParser:
    provider = PROVIDER

    def new_context(self, path: str, state: dict[str, Any] | None = None) -> ParseContext:
        return ParseContext(
            path=path,
            provider=PROVIDER,
            session_id=session_id_from_path(path),
            state=json.loads(json.dumps(state or {})),
        )

    def parse_line(self, line: str, ctx: ParseContext) -> UsageEvent | None:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ParseCorruption(f"invalid JSON: {exc.msg}", path=ctx.path) from exc
        if not isinstance(entry, dict):
            return None

        ctx.note_markers(line)

        payload = entry.get("payload")
        if not isinstance(payload, dict):
            return None

        entry_type = entry.get("type")
        if entry_type in ("session_meta", "turn_context"):
            cwd = payload.get("cwd")
            if isinstance(cwd, str):
                ctx.note_project(ctx.session_id, cwd)
        if entry_type == "turn_context":
            model = payload.get("model")
            if isinstance(model, str) and model.strip():
                ctx.state["model"] = model.strip()
            return None
        if entry_type != "event_msg" or payload.get("type") != "token_count":
            return None

        info = payload.get("info")
        totals = info.get("total_token_usage") if isinstance(info, dict) else None
        if not isinstance(totals, dict):
            return None

        raw_timestamp = entry.get("timestamp")
        if raw_timestamp in (None, ""):
            return None
        timestamp = parse_timestamp(raw_timestamp)
        if timestamp is None:
            raise ParseCorruption(f"unparseable timestamp {raw_timestamp!r}", path=ctx.path)

        current = {name: coerce_count(totals.get(name), name) for name in _COUNTERS}
        previous = ctx.state.get("cumulative") or {}
        baseline = {name: int(previous.get(name, 0) or 0) for name in _COUNTERS}
        ctx.state["cumulative"] = current

        # Compaction or a restarted session moves totals backwards: rebase, emit nothing.
        if any(current[name] < baseline[name] for name in _COUNTERS):
            return None

        delta_input = current["input_tokens"] - baseline["input_tokens"]
        delta_cached = current["cached_input_tokens"] - baseline["cached_input_tokens"]
        delta_output = current["output_tokens"] - baseline["output_tokens"]
        if delta_input == 0 and delta_cached == 0 and delta_output == 0:
            return None

        return UsageEvent(
            timestamp=timestamp,
            session_id=ctx.session_id,
            provider=PROVIDER,
            tokens_in=max(0, delta_input - delta_cached),
            tokens_out=max(0, delta_output),
            cache_read_tokens=max(0, delta_cached),
            model=str(ctx.state.get("model") or ""),
        )


parser = CodexParser()
