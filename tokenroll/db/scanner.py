"""Incremental log scanner.

For each tracked file: read the bytes appended since the stored offset, parse
complete lines, fold them into bucket deltas and commit deltas plus the new
offset in one transaction. A trailing line without `\\n` is left for the next
pass, so the offset always points just past a newline.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from tokenroll import config
from tokenroll.bucketizer import fold
from tokenroll.config import ProviderRoot
from tokenroll.date_utils import utc_now_iso
from tokenroll.db.writer import UsageWriter
from tokenroll.errors import LogIoError, ParseCorruption
from tokenroll.models import BucketDelta, BucketKey, LogFileState, SessionIdentity, UsageEvent
from tokenroll.observability import record_malformed_lines, record_tokens
from tokenroll.parsers.platforms.registry import get_parser
from tokenroll.pricing import estimate_cost

logger = logging.getLogger("tokenroll.scan")


@dataclass
class ScanOutcome:
    state: LogFileState
    new_state: LogFileState
    deltas: dict[BucketKey, BucketDelta] = field(default_factory=dict)
    events: list[UsageEvent] = field(default_factory=list)
    identities: list[SessionIdentity] = field(default_factory=list)
    projects: dict[str, str] = field(default_factory=dict)
    malformed_lines: int = 0
    bytes_consumed: int = 0
    rotated: bool = False

    @property
    def changed(self) -> bool:
        return self.rotated or self.new_state.byte_offset != self.state.byte_offset


def discover_log_files(roots: Iterable[ProviderRoot], now: float | None = None) -> list[tuple[str, str]]:
    """Walk provider roots and return `(path, provider)` pairs, sorted by path.

    Hidden directories are skipped. Roots with `lookback_days` ignore files not
    modified within that window. A path claimed by an earlier root is not
    reported again.
    """
    current = time.time() if now is None else now
    found: dict[str, str] = {}
    for root in roots:
        base = Path(root.path).expanduser()
        if not base.is_dir():
            logger.debug("Provider root %s (%s) does not exist", base, root.provider)
            continue
        cutoff = current - root.lookback_days * 86400 if root.lookback_days > 0 else None
        for path in base.rglob(root.glob):
            relative = path.relative_to(base)
            if len(relative.parts) > root.max_depth:
                continue
            if any(part.startswith(".") for part in relative.parts[:-1]):
                continue
            try:
                stat = path.stat()
            except OSError:
                continue
            if not path.is_file():
                continue
            if cutoff is not None and stat.st_mtime < cutoff:
                continue
            found.setdefault(str(path), root.provider)
    return sorted(found.items())


class LogScanner:
    """Reads, parses and commits one log file at a time."""

    def __init__(
        self,
        writer: UsageWriter,
        *,
        read_budget_seconds: float | None = None,
        max_read_bytes: int | None = None,
        max_pending_line_bytes: int | None = None,
    ):
        self.writer = writer
        self.read_budget_seconds = (
            config.FILE_READ_BUDGET_SECONDS if read_budget_seconds is None else read_budget_seconds
        )
        self.max_read_bytes = config.MAX_READ_BYTES if max_read_bytes is None else max_read_bytes
        self.max_pending_line_bytes = (
            config.MAX_PENDING_LINE_BYTES if max_pending_line_bytes is None else max_pending_line_bytes
        )

    def scan_file(self, state: LogFileState) -> ScanOutcome:
        """Read and parse new complete lines. Blocking; run in a worker thread.

        Raises LogIoError when the file cannot be read, ParseCorruption when the
        provider is unknown or a single line outgrows the pending-line limit.
        """
        parser = get_parser(state.provider)
        if parser is None:
            raise ParseCorruption(f"no parser registered for provider {state.provider!r}", path=state.path)

        path = Path(state.path)
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise LogIoError(state.path, exc.strerror or str(exc)) from exc

        offset = state.byte_offset
        parser_state = state.parser_state
        rotated = False
        if size < offset:
            logger.info("Log %s shrank (%s < %s), rescanning from start", state.path, size, offset)
            offset = 0
            parser_state = {}
            rotated = True

        if size == offset:
            return ScanOutcome(
                state=state,
                new_state=state.advanced(byte_offset=offset, file_size=size, parser_state=parser_state),
                rotated=rotated,
            )

        try:
            with path.open("rb") as handle:
                handle.seek(offset)
                chunk = handle.read(min(size - offset, self.max_read_bytes))
        except OSError as exc:
            raise LogIoError(state.path, exc.strerror or str(exc)) from exc

        last_newline = chunk.rfind(b"\n")
        if last_newline < 0:
            if len(chunk) >= self.max_pending_line_bytes or len(chunk) >= self.max_read_bytes:
                raise ParseCorruption(
                    f"line starting at byte {offset} exceeds {len(chunk)} bytes without a newline",
                    path=state.path,
                    line_offset=offset,
                )
            return ScanOutcome(
                state=state,
                new_state=state.advanced(byte_offset=offset, file_size=size, parser_state=parser_state),
                rotated=rotated,
            )

        ctx = parser.new_context(state.path, parser_state)
        events: list[UsageEvent] = []
        malformed = 0
        line_offset = offset
        for raw_line in chunk[: last_newline + 1].split(b"\n")[:-1]:
            current_offset = line_offset
            line_offset += len(raw_line) + 1
            if raw_line.endswith(b"\r"):
                raw_line = raw_line[:-1]
            if not raw_line.strip():
                continue
            try:
                line = raw_line.decode("utf-8")
            except UnicodeDecodeError:
                malformed += 1
                logger.debug("Undecodable line at %s:%s", state.path, current_offset)
                continue
            try:
                event = parser.parse_line(line, ctx)
            except ParseCorruption as exc:
                malformed += 1
                logger.debug("Malformed line at %s:%s: %s", state.path, current_offset, exc)
                continue
            if event is not None:
                events.append(event)

        consumed = last_newline + 1
        new_state = state.advanced(
            byte_offset=offset + consumed,
            file_size=size,
            last_scanned_at=utc_now_iso(),
            parser_state=ctx.state,
        )
        return ScanOutcome(
            state=state,
            new_state=new_state,
            deltas=fold(events),
            events=events,
            identities=ctx.identities,
            projects=ctx.projects,
            malformed_lines=malformed,
            bytes_consumed=consumed,
            rotated=rotated,
        )

    async def scan_and_commit(self, state: LogFileState) -> ScanOutcome:
        """Scan one file and commit its deltas with the advanced offset.

        Raises asyncio.TimeoutError when reading exceeds the per-file budget;
        the offset is left untouched in that case.
        """
        outcome = await asyncio.wait_for(
            asyncio.to_thread(self.scan_file, state),
            timeout=self.read_budget_seconds,
        )
        if outcome.malformed_lines:
            logger.warning("Skipped %s malformed lines in %s", outcome.malformed_lines, state.path)
            record_malformed_lines(state.provider, outcome.malformed_lines)
        if not outcome.changed:
            return outcome

        await self.writer.commit_scan(
            state.generation,
            outcome.new_state,
            outcome.deltas,
            outcome.identities,
            outcome.projects,
        )
        self._record_committed_tokens(outcome.events)
        logger.debug(
            "Committed %s: %s events in %s buckets, offset %s -> %s",
            state.path,
            len(outcome.events),
            len(outcome.deltas),
            state.byte_offset,
            outcome.new_state.byte_offset,
        )
        return outcome

    @staticmethod
    def _record_committed_tokens(events: list[UsageEvent]) -> None:
        totals: dict[tuple[str, str], list[float]] = {}
        for event in events:
            entry = totals.setdefault((event.provider, event.model), [0, 0, 0.0])
            entry[0] += event.tokens_in + event.cache_creation_tokens + event.cache_read_tokens
            entry[1] += event.tokens_out
            entry[2] += estimate_cost(
                event.provider,
                event.model,
                tokens_in=event.tokens_in,
                tokens_out=event.tokens_out,
                cache_creation_tokens=event.cache_creation_tokens,
                cache_read_tokens=event.cache_read_tokens,
            )
        for (provider, model), (token_in, token_out, cost) in totals.items():
            record_tokens(provider, model, int(token_in), int(token_out), cost)
