"""Error taxonomy for the ingestion pipeline."""
from __future__ import annotations


class UsageEngineError(Exception):
    """Base class for tokenroll errors."""


class LogIoError(UsageEngineError):
    """A log file could not be read (vanished, permissions, I/O failure).

    The file is skipped for the cycle and retried next cycle.
    """

    def __init__(self, path: str, message: str = ""):
        self.path = path
        super().__init__(f"{path}: {message}" if message else path)


class ParseCorruption(UsageEngineError):
    """A line (or a whole file) failed normalization."""

    def __init__(self, message: str, *, path: str = "", line_offset: int | None = None):
        self.path = path
        self.line_offset = line_offset
        super().__init__(message)


class CommitFailure(UsageEngineError):
    """The bucket + offset transaction did not apply.

    Nothing was written; the byte range will be re-read next cycle.
    """

    def __init__(self, path: str, message: str = "", *, stale: bool = False):
        self.path = path
        self.stale = stale
        super().__init__(f"{path}: {message}" if message else path)


class ScanCycleError(UsageEngineError):
    """A scan cycle failed as a whole (discovery or state listing)."""

    def __init__(self, cycle_id: str, message: str = ""):
        self.cycle_id = cycle_id
        super().__init__(f"Scan cycle {cycle_id} failed: {message}" if message else f"Scan cycle {cycle_id} failed")
