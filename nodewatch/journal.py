"""
Append-only supervisor journal.

One plain-text line per event:

    [2024-05-01T12:00:00.000Z] WATCHDOG: Child started with PID: 4242

The file is only ever appended to, so restart and crash history survives
supervisor restarts. Every line is mirrored to the structured console log.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_PREFIX = "WATCHDOG"


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision and a trailing Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SupervisorJournal:
    """Durable, append-only event log for the supervisor."""

    def __init__(
        self,
        log_path: str = "watchdog.log",
        prefix: str = DEFAULT_PREFIX,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Args:
            log_path: File to append to (parent dirs are created)
            prefix: Source tag written after the timestamp
            now: Wall clock, injectable for tests
        """
        self.log_path = Path(log_path)
        self.prefix = prefix
        self._now = now

        if self.log_path.parent != Path("."):
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def format_line(self, message: str) -> str:
        return f"[{iso_timestamp(self._now())}] {self.prefix}: {message}\n"

    def write(self, message: str, level: str = "info", **context) -> str:
        """
        Append `message` to the journal and echo it to the console log.

        Returns the line written (including the newline).
        """
        line = self.format_line(message)

        try:
            with open(self.log_path, "a") as f:
                f.write(line)
        except OSError as e:
            logger.error("journal_write_error", path=str(self.log_path), error=str(e))

        log_method = getattr(logger, level, logger.info)
        log_method("watchdog", message=message, **context)
        return line

    def read_lines(self) -> list[str]:
        """Return every line in the journal (for diagnostics and tests)."""
        if not self.log_path.exists():
            return []
        with open(self.log_path) as f:
            return [line.rstrip("\n") for line in f]
