"""Progress reporting for migration operations.

The core emits ordered, timestamped progress messages through a
ProgressReporter. Subscribers (the rich console sink in the CLI, or a list in
tests) receive every event unless the reporter runs in quiet mode.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from rich.console import Console

from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress message."""

    timestamp: datetime
    message: str

    def format(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] {self.message}"


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Publishes progress events to subscribers.

    Events are delivered in emission order. In quiet mode nothing is delivered
    or recorded, but the stage statistics are still kept for the final summary.
    """

    def __init__(self, quiet: bool = False, clock: Callable[[], datetime] | None = None):
        """Initialize progress reporter.

        Args:
            quiet: Suppress delivery of progress events (unattended runs)
            clock: Timestamp source (defaults to datetime.now)
        """
        self.quiet = quiet
        self._clock = clock or datetime.now
        self._subscribers: list[ProgressCallback] = []
        self._events: list[ProgressEvent] = []
        self._lock = threading.Lock()
        self.stats = {
            "stages_completed": 0,
            "resources_created": 0,
            "resources_skipped": 0,
            "resources_deleted": 0,
        }

    def subscribe(self, callback: ProgressCallback) -> None:
        """Register a callback receiving every emitted event."""
        self._subscribers.append(callback)

    @property
    def events(self) -> list[ProgressEvent]:
        """History of emitted events, oldest first."""
        with self._lock:
            return list(self._events)

    def report(self, message: str) -> ProgressEvent | None:
        """Emit a progress message.

        Args:
            message: Human readable progress message

        Returns:
            The emitted event, or None in quiet mode
        """
        logger.debug("progress_message", message=message)
        if self.quiet:
            return None

        event = ProgressEvent(timestamp=self._clock(), message=message)
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            callback(event)
        return event

    def stage_completed(self, completed: int, total: int) -> None:
        """Report that a numbered stage of an operation finished."""
        self.stats["stages_completed"] += 1
        self.report(f"Completed {completed}/{total} stages")

    def record(self, created: int = 0, skipped: int = 0, deleted: int = 0) -> None:
        """Update resource statistics."""
        with self._lock:
            self.stats["resources_created"] += created
            self.stats["resources_skipped"] += skipped
            self.stats["resources_deleted"] += deleted

    def get_stats(self) -> dict[str, int]:
        """Get current statistics.

        Returns:
            Dictionary with current statistics
        """
        with self._lock:
            return self.stats.copy()


class ConsoleProgressSink:
    """Prints progress events to a rich console as `[HH:MM:SS] message`."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def __call__(self, event: ProgressEvent) -> None:
        self.console.print(
            f"[dim]\\[{event.timestamp:%H:%M:%S}][/dim] {event.message}",
            highlight=False,
        )
