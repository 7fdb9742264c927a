"""Progress reporting for data center migration."""

from dc_migration.reporting.progress import (
    ConsoleProgressSink,
    ProgressCallback,
    ProgressEvent,
    ProgressReporter,
)

__all__ = [
    "ProgressEvent",
    "ProgressReporter",
    "ProgressCallback",
    "ConsoleProgressSink",
]
