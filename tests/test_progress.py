"""Tests for progress reporting."""

from datetime import datetime

from dc_migration.reporting.progress import ProgressEvent, ProgressReporter


def fixed_clock() -> datetime:
    return datetime(2026, 1, 2, 9, 30, 5)


class TestProgressReporter:
    """Test ProgressReporter."""

    def test_events_delivered_in_order(self):
        """Test subscribers receive every event in emission order."""
        received: list[ProgressEvent] = []
        reporter = ProgressReporter(clock=fixed_clock)
        reporter.subscribe(received.append)

        reporter.report("first")
        reporter.report("second")

        assert [event.message for event in received] == ["first", "second"]
        assert reporter.events == received

    def test_event_format(self):
        """Test events render as [HH:MM:SS] message."""
        event = ProgressReporter(clock=fixed_clock).report("Export started")

        assert event.format() == "[09:30:05] Export started"

    def test_quiet_mode(self):
        """Test quiet mode delivers nothing but still counts stages."""
        received: list[ProgressEvent] = []
        reporter = ProgressReporter(quiet=True)
        reporter.subscribe(received.append)

        assert reporter.report("hidden") is None
        reporter.stage_completed(1, 4)

        assert received == []
        assert reporter.events == []
        assert reporter.get_stats()["stages_completed"] == 1

    def test_stage_message(self):
        """Test stage completion is reported as a fraction."""
        reporter = ProgressReporter(clock=fixed_clock)

        reporter.stage_completed(2, 6)

        assert reporter.events[-1].message == "Completed 2/6 stages"

    def test_record(self):
        """Test resource statistics accumulate."""
        reporter = ProgressReporter()

        reporter.record(created=2)
        reporter.record(skipped=1, deleted=3)

        stats = reporter.get_stats()
        assert (stats["resources_created"], stats["resources_skipped"], stats["resources_deleted"]) == (
            2,
            1,
            3,
        )
