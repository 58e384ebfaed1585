"""
Tests for notification sinks and run counters.
"""

import logging
import threading
from datetime import datetime, timedelta

import pytest

from mediarelay.notify.sinks import LoggingNotificationSink, NullNotificationSink, safe_notify
from mediarelay.pipeline.summary import RunCounters, RunPhase, RunSummary

from conftest import FailingNotifier, RecordingNotifier


class TestNotifications:

    def test_safe_notify_delivers(self):
        sink = RecordingNotifier()

        safe_notify(sink, "subject", "body")

        assert sink.messages == [("subject", "body")]

    def test_safe_notify_swallows_sink_failure(self, caplog):
        with caplog.at_level(logging.WARNING):
            safe_notify(FailingNotifier(), "run finished", "body")

        assert "could not be delivered" in caplog.text

    def test_null_sink_discards(self):
        safe_notify(NullNotificationSink(), "subject", "body")

    def test_logging_sink_writes_to_its_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="mediarelay.notifications"):
            LoggingNotificationSink().notify("run finished", "1 processed")

        assert "run finished" in caplog.text


class TestRunCounters:

    def test_concurrent_increments_are_not_lost(self):
        counters = RunCounters()

        def bump():
            for _ in range(1000):
                counters.increment("processed")

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counters.get("processed") == 8000

    def test_unknown_counter_rejected(self):
        with pytest.raises(KeyError):
            RunCounters().increment("exploded")

    def test_phase_selection(self):
        assert RunPhase.ALL.discovers and RunPhase.ALL.processes
        assert RunPhase.DISCOVER.discovers and not RunPhase.DISCOVER.processes
        assert RunPhase.PROCESS.processes and not RunPhase.PROCESS.discovers


class TestRunSummary:

    def test_summary_from_counters(self):
        counters = RunCounters()
        counters.increment("processed", 3)
        counters.increment("failed")
        started = datetime.now() - timedelta(seconds=30)

        summary = RunSummary.from_counters(counters, RunPhase.ALL, False, started)

        assert summary.processed == 3
        assert summary.failed == 1
        assert not summary.aborted
        assert summary.duration_seconds() >= 30
        assert "3 processed, 1 failed" in summary.summary()

    def test_aborted_summary(self):
        summary = RunSummary.from_counters(
            RunCounters(), RunPhase.PROCESS, True, datetime.now(), abort_reason="Insufficient free space"
        )

        assert summary.aborted
        assert summary.summary() == "DRY RUN ABORTED (process): Insufficient free space"
