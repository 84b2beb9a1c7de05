"""
Unit tests for status events, the status channel and the status reporter
"""

import logging
import queue
import threading

import pytest

from src.verification.events import (
    Fatal,
    RowCopyCompleted,
    StatusChannel,
    StatusKind,
    Verified,
)
from src.verification.reporter import ErrorRecord, StatusReporter

TABLE = "gftest.test_table_1"


class TestStatusEvents:
    def test_kinds(self):
        assert RowCopyCompleted().kind is StatusKind.ROW_COPY_COMPLETED
        assert Verified().kind is StatusKind.VERIFIED
        assert Fatal("boom").kind is StatusKind.FATAL

    def test_verified_passed(self):
        assert Verified(()).passed
        assert not Verified((TABLE,)).passed

    def test_equality_ignores_timestamp(self):
        assert Verified((TABLE,)) == Verified((TABLE,))


class TestStatusChannel:
    """Test StatusChannel fan-out"""

    def test_every_subscriber_gets_every_event_in_order(self):
        channel = StatusChannel()
        first = channel.subscribe()
        second = channel.subscribe()
        events = [RowCopyCompleted((TABLE,)), Verified(())]

        delivered = [channel.publish(event) for event in events]

        assert delivered == [2, 2]
        assert first.drain() == events
        assert second.drain() == events

    def test_subscription_filters_by_kind(self):
        channel = StatusChannel()
        fatal_only = channel.subscribe(StatusKind.FATAL)

        channel.publish(Verified(()))
        channel.publish(Fatal("boom"))

        assert fatal_only.drain() == [Fatal("boom")]

    def test_get_times_out(self):
        subscription = StatusChannel().subscribe()

        with pytest.raises(queue.Empty):
            subscription.get(timeout=0.01)

    def test_get_blocks_until_published(self):
        channel = StatusChannel()
        subscription = channel.subscribe()
        publisher = threading.Timer(0.05, channel.publish, args=(Verified(()),))

        publisher.start()
        event = subscription.get(timeout=5)
        publisher.join()

        assert event == Verified(())

    def test_unsubscribed_receives_nothing_more(self):
        channel = StatusChannel()
        subscription = channel.subscribe()

        subscription.close()

        assert channel.publish(Verified(())) == 0
        assert subscription.closed
        assert subscription.get(timeout=0.01) is None

    def test_close_ends_iteration(self):
        channel = StatusChannel()
        subscription = channel.subscribe()
        channel.publish(RowCopyCompleted())
        channel.close()

        assert list(subscription) == [RowCopyCompleted()]

    def test_publish_after_close(self):
        channel = StatusChannel()
        channel.close()

        with pytest.raises(RuntimeError, match="closed"):
            channel.publish(Verified(()))

    def test_subscribe_after_close_is_already_finished(self):
        channel = StatusChannel()
        channel.close()

        assert channel.subscribe().get(timeout=0.01) is None


class TestErrorRecord:
    def test_to_dict_formats_keys(self):
        record = ErrorRecord("boom", {"gftest.b": [("a", 1)], "gftest.a": [3, 4]})

        data = record.to_dict()

        assert data["ErrMessage"] == "boom"
        assert list(data["mismatches"]) == ["gftest.a", "gftest.b"]
        assert data["mismatches"]["gftest.b"] == ["a/1"]
        assert data["mismatches"]["gftest.a"] == ["3", "4"]


class TestStatusReporter:
    """Test StatusReporter.emit"""

    @pytest.fixture
    def reporter(self, metrics):
        return StatusReporter(StatusChannel(), metrics)

    def test_fatal_is_recorded_logged_and_published(self, reporter, caplog):
        subscription = reporter.channel.subscribe()
        event = Fatal("row fingerprints for pks [42] on gftest.test_table_1 do not match", {TABLE: (42,)})

        with caplog.at_level(logging.ERROR):
            reporter.emit(event)

        assert reporter.last_error.message == event.message
        assert reporter.last_error.mismatches == {TABLE: [42]}
        assert event.message in caplog.text
        assert caplog.records[-1].status == "FATAL"
        assert subscription.drain() == [event]

    def test_passing_verified_logs_info(self, reporter, caplog):
        with caplog.at_level(logging.INFO):
            reporter.emit(Verified(()))

        assert "Cutover verification passed" in caplog.text
        assert reporter.last_error is None

    def test_failing_verified_logs_error(self, reporter, caplog):
        with caplog.at_level(logging.INFO):
            reporter.emit(Verified((TABLE,)))

        assert caplog.records[-1].levelno == logging.ERROR
        assert TABLE in caplog.records[-1].getMessage()

    def test_events_are_counted(self, reporter, metrics):
        reporter.emit(RowCopyCompleted((TABLE,)))
        reporter.emit(Verified(()))
        reporter.emit(Verified(()))

        assert metrics.registry.get_sample_value(
            "verification_status_events_total", {"kind": "VERIFIED"}
        ) == 2
        assert metrics.registry.get_sample_value(
            "verification_status_events_total", {"kind": "ROW_COPY_COMPLETED"}
        ) == 1

    def test_unknown_event(self, reporter):
        with pytest.raises(TypeError, match="Unknown status event"):
            reporter.emit("VERIFIED")
