"""
Tests for delivery tracking.
"""

import threading

import pytest

from txsession.session.delivery import DeliveryTracker, RecordMetadata
from txsession.session.errors import DeliveryError


def _metadata(offset=0):
    return RecordMetadata(topic="orders", partition=0, offset=offset, timestamp=0)


class TestDeliveryTracker:
    """Test DeliveryTracker."""

    @pytest.fixture
    def tracker(self):
        """Create tracker."""
        tracker = DeliveryTracker(name="test")
        yield tracker
        tracker.abandon()

    def test_register_assigns_sequences(self, tracker):
        """Test records are numbered in submission order."""
        first = tracker.register("orders", 0, b"k", b"v1")
        second = tracker.register("orders", 0, b"k", b"v2")

        assert first.sequence == 0
        assert second.sequence == 1
        assert tracker.outstanding() == 2

    def test_complete_resolves_future(self, tracker):
        """Test completion with metadata."""
        record = tracker.register("orders", 0, None, b"v")

        assert tracker.complete(record, _metadata(5), None)
        assert record.future.result(timeout=1).offset == 5
        assert tracker.outstanding() == 0

    def test_complete_only_once(self, tracker):
        """Test a second completion is ignored."""
        record = tracker.register("orders", 0, None, b"v")

        assert tracker.complete(record, _metadata(), None)
        assert not tracker.complete(record, None, DeliveryError("late"))
        assert record.future.exception() is None

    def test_callback_receives_error(self, tracker):
        """Test callbacks see (None, error) on failure."""
        record = tracker.register("orders", 0, None, b"v")
        seen = []
        record.add_callback(lambda metadata, error: seen.append((metadata, error)))

        error = DeliveryError("too large")
        tracker.complete(record, None, error)

        assert seen == [(None, error)]

    def test_callback_exception_is_contained(self, tracker):
        """Test a raising callback does not break completion."""
        record = tracker.register("orders", 0, None, b"v")

        def bad_callback(metadata, error):
            raise ValueError("boom")

        record.add_callback(bad_callback)

        assert tracker.complete(record, _metadata(), None)
        assert tracker.wait_all(timeout=1)

    def test_fail_async_runs_off_caller_thread(self, tracker):
        """Test early failures complete on the tracker thread."""
        record = tracker.register("orders", 0, None, b"v")
        threads = []
        done = threading.Event()

        def callback(metadata, error):
            threads.append(threading.current_thread())
            done.set()

        record.add_callback(callback)
        tracker.fail_async(record, DeliveryError("rejected"))

        assert done.wait(timeout=1)
        assert threads[0] is not threading.current_thread()
        assert isinstance(record.future.exception(), DeliveryError)

    def test_wait_all_blocks_until_completion(self, tracker):
        """Test wait_all returns once a worker completes the record."""
        record = tracker.register("orders", 0, None, b"v")

        timer = threading.Timer(0.05, tracker.complete, args=(record, _metadata(), None))
        timer.start()

        assert tracker.wait_all(timeout=2)
        assert record.future.done()

    def test_wait_all_timeout(self, tracker):
        """Test wait_all reports a timeout."""
        tracker.register("orders", 0, None, b"v")

        assert not tracker.wait_all(timeout=0.05)

    def test_abandon_leaves_futures_pending(self, tracker):
        """Test abandoned records never complete."""
        record = tracker.register("orders", 0, None, b"v")
        seen = []
        record.add_callback(lambda metadata, error: seen.append(error))

        assert tracker.abandon() == 1
        assert not tracker.complete(record, _metadata(), None)
        assert not record.future.done()
        assert seen == []
        assert tracker.wait_all(timeout=0)

    def test_register_after_abandon(self, tracker):
        """Test registering on an abandoned tracker fails."""
        tracker.abandon()

        with pytest.raises(RuntimeError):
            tracker.register("orders", 0, None, b"v")
