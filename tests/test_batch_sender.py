"""
Tests for the throttled batch sender.

Debounce, batch interval and backoff are zeroed (or the sleep is a spy)
so nothing here waits on the wall clock except the worker-thread test.
"""
import threading
from unittest.mock import MagicMock, patch

import pytest

from core.events import EVENT_COMPLETION_PERSISTED, EVENT_COMPLETION_PERSIST_FAILED, EventEmitter
from core.exceptions import PersistenceError
from services.batch_sender import ThrottledBatchSender


class SleepSpy:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def sleep():
    return SleepSpy()


def _sender(persist, events, sleep, **overrides):
    options = {
        "batch_size": 5,
        "debounce_s": 0,
        "batch_interval_s": 0,
        "max_attempts": 3,
        "backoff_base_s": 1.0,
        "queue_max": 500,
    }
    options.update(overrides)
    return ThrottledBatchSender(persist, events, sleep=sleep, **options)


class TestBatching:

    def test_drain_sends_in_batches_of_five(self, events, sleep):
        sent = []
        sender = _sender(sent.append, events, sleep)
        for i in range(12):
            assert sender.enqueue(i) is True

        with patch.object(sender, "_send_batch", wraps=sender._send_batch) as spy:
            assert sender.drain() == 12

        assert [len(call.args[0]) for call in spy.call_args_list] == [5, 5, 2]
        assert sent == list(range(12))
        assert sender.stats["sent"] == 12
        assert sender.pending == 0

    def test_persisted_event_per_item(self, events, sleep):
        delivered = []
        events.subscribe(EVENT_COMPLETION_PERSISTED, lambda event: delivered.append(event))
        sender = _sender(lambda e: None, events, sleep)
        sender.enqueue("a")
        sender.enqueue("b")

        sender.drain()

        assert delivered == ["a", "b"]

    def test_worker_thread_sends(self, events, sleep):
        done = threading.Event()
        sent = []

        def persist(event):
            sent.append(event)
            if len(sent) == 3:
                done.set()

        sender = _sender(persist, events, sleep)
        sender.start()
        try:
            assert sender.running is True
            for i in range(3):
                sender.enqueue(i)
            assert done.wait(5.0)
        finally:
            sender.stop()

        assert sent == [0, 1, 2]
        assert sender.running is False


class TestRetry:

    def test_retry_then_success(self, events, sleep):
        persist = MagicMock(side_effect=[RuntimeError("503"), RuntimeError("503"), None])
        sender = _sender(persist, events, sleep)
        sender.enqueue("evt")

        sender.drain()

        assert persist.call_count == 3
        assert sleep.calls == [1.0, 2.0]
        stats = sender.stats
        assert stats["sent"] == 1
        assert stats["retries"] == 2
        assert stats["failed"] == 0

    def test_permanent_failure_is_announced(self, events, sleep):
        failures = []
        events.subscribe(EVENT_COMPLETION_PERSIST_FAILED, lambda **payload: failures.append(payload))
        persist = MagicMock(side_effect=RuntimeError("record store down"))
        sender = _sender(persist, events, sleep)
        sender.enqueue("evt")

        sender.drain()

        assert persist.call_count == 3
        assert sender.stats["failed"] == 1
        assert len(failures) == 1
        payload = failures[0]
        assert payload["event"] == "evt"
        assert payload["error"] == "record store down"
        assert payload["attempts"] == 3
        assert isinstance(payload["exception"], PersistenceError)
        assert isinstance(payload["exception"].__cause__, RuntimeError)

    def test_non_retryable_rejection_stops_immediately(self, events, sleep):
        failures = []
        events.subscribe(EVENT_COMPLETION_PERSIST_FAILED, lambda **payload: failures.append(payload))
        persist = MagicMock(side_effect=PersistenceError("unknown customer", retryable=False))
        sender = _sender(persist, events, sleep)
        sender.enqueue("evt")

        sender.drain()

        assert persist.call_count == 1
        assert sleep.calls == []
        assert sender.stats["retries"] == 0
        assert failures[0]["attempts"] == 1
        assert failures[0]["exception"].retryable is False

    def test_retryable_persistence_error_is_retried(self, events, sleep):
        persist = MagicMock(side_effect=[PersistenceError("503 from record store"), None])
        sender = _sender(persist, events, sleep)
        sender.enqueue("evt")

        sender.drain()

        assert persist.call_count == 2
        assert sender.stats["sent"] == 1

    def test_failure_does_not_block_later_events(self, events, sleep):
        sent = []

        def persist(event):
            if event == "bad":
                raise ValueError("rejected")
            sent.append(event)

        sender = _sender(persist, events, sleep)
        for event in ("bad", "good"):
            sender.enqueue(event)

        sender.drain()

        assert sent == ["good"]
        assert sender.stats["failed"] == 1

    def test_zero_backoff_skips_sleep(self, events, sleep):
        persist = MagicMock(side_effect=[RuntimeError("503"), None])
        sender = _sender(persist, events, sleep, backoff_base_s=0)
        sender.enqueue("evt")

        sender.drain()

        assert sleep.calls == []
        assert sender.stats["sent"] == 1


class TestQueueLimits:

    def test_queue_full_drops(self, events, sleep):
        sender = _sender(lambda e: None, events, sleep, queue_max=2)
        assert sender.enqueue(1) is True
        assert sender.enqueue(2) is True
        assert sender.enqueue(3) is False
        assert sender.stats["dropped"] == 1
        assert sender.pending == 2

    def test_enqueue_after_stop_rejected(self, events, sleep):
        sender = _sender(lambda e: None, events, sleep)
        sender.stop()
        assert sender.enqueue("late") is False
        assert sender.stats["dropped"] == 1


class TestLifecycle:

    def test_stop_drains_and_is_idempotent(self, events, sleep):
        sent = []
        sender = _sender(sent.append, events, sleep)
        for i in range(3):
            sender.enqueue(i)

        sender.stop()
        sender.stop()

        assert sent == [0, 1, 2]
        assert sender.stats["sent"] == 3

    def test_stop_without_drain_keeps_pending(self, events, sleep):
        sent = []
        sender = _sender(sent.append, events, sleep)
        sender.enqueue("x")

        sender.stop(drain=False)

        assert sent == []
        assert sender.pending == 1

    def test_start_is_idempotent(self, events, sleep):
        sender = _sender(lambda e: None, events, sleep)
        sender.start()
        try:
            first = sender._thread
            sender.start()
            assert sender._thread is first
        finally:
            sender.stop()

    def test_start_after_stop_is_noop(self, events, sleep):
        sender = _sender(lambda e: None, events, sleep)
        sender.stop()
        sender.start()
        assert sender.running is False

    def test_settings_defaults(self, events):
        sender = ThrottledBatchSender(lambda e: None, events)
        assert sender.batch_size == 5
        assert sender.debounce_s == 1.0
        assert sender.batch_interval_s == 2.0
        assert sender.max_attempts == 3
        assert sender.queue_max == 500
