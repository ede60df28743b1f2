"""
Tests for the completion tracker: score updates, milestone signals,
ledgers, invalidation, and the hand-off to the batch sender.
"""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from core.events import EVENT_COMPETENCY_UPDATED, EVENT_MILESTONE_ACHIEVED
from core.exceptions import MissingCustomerError
from services.cache_store import CacheKeys
from services.completion_tracker import (
    CompletionEvent,
    CompletionLedger,
    CompletionTracker,
    TaskIntelligence,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(**overrides):
    data = {
        "task_id": "t1",
        "customer_id": "c1",
        "competency_area": "customer_analysis",
        "priority": "high",
        "milestone": "foundation",
        "timestamp": NOW,
    }
    data.update(overrides)
    return CompletionEvent(**data)


@pytest.fixture
def sender():
    mock = MagicMock()
    mock.enqueue.return_value = True
    return mock


@pytest.fixture
def tracker(store, sender):
    return CompletionTracker(store, sender=sender, clock=lambda: NOW)


class TestScoreUpdates:

    def test_boost_by_priority(self, tracker):
        result = tracker.record_completion(_event(priority="medium"))
        assert result.scores["customer_analysis"] == 53
        assert result.score_change == 3

    def test_score_capped_at_100(self, tracker):
        tracker.set_scores("c1", {"customer_analysis": 95})
        result = tracker.record_completion(_event(priority="critical"))
        assert result.scores["customer_analysis"] == 100
        assert result.score_change == 5

    def test_unknown_priority_counts_as_low(self, tracker):
        result = tracker.record_completion(_event(priority="whenever"))
        assert result.score_change == 1

    def test_general_area_changes_nothing(self, tracker):
        result = tracker.record_completion(_event(competency_area="general"))
        assert result.score_change == 0
        assert tracker.competency_scores("c1") == {
            "customer_analysis": 50, "value_communication": 50, "executive_readiness": 50,
        }
        assert tracker.ledger("c1").total_completions == 1

    def test_scores_seeded_from_cached_copy(self, store, sender):
        store.set(CacheKeys.competency_scores("c1"), {"customer_analysis": 60})
        tracker = CompletionTracker(store, sender=sender)
        result = tracker.record_completion(_event(priority="low"))
        assert result.scores["customer_analysis"] == 61

    def test_concurrent_completions_lose_nothing(self, tracker):
        tracker.set_scores("c1", {"value_communication": 0})

        def worker():
            for _ in range(10):
                tracker.record_completion(_event(competency_area="value_communication", priority="low"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert tracker.competency_scores("c1")["value_communication"] == 40
        assert tracker.ledger("c1").total_completions == 40


class TestMissingCustomer:

    @pytest.mark.parametrize("customer_id", [None, "", "   "])
    def test_raises_before_any_state_change(self, tracker, sender, store, customer_id):
        store.set("tasks_c1_foundation", [])
        with pytest.raises(MissingCustomerError) as exc:
            tracker.record_completion(_event(customer_id=customer_id))

        assert exc.value.task_id == "t1"
        assert isinstance(exc.value, ValueError)
        sender.enqueue.assert_not_called()
        assert len(store) == 1


class TestMilestoneSignals:

    def test_two_domains_one_signal(self, tracker):
        received = []
        tracker.subscribe(EVENT_MILESTONE_ACHIEVED, lambda **payload: received.append(payload))
        tracker.set_scores("c1", {"customer_analysis": 75, "value_communication": 62, "executive_readiness": 10})

        result = tracker.record_completion(_event(competency_area="value_communication", priority="high"))

        assert len(received) == 1
        assert received[0]["customer_id"] == "c1"
        assert received[0]["tier"] == "foundation"
        assert received[0]["achieved"] == ["customer_analysis", "value_communication"]
        assert received[0]["newly_achieved"] == ["customer_analysis", "value_communication"]
        assert result.newly_achieved == ("customer_analysis", "value_communication")

    def test_fires_once_per_domain(self, tracker):
        received = []
        tracker.subscribe(EVENT_MILESTONE_ACHIEVED, lambda **payload: received.append(payload))
        tracker.set_scores("c1", {"customer_analysis": 68})

        tracker.record_completion(_event(priority="medium"))   # 71: reached
        tracker.record_completion(_event(priority="medium"))   # 74: already announced

        assert len(received) == 1

    def test_new_domain_lists_all_achieved(self, tracker):
        received = []
        tracker.subscribe(EVENT_MILESTONE_ACHIEVED, lambda **payload: received.append(payload))
        tracker.set_scores("c1", {"customer_analysis": 68, "executive_readiness": 48})

        tracker.record_completion(_event(priority="medium"))
        tracker.record_completion(_event(competency_area="executive_readiness", priority="medium"))

        assert received[1]["achieved"] == ["customer_analysis", "executive_readiness"]
        assert received[1]["newly_achieved"] == ["executive_readiness"]

    def test_reset_allows_refire(self, tracker):
        received = []
        tracker.subscribe(EVENT_MILESTONE_ACHIEVED, lambda **payload: received.append(payload))
        tracker.set_scores("c1", {"customer_analysis": 80})

        tracker.record_completion(_event())
        tracker.reset_achievements("c1", ["customer_analysis"])
        tracker.record_completion(_event())

        assert len(received) == 2

    def test_handler_errors_do_not_break_recording(self, tracker, sender):
        def broken(**payload):
            raise RuntimeError("listener bug")

        tracker.subscribe(EVENT_MILESTONE_ACHIEVED, broken)
        tracker.set_scores("c1", {"customer_analysis": 80})

        result = tracker.record_completion(_event())

        assert result.queued is True
        sender.enqueue.assert_called_once()

    def test_competency_updated_emitted(self, tracker):
        received = []
        tracker.subscribe(EVENT_COMPETENCY_UPDATED, lambda **payload: received.append(payload))
        tracker.record_completion(_event(priority="critical"))
        assert received[-1]["domain"] == "customer_analysis"
        assert received[-1]["score"] == 58


class TestSideEffects:

    def test_enqueues_event(self, tracker, sender):
        event = _event()
        assert tracker.record_completion(event).queued is True
        sender.enqueue.assert_called_once_with(event)

    def test_sender_failure_keeps_local_state(self, store):
        broken_sender = MagicMock()
        broken_sender.enqueue.side_effect = RuntimeError("queue exploded")
        tracker = CompletionTracker(store, sender=broken_sender)

        result = tracker.record_completion(_event())

        assert result.queued is False
        assert tracker.competency_scores("c1")["customer_analysis"] == 55

    def test_invalidates_and_reseeds_competency(self, tracker, store):
        store.set(CacheKeys.customer_tasks("c1", "foundation"), [])
        store.set(CacheKeys.competency_scores("c1"), {"customer_analysis": 50})
        store.set(CacheKeys.customer_tasks("c2", "foundation"), [])

        result = tracker.record_completion(_event())

        assert result.invalidated == 2
        assert store.get(CacheKeys.customer_tasks("c1", "foundation")) is None
        assert store.get(CacheKeys.competency_scores("c1"))["customer_analysis"] == 55
        assert store.get(CacheKeys.customer_tasks("c2", "foundation")) == []

    def test_ledger_mirrored_and_recovered(self, mirrored_store, mirror):
        tracker = CompletionTracker(mirrored_store)
        tracker.record_completion(_event(tool_used="icp"))
        tracker.record_completion(_event(priority="critical"))

        stored = mirror.load_ledger("c1")
        assert stored["total_completions"] == 2
        assert stored["tool_counts"] == {"icp": 1}

        restarted = CompletionTracker(mirrored_store)
        ledger = restarted.ledger("c1")
        assert ledger.total_completions == 2
        assert ledger.priority_counts == {"high": 1, "critical": 1}
        assert ledger.first_completion_at == NOW


class TestIntelligence:

    def test_velocity(self):
        ledger = CompletionLedger(total_completions=2, first_completion_at=NOW - timedelta(days=4))
        assert CompletionTracker.velocity(ledger, NOW) == 0.5

    def test_velocity_needs_two_completions(self):
        ledger = CompletionLedger(total_completions=1, first_completion_at=NOW - timedelta(days=4))
        assert CompletionTracker.velocity(ledger, NOW) == 0.0

    def test_velocity_capped_and_days_floored(self):
        ledger = CompletionLedger(total_completions=5, first_completion_at=NOW - timedelta(hours=2))
        assert CompletionTracker.velocity(ledger, NOW) == 1.0

    def test_task_intelligence_and_combined_score(self, tracker):
        tracker.record_completion(_event(priority="critical", tool_used="icp", timestamp=NOW - timedelta(days=2)))
        tracker.record_completion(_event(priority="low", timestamp=NOW - timedelta(days=1)))

        intel = tracker.task_intelligence("c1")

        assert intel.completion_rate == pytest.approx(0.2)
        assert intel.complexity_progression == pytest.approx(0.625)
        assert intel.implementation_follow == pytest.approx(0.5)
        assert intel.development_velocity == pytest.approx(1.0)
        assert intel.task_score == pytest.approx(58.125)
        assert CompletionTracker.combine_assessments(80, intel) == 71

    def test_no_completions(self, tracker):
        assert tracker.task_intelligence("nobody") == TaskIntelligence()
        assert CompletionTracker.combine_assessments(None, TaskIntelligence()) == 30

    def test_event_serialization(self):
        data = _event(tool_used="financial").to_dict()
        assert data["timestamp"] == NOW.isoformat()
        assert data["tool_used"] == "financial"


class TestTimestamps:

    def test_naive_then_aware_events(self, tracker):
        naive = NOW.replace(tzinfo=None) - timedelta(days=2)
        tracker.record_completion(_event(timestamp=naive, competency_area="general"))
        result = tracker.record_completion(_event(priority="medium", timestamp=NOW - timedelta(days=1)))

        assert result.scores["customer_analysis"] == 53
        ledger = tracker.ledger("c1")
        assert ledger.total_completions == 2
        assert ledger.domain_counts == {"general": 1, "customer_analysis": 1}
        assert ledger.first_completion_at == NOW - timedelta(days=2)
        assert ledger.first_completion_at.tzinfo is not None
        assert tracker.task_intelligence("c1").development_velocity == pytest.approx(1.0)

    def test_only_naive_events(self, tracker):
        for days in (4, 2):
            tracker.record_completion(_event(timestamp=NOW.replace(tzinfo=None) - timedelta(days=days)))

        intel = tracker.task_intelligence("c1")

        assert intel.development_velocity == pytest.approx(0.5)

    def test_event_timestamps_normalized(self):
        offset = timezone(timedelta(hours=2))
        assert _event(timestamp=NOW.astimezone(offset)).timestamp == NOW
        assert _event(timestamp=NOW.isoformat()).timestamp == NOW
        assert _event(timestamp=NOW.replace(tzinfo=None)).timestamp.tzinfo == timezone.utc

    def test_velocity_with_naive_ledger(self):
        ledger = CompletionLedger(total_completions=2, first_completion_at=NOW.replace(tzinfo=None) - timedelta(days=4))
        assert CompletionTracker.velocity(ledger, NOW) == 0.5
