"""
Completion Tracker

Folds task-completion events into a customer's local competency state:

1. Update the per-customer completion ledger (mirrored best-effort)
2. Apply a bounded, priority-based score increment to the task's domain
3. Fire `milestone.achieved` for domains that newly reach their tier target
4. Queue the event for the external record store (throttled, retried)
5. Invalidate the customer's cached derived data

Local state is authoritative; persistence failures never roll it back.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from core.config import Settings, settings as default_settings
from core.events import EVENT_COMPETENCY_UPDATED, EVENT_MILESTONE_ACHIEVED, EventEmitter
from core.exceptions import MissingCustomerError
from core.logging import log_fields
from services.batch_sender import ThrottledBatchSender
from services.cache_store import CacheKeys, CacheStore, CacheTTL
from services.competency import Priority, coerce_domain, normalize_scores
from services.durable_mirror import DurableMirror
from services.milestones import achieved_domains, coerce_tier

logger = logging.getLogger(__name__)

MAX_SCORE = 100

# Task intelligence
EXPECTED_TASKS_PER_MILESTONE = 10
COMPLEXITY_WEIGHTS = {
    Priority.CRITICAL.value: 4,
    Priority.HIGH.value: 3,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 1,
}
BASE_ASSESSMENT_WEIGHT = 0.6
TASK_ASSESSMENT_WEIGHT = 0.4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; aware ones are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return _as_utc(value)
    try:
        return _as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class CompletionEvent:
    """A user finished a task."""
    task_id: str
    customer_id: str
    competency_area: str = "general"
    priority: str = Priority.MEDIUM.value
    tool_used: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)
    session_id: Optional[str] = None
    task_name: Optional[str] = None
    milestone: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        self.timestamp = _parse_datetime(self.timestamp) or _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "customer_id": self.customer_id,
            "competency_area": self.competency_area,
            "priority": self.priority,
            "tool_used": self.tool_used,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "session_id": self.session_id,
            "task_name": self.task_name,
            "milestone": self.milestone,
            "notes": self.notes,
        }


@dataclass
class CompletionLedger:
    """Running completion counts for one customer."""
    total_completions: int = 0
    domain_counts: Dict[str, int] = field(default_factory=dict)
    priority_counts: Dict[str, int] = field(default_factory=dict)
    tool_counts: Dict[str, int] = field(default_factory=dict)
    first_completion_at: Optional[datetime] = None
    last_completion_at: Optional[datetime] = None

    def record(self, event: CompletionEvent) -> None:
        timestamp = _parse_datetime(event.timestamp) or _utcnow()
        self.first_completion_at = _as_utc(self.first_completion_at)
        self.last_completion_at = _as_utc(self.last_completion_at)
        self.total_completions += 1
        area = event.competency_area or "general"
        self.domain_counts[area] = self.domain_counts.get(area, 0) + 1
        priority = Priority.coerce(event.priority).value
        self.priority_counts[priority] = self.priority_counts.get(priority, 0) + 1
        if event.tool_used:
            self.tool_counts[event.tool_used] = self.tool_counts.get(event.tool_used, 0) + 1

        if self.first_completion_at is None or timestamp < self.first_completion_at:
            self.first_completion_at = timestamp
        if self.last_completion_at is None or timestamp > self.last_completion_at:
            self.last_completion_at = timestamp

    def copy(self) -> "CompletionLedger":
        return CompletionLedger(
            total_completions=self.total_completions,
            domain_counts=dict(self.domain_counts),
            priority_counts=dict(self.priority_counts),
            tool_counts=dict(self.tool_counts),
            first_completion_at=self.first_completion_at,
            last_completion_at=self.last_completion_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_completions": self.total_completions,
            "domain_counts": dict(self.domain_counts),
            "priority_counts": dict(self.priority_counts),
            "tool_counts": dict(self.tool_counts),
            "first_completion_at": self.first_completion_at.isoformat() if self.first_completion_at else None,
            "last_completion_at": self.last_completion_at.isoformat() if self.last_completion_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionLedger":
        return cls(
            total_completions=int(data.get("total_completions", 0)),
            domain_counts=dict(data.get("domain_counts") or {}),
            priority_counts=dict(data.get("priority_counts") or {}),
            tool_counts=dict(data.get("tool_counts") or {}),
            first_completion_at=_parse_datetime(data.get("first_completion_at")),
            last_completion_at=_parse_datetime(data.get("last_completion_at")),
        )


@dataclass
class CompletionResult:
    event: CompletionEvent
    scores: Dict[str, int]
    score_change: int
    achieved: Tuple[str, ...]
    newly_achieved: Tuple[str, ...]
    queued: bool
    invalidated: int


@dataclass
class TaskIntelligence:
    """Task-derived development signals, each in [0, 1]."""
    completion_rate: float = 0.0
    complexity_progression: float = 0.0
    implementation_follow: float = 0.0
    development_velocity: float = 0.0

    @property
    def task_score(self) -> float:
        """0-100 composite (each signal weighted 25)."""
        return (
            self.completion_rate * 25
            + self.complexity_progression * 25
            + self.implementation_follow * 25
            + self.development_velocity * 25
        )


# =============================================================================
# TRACKER
# =============================================================================

class CompletionTracker:
    """
    Owns per-customer competency scores, ledgers and achievement state.

    All mutation happens under a single lock, so concurrent completions
    for the same customer never lose an increment.
    """

    def __init__(
        self,
        cache: CacheStore,
        sender: Optional[ThrottledBatchSender] = None,
        events: Optional[EventEmitter] = None,
        mirror: Optional[DurableMirror] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        config = config or default_settings
        self.cache = cache
        self.sender = sender
        self.events = events or EventEmitter()
        self.mirror = mirror if mirror is not None else cache.mirror
        self.boosts = dict(config.COMPETENCY_BOOSTS)
        self.default_score = config.COMPETENCY_DEFAULT_SCORE
        self.ttl = CacheTTL.from_settings(config)
        self._clock = clock

        self._scores: Dict[str, Dict[str, int]] = {}
        self._ledgers: Dict[str, CompletionLedger] = {}
        self._achieved: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: Callable) -> Callable[[], None]:
        return self.events.subscribe(event_name, handler)

    # ========== Recording ==========

    def record_completion(self, event: CompletionEvent) -> CompletionResult:
        """
        Apply a completion event.

        Raises:
            MissingCustomerError: the event has no customer id (no state is changed)
        """
        customer_id = str(event.customer_id or "").strip()
        if not customer_id:
            raise MissingCustomerError(event.task_id)

        tier = coerce_tier(event.milestone)
        domain = coerce_domain(event.competency_area)
        boost = self.boosts.get(Priority.coerce(event.priority).value, 1)

        with self._lock:
            ledger = self._ledger_locked(customer_id)
            ledger.record(event)
            ledger_snapshot = ledger.to_dict()

            scores = self._scores_locked(customer_id)
            change = 0
            if domain is not None:
                before = scores[domain.value]
                scores[domain.value] = min(MAX_SCORE, before + boost)
                change = scores[domain.value] - before
            score_snapshot = dict(scores)

            achieved = achieved_domains(score_snapshot, tier)
            seen = self._achieved.setdefault(customer_id, set())
            newly = tuple(d for d in achieved if d not in seen)
            seen.update(newly)

        self.mirror.store_ledger(customer_id, ledger_snapshot)

        competency_key = CacheKeys.competency_scores(customer_id)
        refreshed = competency_key in self.cache
        if refreshed:
            self.cache.set(competency_key, score_snapshot, self.ttl.competency)

        if change:
            self.events.emit(
                EVENT_COMPETENCY_UPDATED,
                customer_id=customer_id,
                domain=domain.value,
                score=score_snapshot[domain.value],
                change=change,
            )

        if newly:
            logger.info(
                f"Customer {customer_id} reached {tier.value} targets for {', '.join(newly)}",
                extra=log_fields(customer_id=customer_id, tier=tier.value, domains=list(newly)),
            )
            self.events.emit(
                EVENT_MILESTONE_ACHIEVED,
                customer_id=customer_id,
                tier=tier.value,
                achieved=list(achieved),
                newly_achieved=list(newly),
                scores=dict(score_snapshot),
            )

        queued = self._enqueue(event)

        invalidated = self.cache.invalidate_customer(customer_id)
        if refreshed:
            self.cache.set(competency_key, score_snapshot, self.ttl.competency)

        return CompletionResult(
            event=event,
            scores=score_snapshot,
            score_change=change,
            achieved=achieved,
            newly_achieved=newly,
            queued=queued,
            invalidated=invalidated,
        )

    def _enqueue(self, event: CompletionEvent) -> bool:
        if self.sender is None:
            return False
        try:
            return self.sender.enqueue(event)
        except Exception as e:
            logger.error(f"Failed to queue completion for task {event.task_id}: {e}", exc_info=True)
            return False

    # ========== Scores and achievements ==========

    def competency_scores(self, customer_id: str) -> Dict[str, int]:
        with self._lock:
            return dict(self._scores_locked(customer_id))

    def set_scores(self, customer_id: str, scores: Dict[str, Any]) -> Dict[str, int]:
        """Replace a customer's scores with an assessment result."""
        normalized = normalize_scores(scores, default=self.default_score)
        with self._lock:
            self._scores[customer_id] = dict(normalized)
        self.cache.set(CacheKeys.competency_scores(customer_id), dict(normalized), self.ttl.competency)
        self.events.emit(EVENT_COMPETENCY_UPDATED, customer_id=customer_id, scores=dict(normalized))
        return normalized

    def reset_achievements(self, customer_id: str, domains: Optional[Iterable[str]] = None) -> None:
        """Allow milestone.achieved to fire again (all domains, or just `domains`)."""
        with self._lock:
            if domains is None:
                self._achieved.pop(customer_id, None)
                return
            seen = self._achieved.get(customer_id)
            if seen:
                seen.difference_update(domains)

    def _scores_locked(self, customer_id: str) -> Dict[str, int]:
        scores = self._scores.get(customer_id)
        if scores is None:
            cached = self.cache.get(CacheKeys.competency_scores(customer_id))
            scores = normalize_scores(cached if isinstance(cached, dict) else None, default=self.default_score)
            self._scores[customer_id] = scores
        return scores

    # ========== Ledger and intelligence ==========

    def ledger(self, customer_id: str) -> CompletionLedger:
        with self._lock:
            return self._ledger_locked(customer_id).copy()

    def _ledger_locked(self, customer_id: str) -> CompletionLedger:
        ledger = self._ledgers.get(customer_id)
        if ledger is None:
            stored = self.mirror.load_ledger(customer_id)
            ledger = CompletionLedger.from_dict(stored) if stored else CompletionLedger()
            self._ledgers[customer_id] = ledger
        return ledger

    @staticmethod
    def velocity(ledger: CompletionLedger, now: Optional[datetime] = None) -> float:
        """Completions per day since the first one, capped at 1.0; 0 below two completions."""
        if ledger.total_completions < 2 or ledger.first_completion_at is None:
            return 0.0
        now = _as_utc(now) or _utcnow()
        days = (now - _as_utc(ledger.first_completion_at)).total_seconds() / 86400
        return min(1.0, ledger.total_completions / max(1.0, days))

    def task_intelligence(self, customer_id: str) -> TaskIntelligence:
        ledger = self.ledger(customer_id)
        total = ledger.total_completions
        if total == 0:
            return TaskIntelligence()

        weighted = sum(
            COMPLEXITY_WEIGHTS.get(priority, 1) * count
            for priority, count in ledger.priority_counts.items()
        )
        counted = sum(ledger.priority_counts.values())
        tool_uses = sum(ledger.tool_counts.values())

        return TaskIntelligence(
            completion_rate=min(1.0, total / EXPECTED_TASKS_PER_MILESTONE),
            complexity_progression=weighted / (counted * 4) if counted else 0.0,
            implementation_follow=min(1.0, tool_uses / total),
            development_velocity=self.velocity(ledger, self._clock()),
        )

    @staticmethod
    def combine_assessments(base_score: Optional[float], intelligence: TaskIntelligence) -> int:
        """60/40 blend of an assessment score (default 50) and the task score."""
        base = 50 if base_score is None else base_score
        return int(round(base * BASE_ASSESSMENT_WEIGHT + intelligence.task_score * TASK_ASSESSMENT_WEIGHT))
