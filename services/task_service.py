"""
Task Service

Builds the prioritised task list shown to a customer for their current
milestone, and a preview of the next milestone's tasks.

Each task is mapped to a competency area and a platform tool. Its
priority is lifted to the gap-derived priority when that is higher, and
a relevance score combines the gap, tool usage and priority.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.config import settings
from services.cache_store import CacheKeys, CacheStore, CacheTTL
from services.catalog import ResourceCatalog, TaskDefinition, load_catalog
from services.competency import (
    GENERAL_AREA,
    Priority,
    calculate_task_priority,
    competency_gap,
    coerce_domain,
    higher_priority,
    map_task_to_competency,
)
from services.milestones import coerce_tier, next_tier, targets_for
from services.recommendation_engine import UsageSignals

logger = logging.getLogger(__name__)

PRIORITY_BOOSTS = {
    Priority.CRITICAL: 20,
    Priority.HIGH: 15,
    Priority.MEDIUM: 10,
    Priority.LOW: 5,
}

BASE_RELEVANCE = 50
MAX_RELEVANCE = 100
UPCOMING_PREVIEW_COUNT = 2


@dataclass
class PrioritizedTask:
    id: str
    name: str
    category: str
    priority: Priority
    competency_area: str
    competency_gap: int
    relevance_score: int
    estimated_effort: Optional[str] = None
    related_tool_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrioritizedTask":
        return cls(
            id=data["id"],
            name=data["name"],
            category=data.get("category", ""),
            priority=Priority.coerce(data.get("priority")),
            competency_area=data.get("competency_area", GENERAL_AREA),
            competency_gap=int(data.get("competency_gap", 0)),
            relevance_score=int(data.get("relevance_score", 0)),
            estimated_effort=data.get("estimated_effort"),
            related_tool_id=data.get("related_tool_id"),
            tool_name=data.get("tool_name"),
            tool_action=data.get("tool_action"),
        )


def tool_usage_score(tool: Optional[str], usage: Any) -> float:
    """How much the customer already uses the tool a task connects to."""
    usage = usage if isinstance(usage, UsageSignals) else UsageSignals.from_dict(usage)
    if tool == "icp":
        return usage.icp_progress / 5
    if tool == "financial":
        return usage.financial_progress / 5
    if tool == "resources":
        return min(20, usage.resources_accessed * 2)
    return 0


def _as_task(task: Any) -> TaskDefinition:
    if isinstance(task, TaskDefinition):
        return task
    return TaskDefinition.model_validate(task)


def prioritize_tasks(
    tasks: Iterable[Any],
    scores: Optional[Dict[str, Any]],
    usage: Any,
    milestone: Any,
    limit: Optional[int] = None,
    catalog: Optional[ResourceCatalog] = None,
) -> List[PrioritizedTask]:
    """Top `limit` tasks (TASK_LIST_LIMIT by default) from rank_tasks()."""
    limit = settings.TASK_LIST_LIMIT if limit is None else limit
    return rank_tasks(tasks, scores, usage, milestone, catalog)[:max(0, limit)]


def rank_tasks(
    tasks: Iterable[Any],
    scores: Optional[Dict[str, Any]],
    usage: Any,
    milestone: Any,
    catalog: Optional[ResourceCatalog] = None,
) -> List[PrioritizedTask]:
    """
    Score and rank every task for a customer.

    Sort is by priority (critical first), then relevance, stable for ties.
    """
    targets = targets_for(milestone)
    catalog = catalog or load_catalog()

    ranked: List[PrioritizedTask] = []
    for raw in tasks:
        task = _as_task(raw)

        area = map_task_to_competency(task.name)
        if area == GENERAL_AREA:
            declared = coerce_domain(task.competency_area)
            area = declared.value if declared else GENERAL_AREA

        gap = competency_gap(scores or {}, targets, area)
        priority = higher_priority(task.priority, calculate_task_priority(gap))

        tool = catalog.tool_for(task.name)
        tool_id = task.related_tool_id or (tool.tool if tool else None)
        relevance = (
            BASE_RELEVANCE
            + gap * 2
            + tool_usage_score(tool_id, usage)
            + PRIORITY_BOOSTS[priority]
        )

        ranked.append(PrioritizedTask(
            id=task.id,
            name=task.name,
            category=task.category,
            priority=priority,
            competency_area=area,
            competency_gap=gap,
            relevance_score=int(round(min(MAX_RELEVANCE, relevance))),
            estimated_effort=task.estimated_effort,
            related_tool_id=tool_id,
            tool_name=tool.tool_name if tool else None,
            tool_action=tool.action if tool else None,
        ))

    ranked.sort(key=lambda t: (-t.priority.rank, -t.relevance_score))
    return ranked


class TaskService:
    """Cached task lists per customer and tier."""

    def __init__(
        self,
        cache: CacheStore,
        fetch_catalog: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        catalog: Optional[ResourceCatalog] = None,
        ttl: Optional[CacheTTL] = None,
    ):
        self.cache = cache
        self.fetch_catalog = fetch_catalog
        self._catalog = catalog
        self.ttl = ttl or CacheTTL.from_settings()

    @property
    def catalog(self) -> ResourceCatalog:
        if self._catalog is None:
            self._catalog = load_catalog()
        return self._catalog

    def tasks_for_customer(
        self,
        customer_id: str,
        milestone: Any,
        scores: Optional[Dict[str, Any]],
        usage: Any = None,
        limit: Optional[int] = None,
    ) -> List[PrioritizedTask]:
        """
        Prioritised tasks for the customer's tier.

        The full ranking is cached and each call takes its own `limit`
        (TASK_LIST_LIMIT by default). Fetched lists are cached with the tasks
        TTL; default-task fallbacks with the shorter fallback TTL so a
        recovered backend is picked up soon.
        """
        tier = coerce_tier(milestone)
        key = CacheKeys.customer_tasks(customer_id, tier.value)
        limit = settings.TASK_LIST_LIMIT if limit is None else max(0, limit)

        cached = self.cache.get(key)
        if cached is not None:
            return [PrioritizedTask.from_dict(item) for item in cached[:limit]]

        raw_tasks = self._fetch_tasks(customer_id, tier.value)
        ttl = self.ttl.tasks
        if not raw_tasks:
            raw_tasks = self.catalog.tasks_for(tier)
            ttl = self.ttl.fallback

        try:
            tasks = rank_tasks(raw_tasks, scores, usage, tier, catalog=self.catalog)
        except ValueError as e:
            logger.warning(f"Fetched tasks for customer {customer_id} are malformed, using defaults: {e}")
            tasks = rank_tasks(self.catalog.tasks_for(tier), scores, usage, tier, catalog=self.catalog)
            ttl = self.ttl.fallback

        self.cache.set(key, [task.to_dict() for task in tasks], ttl)
        return tasks[:limit]

    def upcoming_tasks(self, milestone: Any) -> List[TaskDefinition]:
        """Preview of the next tier's default tasks; [] at the final tier."""
        tier = coerce_tier(milestone)
        following = next_tier(tier)
        if following is None:
            return []

        key = CacheKeys.upcoming_tasks(tier.value)
        cached = self.cache.get(key)
        if cached is not None:
            return [TaskDefinition.model_validate(item) for item in cached]

        preview = self.catalog.tasks_for(following.tier)[:UPCOMING_PREVIEW_COUNT]
        self.cache.set(key, [task.model_dump(mode="json") for task in preview], self.ttl.milestones)
        return preview

    def _fetch_tasks(self, customer_id: str, tier: str) -> List[Any]:
        if self.fetch_catalog is None:
            return []
        try:
            return list(self.fetch_catalog("tasks", {"customer_id": customer_id, "tier": tier}) or [])
        except Exception as e:
            logger.warning(f"Task fetch failed for customer {customer_id}, using defaults: {e}")
            return []
