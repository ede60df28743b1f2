"""
Recommendation Engine

Produces a ranked, deduplicated list of "next action" resources for a
customer from independent signal sources:

1. Task completion   - follow-ups to tasks the customer finished
2. Competency gaps   - resources matched to each domain's score bucket
3. Milestone flow    - essentials for the tier, more as the customer progresses
4. Usage patterns    - fixed rules over platform usage and performance level

The passes are unioned in that order, deduplicated (by title and by
resource id, first occurrence wins), stable-sorted by priority then
source weight, and truncated.

The engine is pure: identical inputs give identical output, regardless
of the ordering of the input score mapping.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from core.config import Settings, settings as default_settings
from services.catalog import ResourceCatalog
from services.competency import (
    CompetencyDomain,
    Priority,
    mean_score,
    normalize_scores,
    score_bucket,
)
from services.milestones import MilestoneTier, coerce_tier

logger = logging.getLogger(__name__)


class RecommendationSource(str, Enum):
    TASK_COMPLETION = "task-completion"
    COMPETENCY_GAP = "competency-gap"
    USAGE_PATTERN = "usage-pattern"
    PERFORMANCE_BASED = "performance-based"
    MILESTONE_ESSENTIAL = "milestone-essential"
    MILESTONE_RECOMMENDED = "milestone-recommended"
    MILESTONE_ADVANCED = "milestone-advanced"
    TASK_PROGRESSION = "task-progression"


# Tie-breaker within a priority level (higher first)
SOURCE_WEIGHTS = {
    RecommendationSource.TASK_COMPLETION: 6,
    RecommendationSource.COMPETENCY_GAP: 5,
    RecommendationSource.USAGE_PATTERN: 4,
    RecommendationSource.PERFORMANCE_BASED: 3,
    RecommendationSource.MILESTONE_ESSENTIAL: 2,
    RecommendationSource.MILESTONE_RECOMMENDED: 1,
    RecommendationSource.TASK_PROGRESSION: 1,
    RecommendationSource.MILESTONE_ADVANCED: 0,
}

DOMAIN_CATEGORIES = {
    CompetencyDomain.CUSTOMER_ANALYSIS: "ICP Intelligence",
    CompetencyDomain.VALUE_COMMUNICATION: "Value Communication",
    CompetencyDomain.EXECUTIVE_READINESS: "Implementation",
}

DOMAIN_LABELS = {
    CompetencyDomain.CUSTOMER_ANALYSIS: "customer analysis",
    CompetencyDomain.VALUE_COMMUNICATION: "value communication",
    CompetencyDomain.EXECUTIVE_READINESS: "executive readiness",
}

# Milestone pass thresholds (completed activity count)
RECOMMENDED_AFTER_COMPLETIONS = 2
ADVANCED_AFTER_COMPLETIONS = 5

# Usage-pattern thresholds
ICP_PROGRESS_THRESHOLD = 70
FINANCIAL_PROGRESS_THRESHOLD = 50
CRITICAL_PERFORMANCE_LEVEL = "critical"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class UsageSignals:
    """Platform usage snapshot for one customer."""
    icp_progress: float = 0
    financial_progress: float = 0
    resources_accessed: int = 0
    last_icp_export: Optional[str] = None
    last_business_case_export: Optional[str] = None
    performance_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "UsageSignals":
        data = data or {}

        def pick(snake: str, camel: str, default: Any = None) -> Any:
            value = data.get(snake, data.get(camel))
            return default if value is None else value

        return cls(
            icp_progress=_as_number(pick("icp_progress", "icpProgress", 0)),
            financial_progress=_as_number(pick("financial_progress", "financialProgress", 0)),
            resources_accessed=int(_as_number(pick("resources_accessed", "resourcesAccessed", 0))),
            last_icp_export=pick("last_icp_export", "lastICPExport"),
            last_business_case_export=pick("last_business_case_export", "lastBusinessCaseExport"),
            performance_level=pick("performance_level", "performanceLevel"),
        )


@dataclass
class Recommendation:
    """A single recommended next action."""
    title: str
    reason: str
    source: RecommendationSource
    priority: Priority
    category: str
    tier: str
    resource_id: Optional[str] = None
    description: str = ""
    competency_area: Optional[str] = None
    current_score: Optional[int] = None

    @property
    def sort_key(self):
        return (-self.priority.rank, -SOURCE_WEIGHTS[self.source])

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["priority"] = self.priority.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        return cls(
            title=data["title"],
            reason=data.get("reason", ""),
            source=RecommendationSource(data["source"]),
            priority=Priority.coerce(data.get("priority")),
            category=data.get("category", ""),
            tier=data.get("tier", MilestoneTier.FOUNDATION.value),
            resource_id=data.get("resource_id"),
            description=data.get("description", ""),
            competency_area=data.get("competency_area"),
            current_score=data.get("current_score"),
        )


@dataclass
class _UsageRule:
    title: str
    description: str
    category: str
    priority: Priority
    source: RecommendationSource


_USAGE_RULES = {
    "icp_without_export": _UsageRule(
        title="Implementation Templates",
        description="Turn your ICP insights into actionable templates",
        category="Implementation",
        priority=Priority.HIGH,
        source=RecommendationSource.USAGE_PATTERN,
    ),
    "financial_without_business_case": _UsageRule(
        title="Business Case Templates",
        description="Convert financial calculations into stakeholder-ready cases",
        category="Value Communication",
        priority=Priority.HIGH,
        source=RecommendationSource.USAGE_PATTERN,
    ),
    "critical_performance": _UsageRule(
        title="Quick Win Templates",
        description="Immediate impact resources for urgent improvements",
        category="Value Communication",
        priority=Priority.CRITICAL,
        source=RecommendationSource.PERFORMANCE_BASED,
    ),
}


def _as_number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _activity_name(activity: Any) -> str:
    if isinstance(activity, str):
        return activity
    if isinstance(activity, dict):
        return activity.get("name") or activity.get("task_name") or activity.get("taskName") or ""
    return getattr(activity, "task_name", None) or getattr(activity, "name", None) or ""


# =============================================================================
# ENGINE
# =============================================================================

class RecommendationEngine:
    """Stateless scorer; safe to share across threads."""

    def __init__(self, config: Optional[Settings] = None):
        config = config or default_settings
        self.default_limit = config.RECOMMENDATION_LIMIT
        self.tool_progress_threshold = config.ADVANCED_TOOL_PROGRESS_THRESHOLD
        self.resources_accessed_threshold = config.ADVANCED_RESOURCES_ACCESSED_THRESHOLD
        self.mean_competency_threshold = config.ADVANCED_MEAN_COMPETENCY_THRESHOLD

    def recommend(
        self,
        customer_id: str,
        milestone: Any,
        competency_scores: Optional[Dict[str, Any]],
        completed_activities: Optional[Iterable[Any]],
        usage_signals: Any,
        catalog: Optional[ResourceCatalog],
        limit: Optional[int] = None,
    ) -> List[Recommendation]:
        """
        Rank next actions for a customer.

        Args:
            customer_id: Used for logging only
            milestone: Tier (enum, string, Milestone); unknown -> foundation
            competency_scores: domain -> score; missing domains default to 50
            completed_activities: task names, or dicts/objects carrying one
            usage_signals: UsageSignals or a dict of the same fields
            catalog: Lookup tables; an empty catalog yields []
            limit: Maximum entries (default from settings)

        Returns:
            At most `limit` recommendations, one per title and per resource id
        """
        ranked = self.rank_all(
            customer_id, milestone, competency_scores, completed_activities, usage_signals, catalog,
        )
        limit = self.default_limit if limit is None else limit
        return ranked[:max(0, limit)]

    def rank_all(
        self,
        customer_id: str,
        milestone: Any,
        competency_scores: Optional[Dict[str, Any]],
        completed_activities: Optional[Iterable[Any]],
        usage_signals: Any,
        catalog: Optional[ResourceCatalog],
    ) -> List[Recommendation]:
        """Every de-duplicated candidate in rank order, without truncation."""
        if catalog is None or catalog.is_empty:
            return []

        tier = coerce_tier(milestone)
        scores = normalize_scores(competency_scores)
        names = [name for name in (_activity_name(a) for a in completed_activities or []) if name]
        usage = usage_signals if isinstance(usage_signals, UsageSignals) else UsageSignals.from_dict(usage_signals)

        candidates: List[Recommendation] = []
        candidates.extend(self._generate_task_recommendations(names, scores, usage, tier, catalog))
        candidates.extend(self._generate_competency_recommendations(scores, tier, catalog))
        candidates.extend(self._generate_milestone_recommendations(tier, len(names), catalog))
        candidates.extend(self._generate_usage_recommendations(usage, tier))

        ranked = self.deduplicate_and_rank(candidates)
        logger.debug(
            f"Recommendations for customer {customer_id}: {len(candidates)} candidates, "
            f"{len(ranked)} ranked (tier={tier.value})"
        )
        return ranked

    def is_advanced_user(self, scores: Dict[str, Any], usage: UsageSignals) -> bool:
        """Any one signal qualifies: tool progress, resources accessed, or mean competency."""
        total_progress = _as_number(usage.icp_progress) + _as_number(usage.financial_progress)
        return (
            total_progress > self.tool_progress_threshold
            or usage.resources_accessed > self.resources_accessed_threshold
            or mean_score(scores) > self.mean_competency_threshold
        )

    @staticmethod
    def deduplicate_and_rank(
        candidates: List[Recommendation], limit: Optional[int] = None,
    ) -> List[Recommendation]:
        """Drop repeated titles or resource ids, sort, and keep at most `limit` (all when None)."""
        seen_titles = set()
        seen_resources = set()
        unique: List[Recommendation] = []
        for rec in candidates:
            if rec.title in seen_titles or (rec.resource_id and rec.resource_id in seen_resources):
                continue
            seen_titles.add(rec.title)
            if rec.resource_id:
                seen_resources.add(rec.resource_id)
            unique.append(rec)

        # list.sort is stable: equal keys keep emission order
        unique.sort(key=lambda r: r.sort_key)
        return unique if limit is None else unique[:max(0, limit)]

    # ========== Passes ==========

    def _generate_task_recommendations(
        self,
        task_names: List[str],
        scores: Dict[str, int],
        usage: UsageSignals,
        tier: MilestoneTier,
        catalog: ResourceCatalog,
    ) -> List[Recommendation]:
        recs: List[Recommendation] = []
        advanced = self.is_advanced_user(scores, usage)

        for task_name in task_names:
            mapping = catalog.find_task_mapping(task_name)
            if mapping is None:
                continue

            for resource_id in mapping.immediate:
                rec = self._from_resource(
                    catalog, resource_id, tier,
                    reason=f'Follow-up to "{task_name}"',
                    priority=Priority.HIGH,
                    source=RecommendationSource.TASK_COMPLETION,
                    category=mapping.category,
                )
                if rec:
                    recs.append(rec)

            if advanced:
                for resource_id in mapping.next_level:
                    rec = self._from_resource(
                        catalog, resource_id, tier,
                        reason=f'Advanced implementation for "{task_name}"',
                        priority=Priority.MEDIUM,
                        source=RecommendationSource.TASK_PROGRESSION,
                        category=mapping.category,
                    )
                    if rec:
                        recs.append(rec)
        return recs

    def _generate_competency_recommendations(
        self,
        scores: Dict[str, int],
        tier: MilestoneTier,
        catalog: ResourceCatalog,
    ) -> List[Recommendation]:
        recs: List[Recommendation] = []
        for domain in CompetencyDomain:
            score = scores[domain.value]
            priority = Priority.HIGH if score < 50 else Priority.MEDIUM
            for resource_id in catalog.competency_bucket(domain, score_bucket(score)):
                rec = self._from_resource(
                    catalog, resource_id, tier,
                    reason=f"Improve {DOMAIN_LABELS[domain]} competency (current: {score}%)",
                    priority=priority,
                    source=RecommendationSource.COMPETENCY_GAP,
                    category=DOMAIN_CATEGORIES[domain],
                )
                if rec:
                    rec.competency_area = domain.value
                    rec.current_score = score
                    recs.append(rec)
        return recs

    def _generate_milestone_recommendations(
        self,
        tier: MilestoneTier,
        completed_count: int,
        catalog: ResourceCatalog,
    ) -> List[Recommendation]:
        flow = catalog.flow_for(tier)
        stages = [
            (flow.essential, Priority.HIGH, RecommendationSource.MILESTONE_ESSENTIAL,
             f"Essential for {tier.value} stage"),
        ]
        if completed_count > RECOMMENDED_AFTER_COMPLETIONS:
            stages.append((flow.recommended, Priority.MEDIUM, RecommendationSource.MILESTONE_RECOMMENDED,
                           f"Recommended for {tier.value} stage progression"))
        if completed_count > ADVANCED_AFTER_COMPLETIONS:
            stages.append((flow.advanced, Priority.LOW, RecommendationSource.MILESTONE_ADVANCED,
                           f"Advanced {tier.value} stage capabilities"))

        recs: List[Recommendation] = []
        for resource_ids, priority, source, reason in stages:
            for resource_id in resource_ids:
                rec = self._from_resource(catalog, resource_id, tier, reason, priority, source)
                if rec:
                    recs.append(rec)
        return recs

    def _generate_usage_recommendations(
        self,
        usage: UsageSignals,
        tier: MilestoneTier,
    ) -> List[Recommendation]:
        fired = []
        if _as_number(usage.icp_progress) > ICP_PROGRESS_THRESHOLD and not usage.last_icp_export:
            fired.append(("icp_without_export", "High ICP progress without an export"))
        if (
            _as_number(usage.financial_progress) > FINANCIAL_PROGRESS_THRESHOLD
            and not usage.last_business_case_export
        ):
            fired.append(("financial_without_business_case", "Financial modeling without a business case"))
        if str(usage.performance_level or "").strip().lower() == CRITICAL_PERFORMANCE_LEVEL:
            fired.append(("critical_performance", "Performance level is critical"))

        recs = []
        for rule_name, reason in fired:
            rule = _USAGE_RULES[rule_name]
            recs.append(Recommendation(
                title=rule.title,
                reason=reason,
                source=rule.source,
                priority=rule.priority,
                category=rule.category,
                tier=tier.value,
                description=rule.description,
            ))
        return recs

    @staticmethod
    def _from_resource(
        catalog: ResourceCatalog,
        resource_id: str,
        tier: MilestoneTier,
        reason: str,
        priority: Priority,
        source: RecommendationSource,
        category: Optional[str] = None,
    ) -> Optional[Recommendation]:
        info = catalog.resource(resource_id)
        if info is None:
            logger.warning(f"Catalog has no resource '{resource_id}', skipping")
            return None
        return Recommendation(
            title=info.title,
            reason=reason,
            source=source,
            priority=priority,
            category=category or info.category,
            tier=tier.value,
            resource_id=resource_id,
            description=info.description,
        )
