"""
Milestone Model

Classifies a company's business metrics into a milestone tier and
exposes per-tier competency targets and descriptive metadata.

Tier detection is a cascade evaluated from the highest tier down;
within a tier any one signal crossing its threshold qualifies:

    expansion: MRR >= 75k, team > 15, customers > 150, Series A or later
    growth:    MRR >= 25k, team > 8,  customers > 50,  Seed
    otherwise foundation

All functions here are pure.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from services.competency import CompetencyDomain


class MilestoneTier(str, Enum):
    FOUNDATION = "foundation"
    GROWTH = "growth"
    EXPANSION = "expansion"


@dataclass(frozen=True)
class BusinessMetrics:
    """Inputs to tier detection. Any field may be missing."""
    mrr: Optional[float] = None
    arr: Optional[float] = None
    team_size: Optional[int] = None
    customer_count: Optional[int] = None
    funding_stage: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BusinessMetrics":
        data = data or {}
        return cls(
            mrr=data.get("mrr"),
            arr=data.get("arr"),
            team_size=data.get("team_size", data.get("teamSize")),
            customer_count=data.get("customer_count", data.get("customerCount")),
            funding_stage=data.get("funding_stage", data.get("fundingStage")),
        )

    @property
    def monthly_revenue(self) -> float:
        """MRR, falling back to ARR / 12."""
        mrr = _number(self.mrr)
        if mrr:
            return mrr
        return _number(self.arr) / 12


@dataclass(frozen=True)
class Milestone:
    tier: MilestoneTier
    targets: Dict[str, int]
    categories: Tuple[str, ...]
    revenue_range: str
    timeframe: str
    stage: str = ""
    context: str = ""
    focus: str = ""
    priority_domains: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "targets": dict(self.targets),
            "categories": list(self.categories),
            "revenue_range": self.revenue_range,
            "timeframe": self.timeframe,
            "stage": self.stage,
            "context": self.context,
            "focus": self.focus,
            "priority_domains": list(self.priority_domains),
        }


# Thresholds
EXPANSION_MRR = 75_000
EXPANSION_TEAM_SIZE = 15
EXPANSION_CUSTOMERS = 150
GROWTH_MRR = 25_000
GROWTH_TEAM_SIZE = 8
GROWTH_CUSTOMERS = 50

# Funding stages that qualify a tier on their own
_EXPANSION_STAGES = ("series a", "series b", "series c", "series d", "series e", "ipo")
_GROWTH_STAGES = ("seed",)


_MILESTONES: Dict[MilestoneTier, Milestone] = {
    MilestoneTier.FOUNDATION: Milestone(
        tier=MilestoneTier.FOUNDATION,
        targets={
            CompetencyDomain.CUSTOMER_ANALYSIS.value: 70,
            CompetencyDomain.VALUE_COMMUNICATION.value: 65,
            CompetencyDomain.EXECUTIVE_READINESS.value: 50,
        },
        categories=("Initial PMF (Product-Market Fit)", "Key Hires"),
        revenue_range="$10K - $100K MRR",
        timeframe="3-6 months",
        stage="seed",
        context="Building systematic foundations for scalable PMF validation",
        focus="Establish systematic buyer understanding and value communication",
        priority_domains=(
            CompetencyDomain.CUSTOMER_ANALYSIS.value,
            CompetencyDomain.VALUE_COMMUNICATION.value,
            CompetencyDomain.EXECUTIVE_READINESS.value,
        ),
    ),
    MilestoneTier.GROWTH: Milestone(
        tier=MilestoneTier.GROWTH,
        targets={
            CompetencyDomain.CUSTOMER_ANALYSIS.value: 85,
            CompetencyDomain.VALUE_COMMUNICATION.value: 80,
            CompetencyDomain.EXECUTIVE_READINESS.value: 75,
        },
        categories=("Scalability/Revenue", "User Base", "Scaling Product"),
        revenue_range="$100K - $500K+ MRR",
        timeframe="6-12 months",
        stage="seed-to-series-a",
        context="Scaling systematic processes for Series A readiness",
        focus="Optimize revenue processes for scale and team training",
        priority_domains=(
            CompetencyDomain.VALUE_COMMUNICATION.value,
            CompetencyDomain.EXECUTIVE_READINESS.value,
            CompetencyDomain.CUSTOMER_ANALYSIS.value,
        ),
    ),
    MilestoneTier.EXPANSION: Milestone(
        tier=MilestoneTier.EXPANSION,
        targets={
            CompetencyDomain.CUSTOMER_ANALYSIS.value: 90,
            CompetencyDomain.VALUE_COMMUNICATION.value: 90,
            CompetencyDomain.EXECUTIVE_READINESS.value: 85,
        },
        categories=("Revenue Growth", "Market Penetration"),
        revenue_range="$1M+ ARR",
        timeframe="12-18 months",
        stage="series-a",
        context="Systematic enterprise sales and market leadership",
        focus="Advanced revenue intelligence for market expansion",
        priority_domains=(CompetencyDomain.EXECUTIVE_READINESS.value,),
    ),
}

# Expansion is terminal
_PROGRESSION: Dict[MilestoneTier, Optional[MilestoneTier]] = {
    MilestoneTier.FOUNDATION: MilestoneTier.GROWTH,
    MilestoneTier.GROWTH: MilestoneTier.EXPANSION,
    MilestoneTier.EXPANSION: None,
}


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _stage_matches(stage: Optional[str], accepted: Tuple[str, ...]) -> bool:
    if not stage:
        return False
    normalized = str(stage).strip().lower().replace("-", " ").replace("_", " ")
    return any(normalized.startswith(candidate) for candidate in accepted)


def coerce_tier(value: Any) -> MilestoneTier:
    """Parse a tier (enum, string, or Milestone); unknown values fall back to foundation."""
    if isinstance(value, MilestoneTier):
        return value
    if isinstance(value, Milestone):
        return value.tier
    if isinstance(value, dict):
        value = value.get("tier")
    try:
        return MilestoneTier(str(value).strip().lower())
    except ValueError:
        return MilestoneTier.FOUNDATION


def milestone_for(tier: Any) -> Milestone:
    return _MILESTONES[coerce_tier(tier)]


def detect_tier(metrics: Any) -> Milestone:
    """
    Classify business metrics into a milestone.

    Accepts a BusinessMetrics, a dict, or None. Missing fields never
    qualify a tier, so an empty bundle is foundation.
    """
    if metrics is None:
        return _MILESTONES[MilestoneTier.FOUNDATION]
    if isinstance(metrics, dict):
        metrics = BusinessMetrics.from_dict(metrics)

    revenue = metrics.monthly_revenue
    team = _number(metrics.team_size)
    customers = _number(metrics.customer_count)

    if (
        revenue >= EXPANSION_MRR
        or team > EXPANSION_TEAM_SIZE
        or customers > EXPANSION_CUSTOMERS
        or _stage_matches(metrics.funding_stage, _EXPANSION_STAGES)
    ):
        return _MILESTONES[MilestoneTier.EXPANSION]

    if (
        revenue >= GROWTH_MRR
        or team > GROWTH_TEAM_SIZE
        or customers > GROWTH_CUSTOMERS
        or _stage_matches(metrics.funding_stage, _GROWTH_STAGES)
    ):
        return _MILESTONES[MilestoneTier.GROWTH]

    return _MILESTONES[MilestoneTier.FOUNDATION]


def targets_for(tier: Any) -> Dict[str, int]:
    """Competency targets for a tier. Returns a copy."""
    return dict(milestone_for(tier).targets)


def next_tier(tier: Any) -> Optional[Milestone]:
    following = _PROGRESSION[coerce_tier(tier)]
    return _MILESTONES[following] if following else None


def achieved_domains(scores: Dict[str, int], tier: Any) -> Tuple[str, ...]:
    """Domains (enum order) whose score meets or exceeds the tier's target."""
    targets = targets_for(tier)
    return tuple(
        domain.value
        for domain in CompetencyDomain
        if scores.get(domain.value, 0) >= targets[domain.value]
    )
