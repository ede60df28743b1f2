"""
Competency Model

Competency domains, priorities, and the pure helpers that turn raw
score mappings into the normalised shape the rest of the engine uses.

Scores are integers in [0, 100]. Anything malformed is coerced to a
documented default rather than raised: recommendations are advisory.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from core.config import settings

GENERAL_AREA = "general"


class CompetencyDomain(str, Enum):
    """Tracked competency domains, in canonical order."""
    CUSTOMER_ANALYSIS = "customer_analysis"
    VALUE_COMMUNICATION = "value_communication"
    EXECUTIVE_READINESS = "executive_readiness"


class Priority(str, Enum):
    """Task / recommendation priority."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Higher = more urgent."""
        return _PRIORITY_RANK[self]

    @classmethod
    def coerce(cls, value: Any, default: "Priority" = None) -> "Priority":
        default = default or cls.LOW
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default


_PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}

# Score buckets
BUCKET_LOW = "low"
BUCKET_MEDIUM = "medium"
BUCKET_HIGH = "high"

# Task name -> competency domain
TASK_COMPETENCY_MAP: Dict[str, CompetencyDomain] = {
    # Customer analysis
    "Gather and analyze customer feedback to refine the product": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Define Ideal Customer Profile (ICP)": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Refine understanding of target customers to focus sales efforts": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Build a Customer Success Team": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Conduct customer interviews to validate product-market fit": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Analyze user behavior and usage patterns": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Segment customers by value and usage": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Create detailed buyer personas": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Map customer journey and touchpoints": CompetencyDomain.CUSTOMER_ANALYSIS,
    "Implement customer feedback loops": CompetencyDomain.CUSTOMER_ANALYSIS,
    # Value communication
    "Build a repeatable sales process": CompetencyDomain.VALUE_COMMUNICATION,
    "Start building a sales pipeline and closing deals": CompetencyDomain.VALUE_COMMUNICATION,
    "Develop a compelling sales pitch and messaging": CompetencyDomain.VALUE_COMMUNICATION,
    "Implement sales automation and CRM tools to improve efficiency": CompetencyDomain.VALUE_COMMUNICATION,
    "Optimize Pricing & Packaging": CompetencyDomain.VALUE_COMMUNICATION,
    "Create value proposition documentation": CompetencyDomain.VALUE_COMMUNICATION,
    "Develop competitive positioning materials": CompetencyDomain.VALUE_COMMUNICATION,
    "Build ROI calculators for prospects": CompetencyDomain.VALUE_COMMUNICATION,
    "Create sales enablement materials": CompetencyDomain.VALUE_COMMUNICATION,
    "Implement lead qualification framework": CompetencyDomain.VALUE_COMMUNICATION,
    "Design demo and presentation materials": CompetencyDomain.VALUE_COMMUNICATION,
    # Executive readiness
    "Hire a dedicated sales leader to build and manage the team": CompetencyDomain.EXECUTIVE_READINESS,
    "Implement a sales training program and provide ongoing coaching": CompetencyDomain.EXECUTIVE_READINESS,
    "Prepare for Series A funding by demonstrating strong growth": CompetencyDomain.EXECUTIVE_READINESS,
    "Expand Sales Team & Channels": CompetencyDomain.EXECUTIVE_READINESS,
    "Develop Strategic Partnerships": CompetencyDomain.EXECUTIVE_READINESS,
    "Build board reporting and metrics dashboard": CompetencyDomain.EXECUTIVE_READINESS,
    "Create investor updates and communication": CompetencyDomain.EXECUTIVE_READINESS,
    "Establish executive team structure": CompetencyDomain.EXECUTIVE_READINESS,
    "Develop strategic planning processes": CompetencyDomain.EXECUTIVE_READINESS,
    "Implement OKRs and performance management": CompetencyDomain.EXECUTIVE_READINESS,
    "Create market expansion strategy": CompetencyDomain.EXECUTIVE_READINESS,
}

# Accepted spellings for domain names coming from older clients
_DOMAIN_ALIASES = {
    "customeranalysis": CompetencyDomain.CUSTOMER_ANALYSIS,
    "valuecommunication": CompetencyDomain.VALUE_COMMUNICATION,
    "executivereadiness": CompetencyDomain.EXECUTIVE_READINESS,
}


def coerce_domain(value: Any) -> Optional[CompetencyDomain]:
    """Parse a domain name; None for unknown / general areas."""
    if isinstance(value, CompetencyDomain):
        return value
    if value is None:
        return None
    text = str(value).strip()
    try:
        return CompetencyDomain(text.lower())
    except ValueError:
        return _DOMAIN_ALIASES.get(text.replace("_", "").replace("-", "").lower())


def _clamp_score(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    if score != score:  # NaN
        return default
    return int(round(min(100.0, max(0.0, score))))


def normalize_scores(
    scores: Optional[Mapping[str, Any]],
    default: Optional[int] = None,
) -> Dict[str, int]:
    """
    Return a score for every domain, in enum order.

    Missing or non-numeric values become `default` (50); the rest are
    clamped to [0, 100]. Unknown keys are dropped.
    """
    default = settings.COMPETENCY_DEFAULT_SCORE if default is None else default
    parsed: Dict[CompetencyDomain, Any] = {}
    for key, value in (scores or {}).items():
        domain = coerce_domain(key)
        if domain is not None:
            parsed[domain] = value

    return {
        domain.value: _clamp_score(parsed[domain], default) if domain in parsed else default
        for domain in CompetencyDomain
    }


def score_bucket(score: float) -> str:
    """low < 50 <= medium < 75 <= high"""
    if score < 50:
        return BUCKET_LOW
    if score < 75:
        return BUCKET_MEDIUM
    return BUCKET_HIGH


def competency_gap(current: Mapping[str, Any], targets: Mapping[str, Any], area: Any) -> int:
    """max(0, target - current) for one domain; 0 for general/unknown areas."""
    domain = coerce_domain(area)
    if domain is None:
        return 0
    current_score = normalize_scores(current)[domain.value]
    target_score = normalize_scores(targets, default=70)[domain.value]
    return max(0, target_score - current_score)


def mean_score(scores: Optional[Mapping[str, Any]]) -> float:
    normalized = normalize_scores(scores)
    return sum(normalized.values()) / len(normalized)


def map_task_to_competency(task_name: Optional[str]) -> str:
    """Domain value for a task name, or "general" when the task is unmapped."""
    domain = TASK_COMPETENCY_MAP.get(task_name or "")
    return domain.value if domain else GENERAL_AREA


def calculate_task_priority(gap: float) -> Priority:
    """Priority from a competency gap: >30 critical, >15 high, >5 medium."""
    if gap > 30:
        return Priority.CRITICAL
    if gap > 15:
        return Priority.HIGH
    if gap > 5:
        return Priority.MEDIUM
    return Priority.LOW


def higher_priority(a: Any, b: Any) -> Priority:
    first, second = Priority.coerce(a), Priority.coerce(b)
    return first if first.rank >= second.rank else second
