"""
Resource Catalog Schema and Loader

Typed lookup tables consumed by the recommendation engine and task
service:

- resources:            resource id -> title/type/category
- task_resources:       completed task name -> immediate / next-level resources
- competency_resources: domain -> score bucket -> resources
- milestone_flow:       tier -> essential / recommended / advanced resources
- default_tasks:        tier -> fallback task list
- task_tools:           task name -> platform tool connection

The tables are data, not code. The repo ships a default catalog in
services/data/default_catalog.json; deployments may supply their own
through the fetch_catalog collaborator. Every resource reference is
checked at load so a typo fails at startup rather than silently
dropping a recommendation.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from core.exceptions import CatalogValidationError
from services.competency import CompetencyDomain, Priority, BUCKET_HIGH, BUCKET_LOW, BUCKET_MEDIUM
from services.milestones import MilestoneTier

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "default_catalog.json"

_SCORE_BUCKETS = (BUCKET_LOW, BUCKET_MEDIUM, BUCKET_HIGH)


# =============================================================================
# SCHEMA
# =============================================================================

class ResourceInfo(BaseModel):
    title: str
    type: str = "guide"
    category: str = "Implementation"
    description: str = ""


class TaskResourceMapping(BaseModel):
    """Resources to surface after a task is completed."""
    immediate: List[str] = Field(default_factory=list)
    next_level: List[str] = Field(default_factory=list)
    category: str = "Implementation"


class MilestoneResourceFlow(BaseModel):
    essential: List[str] = Field(default_factory=list)
    recommended: List[str] = Field(default_factory=list)
    advanced: List[str] = Field(default_factory=list)


class TaskDefinition(BaseModel):
    id: str
    name: str
    category: str
    priority: Priority = Priority.MEDIUM
    competency_area: str = "general"
    estimated_effort: Optional[str] = None
    related_tool_id: Optional[str] = None


class ToolConnection(BaseModel):
    tool: str
    tool_name: str
    connection: str = ""
    action: str = ""


class ResourceCatalog(BaseModel):
    """
    Complete catalog.

    Dict fields preserve file order, which the engine relies on for
    deterministic output (first matching task mapping wins).
    """
    version: str = "1"
    resources: Dict[str, ResourceInfo] = Field(default_factory=dict)
    task_resources: Dict[str, TaskResourceMapping] = Field(default_factory=dict)
    competency_resources: Dict[CompetencyDomain, Dict[str, List[str]]] = Field(default_factory=dict)
    milestone_flow: Dict[MilestoneTier, MilestoneResourceFlow] = Field(default_factory=dict)
    default_tasks: Dict[MilestoneTier, List[TaskDefinition]] = Field(default_factory=dict)
    task_tools: Dict[str, ToolConnection] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.resources or self.task_resources or self.competency_resources or self.milestone_flow)

    def reference_problems(self) -> List[str]:
        """Every dangling resource id or unknown bucket, as readable messages."""
        known = set(self.resources)
        problems: List[str] = []

        def check(ids: List[str], where: str) -> None:
            for resource_id in ids:
                if resource_id not in known:
                    problems.append(f"{where} references unknown resource '{resource_id}'")

        for task_name, mapping in self.task_resources.items():
            check(mapping.immediate, f"task_resources['{task_name}'].immediate")
            check(mapping.next_level, f"task_resources['{task_name}'].next_level")

        for domain, buckets in self.competency_resources.items():
            for bucket, ids in buckets.items():
                if bucket not in _SCORE_BUCKETS:
                    problems.append(f"competency_resources['{domain.value}'] has unknown bucket '{bucket}'")
                check(ids, f"competency_resources['{domain.value}']['{bucket}']")

        for tier, flow in self.milestone_flow.items():
            check(flow.essential, f"milestone_flow['{tier.value}'].essential")
            check(flow.recommended, f"milestone_flow['{tier.value}'].recommended")
            check(flow.advanced, f"milestone_flow['{tier.value}'].advanced")

        return problems

    # ========== Lookups ==========

    def resource(self, resource_id: str) -> Optional[ResourceInfo]:
        return self.resources.get(resource_id)

    def find_task_mapping(self, task_name: str) -> Optional[TaskResourceMapping]:
        """
        Exact name match first, then case-insensitive substring match in
        either direction; the first mapping in catalog order wins.
        """
        if not task_name:
            return None
        if task_name in self.task_resources:
            return self.task_resources[task_name]

        lowered = task_name.lower()
        for mapped_name, mapping in self.task_resources.items():
            mapped_lower = mapped_name.lower()
            if mapped_lower in lowered or lowered in mapped_lower:
                return mapping
        return None

    def competency_bucket(self, domain: CompetencyDomain, bucket: str) -> List[str]:
        return list(self.competency_resources.get(domain, {}).get(bucket, []))

    def flow_for(self, tier: MilestoneTier) -> MilestoneResourceFlow:
        return self.milestone_flow.get(tier) or MilestoneResourceFlow()

    def tasks_for(self, tier: MilestoneTier) -> List[TaskDefinition]:
        """Default tasks for a tier, falling back to foundation."""
        tasks = self.default_tasks.get(tier)
        if tasks is None:
            tasks = self.default_tasks.get(MilestoneTier.FOUNDATION, [])
        return list(tasks)

    def tool_for(self, task_name: str) -> Optional[ToolConnection]:
        return self.task_tools.get(task_name)


# =============================================================================
# LOADER
# =============================================================================

def parse_catalog(data: Any) -> ResourceCatalog:
    """
    Validate catalog data (a dict, or an existing ResourceCatalog).

    Raises:
        CatalogValidationError: schema errors or dangling resource references
    """
    if isinstance(data, ResourceCatalog):
        catalog = data
    else:
        try:
            catalog = ResourceCatalog.model_validate(data or {})
        except ValidationError as e:
            raise CatalogValidationError(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ) from e

    problems = catalog.reference_problems()
    if problems:
        raise CatalogValidationError(problems)
    return catalog


_cached_default: Optional[ResourceCatalog] = None


def load_catalog(path: Optional[Path] = None, force_reload: bool = False) -> ResourceCatalog:
    """
    Load and validate a catalog JSON file.

    The default catalog is cached after the first load.

    Raises:
        FileNotFoundError: If the catalog file doesn't exist
        CatalogValidationError: If the catalog fails validation
    """
    global _cached_default

    use_default = path is None
    if use_default and _cached_default is not None and not force_reload:
        return _cached_default

    path = path or DEFAULT_CATALOG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Resource catalog not found: {path}")

    logger.info(f"Loading resource catalog from {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    catalog = parse_catalog(data)
    logger.info(
        f"Loaded catalog version {catalog.version}: {len(catalog.resources)} resources, "
        f"{len(catalog.task_resources)} task mappings"
    )

    if use_default:
        _cached_default = catalog
    return catalog
