"""
Recommendation Service

Read-through wrapper around the RecommendationEngine:

    caller -> cache (resource_recs_*) -> hit: return
                                      -> miss: catalog via cache (catalog_*)
                                               -> miss: fetch_catalog collaborator
                                                        -> failure: bundled default catalog
                                      -> engine.rank_all -> cache -> slice to limit

Cached values are plain dicts so they survive the durable mirror.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.exceptions import CatalogValidationError
from services.cache_store import CacheKeys, CacheStore, CacheTTL
from services.catalog import ResourceCatalog, load_catalog, parse_catalog
from services.milestones import MilestoneTier, coerce_tier
from services.recommendation_engine import Recommendation, RecommendationEngine

logger = logging.getLogger(__name__)

FetchCatalog = Callable[[str, Dict[str, Any]], Any]


class RecommendationService:
    """Cached recommendations per customer, tier and completion count."""

    def __init__(
        self,
        cache: CacheStore,
        engine: Optional[RecommendationEngine] = None,
        fetch_catalog: Optional[FetchCatalog] = None,
        default_catalog: Optional[ResourceCatalog] = None,
        ttl: Optional[CacheTTL] = None,
    ):
        self.cache = cache
        self.engine = engine or RecommendationEngine()
        self.fetch_catalog = fetch_catalog
        self._default_catalog = default_catalog
        self.ttl = ttl or CacheTTL.from_settings()

    @property
    def default_catalog(self) -> ResourceCatalog:
        if self._default_catalog is None:
            self._default_catalog = load_catalog()
        return self._default_catalog

    def get_recommendations(
        self,
        customer_id: str,
        milestone: Any,
        competency_scores: Optional[Dict[str, Any]],
        completed_activities: Optional[Iterable[Any]],
        usage_signals: Any = None,
        limit: Optional[int] = None,
    ) -> List[Recommendation]:
        tier = coerce_tier(milestone)
        completed = list(completed_activities or [])
        key = CacheKeys.recommendations(customer_id, tier.value, len(completed))

        limit = self.engine.default_limit if limit is None else max(0, limit)

        cached = self.cache.get(key)
        if cached is not None:
            try:
                return [Recommendation.from_dict(item) for item in cached[:limit]]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding malformed cached recommendations {key}: {e}")
                self.cache.delete(key)

        # Cache the full ranking; each caller gets its own slice
        catalog = self.get_catalog(tier)
        ranked = self.engine.rank_all(
            customer_id=customer_id,
            milestone=tier,
            competency_scores=competency_scores,
            completed_activities=completed,
            usage_signals=usage_signals,
            catalog=catalog,
        )
        self.cache.set(key, [rec.to_dict() for rec in ranked], self.ttl.recommendations)
        return ranked[:limit]

    def get_catalog(self, tier: Any) -> ResourceCatalog:
        """Catalog for a tier: cache, then fetch_catalog, then the bundled default."""
        tier = coerce_tier(tier)
        key = CacheKeys.catalog(tier.value)

        cached = self.cache.get(key)
        if cached is not None:
            try:
                return parse_catalog(cached)
            except CatalogValidationError as e:
                logger.warning(f"Discarding invalid cached catalog {key}: {e}")
                self.cache.delete(key)

        catalog = self._fetch_remote_catalog(tier)
        if catalog is not None:
            self.cache.set(key, catalog.model_dump(mode="json"), self.ttl.milestones)
            return catalog

        catalog = self.default_catalog
        self.cache.set(key, catalog.model_dump(mode="json"), self.ttl.fallback)
        return catalog

    def invalidate(self, customer_id: str) -> int:
        return self.cache.invalidate_customer(customer_id)

    def _fetch_remote_catalog(self, tier: MilestoneTier) -> Optional[ResourceCatalog]:
        if self.fetch_catalog is None:
            return None
        try:
            data = self.fetch_catalog("resources", {"tier": tier.value})
        except Exception as e:
            logger.warning(f"Catalog fetch failed for tier {tier.value}, using default: {e}")
            return None

        if not data:
            logger.warning(f"Catalog fetch returned nothing for tier {tier.value}, using default")
            return None

        try:
            return parse_catalog(data)
        except CatalogValidationError as e:
            logger.warning(f"Fetched catalog for tier {tier.value} is invalid, using default: {e}")
            return None
