"""
Tests for the read-through recommendation service.
"""
from unittest.mock import MagicMock, patch

import pytest

from services.cache_store import CacheKeys, CacheStore, CacheTTL
from services.catalog import parse_catalog
from services.recommendation_engine import Recommendation, RecommendationSource
from services.recommendation_service import RecommendationService

SMALL_CATALOG = {
    "resources": {"r1": {"title": "Remote One", "category": "Implementation"}},
    "milestone_flow": {"growth": {"essential": ["r1"]}},
}

# Twelve growth essentials and nothing else, so the full ranking has 12 entries
WIDE_CATALOG = {
    "resources": {f"w{i}": {"title": f"Wide {i}", "category": "Implementation"} for i in range(12)},
    "milestone_flow": {"growth": {"essential": [f"w{i}" for i in range(12)]}},
}


@pytest.fixture
def service(store, catalog):
    return RecommendationService(store, default_catalog=catalog, ttl=CacheTTL())


class TestReadThrough:

    def test_second_call_served_from_cache(self, service):
        with patch.object(service.engine, "rank_all", wraps=service.engine.rank_all) as spy:
            first = service.get_recommendations("c1", "foundation", {}, [])
            second = service.get_recommendations("c1", "foundation", {}, [])

        assert spy.call_count == 1
        assert [r.title for r in first] == [r.title for r in second]
        assert all(isinstance(r, Recommendation) for r in second)

    def test_key_includes_completion_count(self, service, store):
        service.get_recommendations("c1", "foundation", {}, ["a", "b"])
        assert store.entry(CacheKeys.recommendations("c1", "foundation", 2)) is not None

    def test_cached_with_recommendation_ttl(self, service, store):
        service.get_recommendations("c1", "growth", {}, [])
        assert store.entry("resource_recs_c1_growth_0").ttl == 600

    def test_limit_slices_cached_list(self, service):
        assert len(service.get_recommendations("c1", "foundation", {}, [], limit=3)) == 3
        assert len(service.get_recommendations("c1", "foundation", {}, [])) == 8

    def test_invalidate_drops_customer_entries(self, service, store):
        service.get_recommendations("c1", "foundation", {}, [])
        service.get_recommendations("c2", "foundation", {}, [])
        assert service.invalidate("c1") == 1
        assert store.entry("resource_recs_c2_foundation_0") is not None

    def test_survives_restart_through_mirror(self, clock, mirror, catalog):
        first = RecommendationService(CacheStore(mirror=mirror, clock=clock), default_catalog=catalog)
        expected = first.get_recommendations("c1", "growth", {"customer_analysis": 20}, [])

        second = RecommendationService(CacheStore(mirror=mirror, clock=clock), default_catalog=catalog)
        with patch.object(second.engine, "rank_all") as engine:
            recovered = second.get_recommendations("c1", "growth", {"customer_analysis": 20}, [])

        engine.assert_not_called()
        assert recovered == expected


class TestCatalogSource:

    def test_uses_fetched_catalog(self, store, catalog):
        fetch = MagicMock(return_value=SMALL_CATALOG)
        service = RecommendationService(store, fetch_catalog=fetch, default_catalog=catalog)

        recs = service.get_recommendations("c1", "growth", {}, [])

        fetch.assert_called_once_with("resources", {"tier": "growth"})
        assert [r.title for r in recs] == ["Remote One"]
        assert recs[0].source == RecommendationSource.MILESTONE_ESSENTIAL
        assert store.entry("catalog_growth").ttl == 600

    def test_catalog_is_cached_between_customers(self, store, catalog):
        fetch = MagicMock(return_value=SMALL_CATALOG)
        service = RecommendationService(store, fetch_catalog=fetch, default_catalog=catalog)

        service.get_recommendations("c1", "growth", {}, [])
        service.get_recommendations("c2", "growth", {}, [])

        assert fetch.call_count == 1

    def test_fetch_failure_falls_back_to_default(self, store, catalog):
        fetch = MagicMock(side_effect=TimeoutError("record store timeout"))
        service = RecommendationService(store, fetch_catalog=fetch, default_catalog=catalog)

        recs = service.get_recommendations("c1", "foundation", {}, [])

        assert recs[0].resource_id == "icp-basics-1"
        assert store.entry("catalog_foundation").ttl == 60

    @pytest.mark.parametrize("payload", [None, {}, {"milestone_flow": {"growth": {"essential": ["ghost"]}}}])
    def test_empty_or_invalid_fetch_falls_back(self, store, catalog, payload):
        service = RecommendationService(store, fetch_catalog=lambda kind, flt: payload, default_catalog=catalog)
        assert service.get_catalog("growth") is catalog

    def test_no_collaborator_uses_default(self, store, catalog):
        service = RecommendationService(store, default_catalog=catalog)
        assert service.get_catalog("expansion") is catalog


class TestLimitHandling:

    @pytest.fixture
    def wide_service(self, store):
        return RecommendationService(store, default_catalog=parse_catalog(WIDE_CATALOG), ttl=CacheTTL())

    def test_full_ranking_is_cached(self, wide_service, store):
        recs = wide_service.get_recommendations("c1", "growth", {}, [])
        assert len(recs) == 8
        assert len(store.get("resource_recs_c1_growth_0")) == 12

    def test_large_then_default(self, wide_service):
        assert len(wide_service.get_recommendations("c1", "growth", {}, [], limit=30)) == 12
        assert len(wide_service.get_recommendations("c1", "growth", {}, [])) == 8

    def test_default_then_large(self, wide_service):
        assert len(wide_service.get_recommendations("c1", "growth", {}, [])) == 8
        recs = wide_service.get_recommendations("c1", "growth", {}, [], limit=30)
        assert [r.title for r in recs] == [f"Wide {i}" for i in range(12)]

    def test_zero_limit(self, wide_service):
        assert wide_service.get_recommendations("c1", "growth", {}, [], limit=0) == []
        assert len(wide_service.get_recommendations("c1", "growth", {}, [])) == 8
