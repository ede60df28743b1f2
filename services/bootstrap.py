"""
Component wiring.

Builds one set of engine components from settings. Hosts call
build_components() once at startup and shutdown() on exit.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.cache import mirror_client_from_settings
from core.config import Settings, settings as default_settings
from core.events import EventEmitter
from core.logging import setup_logging
from services.batch_sender import ThrottledBatchSender
from services.cache_store import CacheStore, CacheTTL, CleanupHandle
from services.catalog import load_catalog
from services.completion_tracker import CompletionTracker
from services.durable_mirror import DurableMirror
from services.recommendation_engine import RecommendationEngine
from services.recommendation_service import RecommendationService
from services.task_service import TaskService

logger = logging.getLogger(__name__)


@dataclass
class EngineComponents:
    cache: CacheStore
    events: EventEmitter
    sender: ThrottledBatchSender
    tracker: CompletionTracker
    recommendations: RecommendationService
    tasks: TaskService
    cleanup: Optional[CleanupHandle] = None

    def shutdown(self) -> None:
        """Stop the sweep and flush pending completions. Safe to call twice."""
        if self.cleanup is not None:
            self.cleanup.stop()
        self.sender.stop(drain=True)


def build_components(
    persist_completion: Callable[[Any], Any],
    fetch_catalog: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
    config: Optional[Settings] = None,
    redis_client=None,
    start_background: bool = True,
    configure_logging: bool = False,
) -> EngineComponents:
    """
    Wire the engine.

    Args:
        persist_completion: Writes one completion event to the record store
        fetch_catalog: Optional (kind, filter) -> catalog data / task list
        config: Settings (defaults to the module-level settings)
        redis_client: Pre-built client; otherwise created from REDIS_URL when
            CACHE_MIRROR_ENABLED is set
        start_background: Start the expiry sweep and the sender worker
        configure_logging: Install the process-wide log handler
    """
    config = config or default_settings
    if configure_logging:
        setup_logging(config)

    if redis_client is None:
        redis_client = mirror_client_from_settings(config)

    mirror = DurableMirror(
        redis_client,
        entry_prefix=config.CACHE_MIRROR_KEY_PREFIX,
        ledger_prefix=config.LEDGER_KEY_PREFIX,
    )
    cache = CacheStore(
        capacity=config.CACHE_CAPACITY,
        default_ttl=config.CACHE_TTL_DEFAULT,
        eviction_fraction=config.CACHE_EVICTION_FRACTION,
        mirror=mirror,
    )
    ttl = CacheTTL.from_settings(config)
    events = EventEmitter()
    catalog = load_catalog()

    sender = ThrottledBatchSender(persist_completion, events, config=config)
    tracker = CompletionTracker(cache, sender=sender, events=events, mirror=mirror, config=config)
    recommendations = RecommendationService(
        cache,
        engine=RecommendationEngine(config),
        fetch_catalog=fetch_catalog,
        default_catalog=catalog,
        ttl=ttl,
    )
    tasks = TaskService(cache, fetch_catalog=fetch_catalog, catalog=catalog, ttl=ttl)

    cleanup = None
    if start_background:
        cleanup = cache.start_background_cleanup(config.CACHE_SWEEP_INTERVAL_S)
        sender.start()

    logger.info(
        f"Engine components ready (capacity={cache.capacity}, mirror={'on' if mirror.enabled else 'off'})"
    )
    return EngineComponents(
        cache=cache,
        events=events,
        sender=sender,
        tracker=tracker,
        recommendations=recommendations,
        tasks=tasks,
        cleanup=cleanup,
    )
