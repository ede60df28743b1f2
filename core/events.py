"""
Lightweight Event System

Simple event emitter used for the engine's observable side effects
(milestone achievements, competency updates, persistence failures).
Each component receives an emitter instance instead of sharing a
module-level registry.
"""
import logging
import threading
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Subscribe handlers to named events and fan out emitted payloads.

    Handler exceptions are logged and never reach the emitter's caller.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: Callable) -> Callable[[], None]:
        """
        Subscribe a handler function to an event.

        Returns a callable that removes the subscription.

        Example:
            unsubscribe = events.subscribe(EVENT_MILESTONE_ACHIEVED, on_achieved)
        """
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)
        logger.debug(f"Subscribed handler to event: {event_name}")

        def _unsubscribe() -> None:
            self.unsubscribe(event_name, handler)

        return _unsubscribe

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event_name: str, **kwargs) -> int:
        """
        Emit an event, calling all subscribed handlers.

        Returns the number of handlers that ran without error.
        """
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(**kwargs)
                delivered += 1
            except Exception as e:
                logger.error(f"Error in event handler for {event_name}: {e}", exc_info=True)
        return delivered

    def handler_count(self, event_name: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_name, []))


# Common event names
EVENT_MILESTONE_ACHIEVED = 'milestone.achieved'
EVENT_COMPETENCY_UPDATED = 'competency.updated'
EVENT_COMPLETION_PERSISTED = 'completion.persisted'
EVENT_COMPLETION_PERSIST_FAILED = 'completion.persist_failed'
