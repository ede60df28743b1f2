"""
Throttled Batch Sender

Bounded retry queue in front of the external record store. Completion
events are enqueued without blocking the caller; a worker thread waits
for a short debounce window, then sends batches with a pause between
batches.

Each event is retried with exponential backoff. Events that still fail
are dropped, counted, and announced on the event emitter as
`completion.persist_failed` so the host can alert or re-queue.
Persisters raise PersistenceError(retryable=False) for rejections that
should not be retried; any other exception is wrapped in a PersistenceError
for the failure event.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from core.config import Settings, settings as default_settings
from core.events import EVENT_COMPLETION_PERSISTED, EVENT_COMPLETION_PERSIST_FAILED, EventEmitter
from core.exceptions import PersistenceError
from core.logging import log_fields

logger = logging.getLogger(__name__)


class ThrottledBatchSender:
    """
    Usage:
        sender = ThrottledBatchSender(persist_completion, events)
        sender.start()
        sender.enqueue(event)
        ...
        sender.stop()   # drains what is left
    """

    def __init__(
        self,
        persist: Callable[[Any], Any],
        events: Optional[EventEmitter] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        **overrides,
    ):
        config = config or default_settings
        self.persist = persist
        self.events = events or EventEmitter()
        self.batch_size = overrides.get("batch_size", config.COMPLETION_BATCH_SIZE)
        self.debounce_s = overrides.get("debounce_s", config.COMPLETION_DEBOUNCE_S)
        self.batch_interval_s = overrides.get("batch_interval_s", config.COMPLETION_BATCH_INTERVAL_S)
        self.max_attempts = overrides.get("max_attempts", config.COMPLETION_MAX_ATTEMPTS)
        self.backoff_base_s = overrides.get("backoff_base_s", config.COMPLETION_BACKOFF_BASE_S)
        self.queue_max = overrides.get("queue_max", config.COMPLETION_QUEUE_MAX)
        self._sleep = sleep

        self._queue: Deque[Any] = deque()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self._stats = {"enqueued": 0, "sent": 0, "failed": 0, "dropped": 0, "retries": 0}

    # ========== Producer side ==========

    def enqueue(self, event: Any) -> bool:
        """Queue an event. Returns False when stopped or the queue is full."""
        with self._cond:
            if self._stopped:
                logger.warning("Completion sender is stopped; event not queued")
                self._stats["dropped"] += 1
                return False
            if len(self._queue) >= self.queue_max:
                logger.warning(f"Completion queue full ({self.queue_max}); event dropped")
                self._stats["dropped"] += 1
                return False
            self._queue.append(event)
            self._stats["enqueued"] += 1
            self._cond.notify_all()
            return True

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def stats(self) -> Dict[str, int]:
        with self._cond:
            stats = dict(self._stats)
            stats["pending"] = len(self._queue)
            return stats

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ========== Lifecycle ==========

    def start(self) -> None:
        with self._cond:
            if self._stopped or self.running:
                return
            self._thread = threading.Thread(target=self._run, name="completion-sender", daemon=True)
            self._thread.start()
        logger.info("Completion sender started")

    def stop(self, drain: bool = True, timeout: Optional[float] = 5.0) -> None:
        """Stop accepting events, stop the worker, and optionally send what is left."""
        with self._cond:
            already_stopped = self._stopped
            self._stopped = True
            self._cond.notify_all()

        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout)

        if already_stopped:
            return
        if drain:
            self.drain()
        logger.info(f"Completion sender stopped: {self.stats}")

    def drain(self) -> int:
        """Send everything queued synchronously, without debounce or pauses."""
        processed = 0
        while True:
            batch = self._take_batch()
            if not batch:
                return processed
            self._send_batch(batch)
            processed += len(batch)

    # ========== Worker ==========

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopped:
                    self._cond.wait()
                if self._stopped:
                    return
                # Debounce: let a burst of completions accumulate
                self._cond.wait(self.debounce_s)
                if self._stopped:
                    return

            while True:
                batch = self._take_batch()
                if not batch:
                    break
                self._send_batch(batch)
                with self._cond:
                    if self._stopped:
                        return
                    if self._queue:
                        self._cond.wait(self.batch_interval_s)
                        if self._stopped:
                            return

    def _take_batch(self) -> List[Any]:
        with self._cond:
            batch = []
            while self._queue and len(batch) < self.batch_size:
                batch.append(self._queue.popleft())
            return batch

    def _send_batch(self, batch: List[Any]) -> None:
        logger.debug(f"Sending batch of {len(batch)} completion events")
        for event in batch:
            self._send_with_retry(event)

    def _send_with_retry(self, event: Any) -> bool:
        failure: Optional[PersistenceError] = None
        attempts = 0
        for attempt in range(self.max_attempts):
            attempts = attempt + 1
            try:
                self.persist(event)
                with self._cond:
                    self._stats["sent"] += 1
                self.events.emit(EVENT_COMPLETION_PERSISTED, event=event)
                return True
            except PersistenceError as e:
                failure = e
            except Exception as e:
                failure = PersistenceError(str(e))
                failure.__cause__ = e

            if not failure.retryable:
                logger.warning(f"Record store rejected completion event: {failure.detail}")
                break
            if attempt < self.max_attempts - 1:
                delay = self.backoff_base_s * (2 ** attempt)
                logger.warning(
                    f"Persist attempt {attempts}/{self.max_attempts} failed: {failure.detail}. "
                    f"Retrying in {delay}s"
                )
                with self._cond:
                    self._stats["retries"] += 1
                if delay > 0:
                    self._sleep(delay)

        with self._cond:
            self._stats["failed"] += 1
        logger.error(
            f"Giving up on completion event after {attempts} attempts: {failure.detail}",
            extra=log_fields(event=getattr(event, "task_id", event), attempts=attempts),
        )
        self.events.emit(
            EVENT_COMPLETION_PERSIST_FAILED,
            event=event,
            error=failure.detail,
            attempts=attempts,
            exception=failure,
        )
        return False
