"""
ConversionEventEmitter: bounded producer/consumer queue between the decision path
and the analytics sink.

emit() only does a non-blocking put; worker threads deliver at-least-once with
exponential backoff + jitter, through a circuit breaker. After max_attempts the
event is dropped and failed_count grows. Nothing here ever raises into the caller.
"""
from __future__ import annotations

import logging
import queue
import random
import threading
import time

import pybreaker

from paywall_engine.core.config import Settings
from paywall_engine.paywall.models import ConversionOutcome, DecisionRecord
from paywall_engine.services.analytics import AnalyticsEvent, AnalyticsSink
from paywall_engine.services.circuit_breaker import build_circuit_breaker
from paywall_engine.utils.metrics import (
    analytics_events_delivered_total,
    analytics_events_dropped_total,
    analytics_events_failed_total,
    analytics_queue_size,
)

logger = logging.getLogger(__name__)


class ConversionEventEmitter:
    def __init__(
        self,
        sink: AnalyticsSink,
        *,
        queue_size: int = 10_000,
        workers: int = 1,
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        breaker: pybreaker.CircuitBreaker | None = None,
    ) -> None:
        self.sink = sink
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.workers = workers
        self.breaker = breaker or build_circuit_breaker("analytics_sink", fail_max=5, reset_timeout=30)
        self._queue: queue.Queue[AnalyticsEvent] = queue.Queue(maxsize=queue_size)
        self._lock = threading.Lock()
        # Signalled whenever pending drops to zero.
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._stop_event = threading.Event()
        self._abort_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.failed_count = 0
        self.delivered_count = 0

    @classmethod
    def from_settings(cls, settings: Settings, sink: AnalyticsSink) -> ConversionEventEmitter:
        return cls(
            sink,
            queue_size=settings.emitter_queue_size,
            workers=settings.emitter_workers,
            max_attempts=settings.emitter_max_attempts,
            backoff_base_seconds=settings.emitter_backoff_base_seconds,
            backoff_max_seconds=settings.emitter_backoff_max_seconds,
            breaker=build_circuit_breaker(
                "analytics_sink",
                fail_max=settings.cb_failure_threshold,
                reset_timeout=settings.cb_open_seconds,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pending(self) -> int:
        """Events accepted by emit() and not yet delivered or dropped."""
        with self._lock:
            return self._pending

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._abort_event.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, name=f"analytics-emitter-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until every queued event is delivered or dropped. False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Drain the queue for up to timeout seconds, then stop retrying and exit."""
        self._stop_event.set()
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        if self.running:
            self._abort_event.set()
            for thread in self._threads:
                thread.join(1.0)
        self._threads = []
        self.sink.close()

    def __enter__(self) -> ConversionEventEmitter:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def emit(self, record: DecisionRecord) -> bool:
        """Enqueue a decision record. Never blocks; False if the event was dropped."""
        return self._enqueue(record)

    def emit_outcome(self, outcome: ConversionOutcome) -> bool:
        """Enqueue the later outcome of a decision (same event_id)."""
        return self._enqueue(outcome)

    def _enqueue(self, event: AnalyticsEvent) -> bool:
        with self._lock:
            self._pending += 1
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._done()
            self._drop(event, "queue_full")
            return False
        analytics_queue_size.set(self._queue.qsize())
        return True

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._stop_event.is_set():
                    return
                continue
            try:
                self._deliver_with_retry(event)
            finally:
                self._done()
                analytics_queue_size.set(self._queue.qsize())

    def _deliver_with_retry(self, event: AnalyticsEvent) -> bool:
        key = event.idempotency_key
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.breaker.call(self.sink.deliver, event)
            except Exception as e:
                analytics_events_failed_total.inc()
                if attempt >= self.max_attempts or self._abort_event.is_set():
                    break
                delay = self._backoff_delay(attempt)
                logger.info(
                    "analytics_retry_scheduled",
                    extra={
                        "event_id": key,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "delay_seconds": round(delay, 3),
                        "error": type(e).__name__,
                    },
                )
                if self._abort_event.wait(delay):
                    break
                continue
            with self._lock:
                self.delivered_count += 1
            analytics_events_delivered_total.inc()
            return True
        self._drop(event, "retries_exhausted")
        return False

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)
        return delay + random.uniform(0, self.backoff_base_seconds)

    def _drop(self, event: AnalyticsEvent, reason: str) -> None:
        with self._lock:
            self.failed_count += 1
            failed = self.failed_count
        analytics_events_dropped_total.labels(reason=reason).inc()
        logger.warning(
            "analytics_event_dropped",
            extra={"event_id": event.idempotency_key, "reason": reason, "failed_count": failed},
        )
