"""Tests for ConversionEventEmitter: non-blocking emit, retries and drops."""
import threading
import time
from datetime import datetime, timezone
from unittest.mock import patch
from uuid import uuid4

import pybreaker

from paywall_engine.paywall.emitter import ConversionEventEmitter
from paywall_engine.paywall.errors import SinkDeliveryError
from paywall_engine.paywall.models import (
    ConversionOutcome,
    DecisionContext,
    DecisionRecord,
    OutcomeType,
)
from paywall_engine.services.analytics import AnalyticsSink, InMemoryAnalyticsSink

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _record(event_id=None):
    return DecisionRecord(
        event_id=event_id or uuid4().hex,
        user_id="u1",
        session_id="s1",
        action_type="share",
        show=True,
        variant="0",
        context=DecisionContext.SHOWN,
        timestamp=T0,
    )


def _breaker(fail_max=100):
    return pybreaker.CircuitBreaker(fail_max=fail_max, reset_timeout=60)


class FlakySink(AnalyticsSink):
    """Fails the first `failures` calls, then behaves like InMemoryAnalyticsSink."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.inner = InMemoryAnalyticsSink()

    def deliver(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise SinkDeliveryError("collector returned 503")
        self.inner.deliver(event)


class BlockingSink(AnalyticsSink):
    def __init__(self):
        self.release = threading.Event()
        self.delivered = []

    def deliver(self, event):
        self.release.wait(5)
        self.delivered.append(event)


def _emitter(sink, **kwargs):
    kwargs.setdefault("backoff_base_seconds", 0)
    kwargs.setdefault("backoff_max_seconds", 0)
    kwargs.setdefault("breaker", _breaker())
    return ConversionEventEmitter(sink, **kwargs)


class TestDelivery:
    def test_delivers_records(self):
        sink = InMemoryAnalyticsSink()
        with _emitter(sink) as emitter:
            for _ in range(5):
                assert emitter.emit(_record()) is True
            assert emitter.flush(timeout=5)
            assert emitter.delivered_count == 5
        assert len(sink.events) == 5
        assert {e["kind"] for e in sink.events} == {"decision"}

    def test_redelivery_is_deduplicated(self):
        sink = InMemoryAnalyticsSink()
        record = _record("evt-1")
        with _emitter(sink) as emitter:
            emitter.emit(record)
            emitter.emit(record)
            emitter.flush(timeout=5)
        assert len(sink.events) == 1
        assert sink.get("evt-1")["event"]["user_id"] == "u1"

    def test_outcome_uses_its_own_key(self):
        sink = InMemoryAnalyticsSink()
        with _emitter(sink) as emitter:
            emitter.emit(_record("evt-1"))
            emitter.emit_outcome(ConversionOutcome(event_id="evt-1", user_id="u1", outcome=OutcomeType.PURCHASED))
            emitter.flush(timeout=5)
        assert sink.get("evt-1")["kind"] == "decision"
        assert sink.get("evt-1:purchased")["kind"] == "outcome"

    def test_retries_then_succeeds(self):
        sink = FlakySink(failures=2)
        with _emitter(sink, max_attempts=5) as emitter:
            emitter.emit(_record("evt-1"))
            emitter.flush(timeout=5)
            assert emitter.failed_count == 0
            assert emitter.delivered_count == 1
        assert sink.calls == 3
        assert sink.inner.get("evt-1") is not None


class TestFailures:
    def test_retries_exhausted(self):
        sink = FlakySink(failures=100)
        with _emitter(sink, max_attempts=3) as emitter:
            emitter.emit(_record())
            emitter.flush(timeout=5)
            assert emitter.failed_count == 1
            assert emitter.delivered_count == 0
        assert sink.calls == 3

    def test_open_breaker_stops_calling_sink(self):
        sink = FlakySink(failures=100)
        with _emitter(sink, max_attempts=4, breaker=_breaker(fail_max=1)) as emitter:
            emitter.emit(_record())
            emitter.flush(timeout=5)
            assert emitter.failed_count == 1
        # first failure opens the breaker; later attempts are rejected without a call
        assert sink.calls == 1

    def test_queue_full_drops_without_blocking(self):
        sink = BlockingSink()
        emitter = _emitter(sink, queue_size=2)
        # not started: nothing drains the queue
        assert emitter.emit(_record()) is True
        assert emitter.emit(_record()) is True
        started = time.monotonic()
        assert emitter.emit(_record()) is False
        assert time.monotonic() - started < 0.1
        assert emitter.failed_count == 1

    def test_emit_never_waits_for_sink(self):
        sink = BlockingSink()
        emitter = _emitter(sink).__enter__()
        try:
            started = time.monotonic()
            for _ in range(10):
                emitter.emit(_record())
            assert time.monotonic() - started < 0.1
            assert sink.delivered == []
        finally:
            sink.release.set()
            emitter.close(timeout=5)
        assert len(sink.delivered) == 10

    def test_backoff_is_bounded(self):
        emitter = ConversionEventEmitter(
            InMemoryAnalyticsSink(),
            backoff_base_seconds=0.5,
            backoff_max_seconds=4,
            breaker=_breaker(),
        )
        with patch("paywall_engine.paywall.emitter.random.uniform", return_value=0.0):
            delays = [emitter._backoff_delay(n) for n in range(1, 8)]
        assert delays == [0.5, 1.0, 2.0, 4.0, 4, 4, 4]


class TestLifecycle:
    def test_close_stops_workers(self):
        emitter = _emitter(InMemoryAnalyticsSink(), workers=3)
        emitter.start()
        assert emitter.running
        emitter.close(timeout=5)
        assert not emitter.running

    def test_start_is_idempotent(self):
        emitter = _emitter(InMemoryAnalyticsSink())
        emitter.start()
        threads = list(emitter._threads)
        emitter.start()
        assert emitter._threads == threads
        emitter.close(timeout=5)

    def test_close_aborts_pending_retries(self):
        sink = FlakySink(failures=100)
        emitter = ConversionEventEmitter(
            sink,
            max_attempts=50,
            backoff_base_seconds=10,
            backoff_max_seconds=10,
            breaker=_breaker(),
        )
        emitter.start()
        emitter.emit(_record())
        time.sleep(0.2)
        started = time.monotonic()
        emitter.close(timeout=0.2)
        assert time.monotonic() - started < 3
        assert not emitter.running
        assert emitter.failed_count == 1

    def test_flush_times_out(self):
        sink = BlockingSink()
        emitter = _emitter(sink).__enter__()
        try:
            emitter.emit(_record())
            assert emitter.flush(timeout=0.05) is False
        finally:
            sink.release.set()
            emitter.close(timeout=5)

    def test_flush_with_nothing_pending(self):
        emitter = _emitter(InMemoryAnalyticsSink())
        assert emitter.pending == 0
        assert emitter.flush(timeout=0.01) is True

    def test_pending_tracks_accepted_events(self):
        sink = BlockingSink()
        emitter = _emitter(sink, queue_size=2)
        emitter.emit(_record())
        emitter.emit(_record())
        emitter.emit(_record())  # dropped: not pending
        assert emitter.pending == 2
        emitter.start()
        sink.release.set()
        try:
            assert emitter.flush(timeout=5) is True
            assert emitter.pending == 0
        finally:
            emitter.close(timeout=5)
        assert len(sink.delivered) == 2
