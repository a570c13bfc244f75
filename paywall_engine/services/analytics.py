"""
Analytics sinks: where decision records and conversion outcomes end up.
Every sink deduplicates by the event's idempotency key (event_id for decisions,
event_id:outcome for outcomes), so at-least-once delivery is safe.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Union

import httpx
import redis

from paywall_engine.core.config import Settings
from paywall_engine.paywall.errors import SinkDeliveryError
from paywall_engine.paywall.models import ConversionOutcome, DecisionRecord
from paywall_engine.services.idempotency import IdempotencyStore

logger = logging.getLogger(__name__)

AnalyticsEvent = Union[DecisionRecord, ConversionOutcome]


def event_envelope(event: AnalyticsEvent) -> dict[str, Any]:
    kind = "decision" if isinstance(event, DecisionRecord) else "outcome"
    return {
        "kind": kind,
        "idempotency_key": event.idempotency_key,
        "event": event.model_dump(mode="json"),
    }


class AnalyticsSink(ABC):
    @abstractmethod
    def deliver(self, event: AnalyticsEvent) -> None:
        """Deliver one event; raise SinkDeliveryError if it was not accepted."""

    def close(self) -> None:
        pass


class InMemoryAnalyticsSink(AnalyticsSink):
    """Durable-for-the-process sink for local runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, dict[str, Any]] = {}

    def deliver(self, event: AnalyticsEvent) -> None:
        envelope = event_envelope(event)
        with self._lock:
            self._events.setdefault(envelope["idempotency_key"], envelope)

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events.values())

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._events.get(key)


class HttpAnalyticsSink(AnalyticsSink):
    """
    POSTs envelopes to the analytics collector. The Idempotency-Key header lets the
    collector drop redeliveries; 409 means it already has the event.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
            self._client = httpx.Client(base_url=self._base_url, timeout=self._timeout, headers=headers)
        return self._client

    def deliver(self, event: AnalyticsEvent) -> None:
        envelope = event_envelope(event)
        try:
            resp = self.client.post(
                "/events",
                json=envelope,
                headers={"Idempotency-Key": envelope["idempotency_key"]},
            )
        except httpx.HTTPError as e:
            raise SinkDeliveryError(f"{type(e).__name__}: {e}") from e
        if resp.status_code == 409:
            return
        if resp.status_code >= 400:
            raise SinkDeliveryError(f"analytics sink returned {resp.status_code}")

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


class IdempotentSink(AnalyticsSink):
    """Skips events whose key was already delivered, using the Redis idempotency store."""

    def __init__(self, inner: AnalyticsSink, store: IdempotencyStore) -> None:
        self.inner = inner
        self.store = store

    def deliver(self, event: AnalyticsEvent) -> None:
        key = event.idempotency_key
        try:
            first = self.store.check_and_set(f"analytics:{key}")
        except redis.RedisError as e:
            # Dedup guard down: deliver anyway, the collector still dedups by key.
            logger.warning("analytics_idempotency_unavailable", extra={"event_id": key, "error": str(e)})
            first = True
        if not first:
            logger.info("analytics_duplicate_skipped", extra={"event_id": key})
            return
        try:
            self.inner.deliver(event)
        except Exception:
            try:
                self.store.release(f"analytics:{key}")
            except redis.RedisError:
                logger.warning("analytics_idempotency_release_failed", extra={"event_id": key})
            raise

    def close(self) -> None:
        self.inner.close()


def build_analytics_sink(settings: Settings) -> AnalyticsSink:
    if not settings.analytics_sink_url:
        logger.warning("analytics_sink_in_memory", extra={"reason": "analytics_sink_url not configured"})
        return InMemoryAnalyticsSink()
    sink: AnalyticsSink = HttpAnalyticsSink(
        settings.analytics_sink_url,
        api_key=settings.analytics_sink_api_key,
        timeout=settings.analytics_sink_timeout,
    )
    if settings.redis_url:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        sink = IdempotentSink(sink, IdempotencyStore(client, settings.analytics_idempotency_ttl))
    return sink
