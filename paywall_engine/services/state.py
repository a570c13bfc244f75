"""
Хранилище записи пользователя с оптимистичным read-modify-write.
Redis-хранилище использует itsdangerous для подписанной сериализации (защита от подмены);
in-process хранилище держит ту же сериализованную форму (один воркер / локальный запуск).
Отсутствующая или повреждённая запись читается как новый пользователь.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, TypeVar

import redis
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import ValidationError

from paywall_engine.core.config import Settings
from paywall_engine.paywall.errors import (
    DecisionTimeoutError,
    StateConflictError,
    StateUnavailableError,
)
from paywall_engine.paywall.models import UserRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

Mutation = Callable[[UserRecord], tuple[UserRecord, T]]


def encode_record(record: UserRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


def decode_record(user_id: str, data: Any, version: int | None = None) -> UserRecord:
    """Validate stored data; anything unusable becomes a fresh record for user_id."""
    try:
        if not isinstance(data, dict):
            raise ValueError("record payload is not an object")
        record = UserRecord.model_validate(data)
        if record.user_id != user_id:
            raise ValueError("record belongs to another user")
    except (ValidationError, ValueError) as e:
        logger.warning("user_state_corrupted", extra={"user_id": user_id, "error": str(e)})
        return UserRecord(user_id=user_id, version=version or 0, recovered=True)
    if version is not None and record.version != version:
        record = record.model_copy(update={"version": version})
    return record


class UserStateStore(ABC):
    """
    Storage contract: load() never raises for missing/corrupted data, and
    compare_and_set() writes only if the stored version still equals expected_version.
    Backend failures raise StateUnavailableError.
    """

    @abstractmethod
    def load(self, user_id: str) -> UserRecord:
        ...

    @abstractmethod
    def compare_and_set(self, record: UserRecord, expected_version: int) -> bool:
        ...

    @abstractmethod
    def clear(self, user_id: str) -> None:
        ...

    def mutate(
        self,
        user_id: str,
        fn: Mutation,
        *,
        max_attempts: int = 3,
        deadline: float | None = None,
    ) -> T:
        """
        Optimistic read-modify-write: load, apply fn, compare-and-set; retried on conflict.
        fn must be pure: it returns (new_record, result) and may run more than once.
        Returning the loaded record unchanged skips the write.
        deadline is a time.monotonic() instant; past it nothing is committed.
        """
        for attempt in range(1, max_attempts + 1):
            _check_deadline(deadline)
            current = self.load(user_id)
            updated, result = fn(current)
            if updated is current:
                return result
            _check_deadline(deadline)
            if self.compare_and_set(updated, current.version):
                return result
            logger.info(
                "user_state_write_conflict",
                extra={"user_id": user_id, "attempt": attempt, "max_attempts": max_attempts},
            )
        raise StateConflictError(user_id, max_attempts)


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and time.monotonic() >= deadline:
        raise DecisionTimeoutError("latency budget exhausted before commit")


class InMemoryUserStateStore(UserStateStore):
    """In-process store: {user_id: (version, json)}; one lock held only for the swap."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, tuple[int, str]] = {}

    def load(self, user_id: str) -> UserRecord:
        with self._lock:
            entry = self._data.get(user_id)
        if entry is None:
            return UserRecord(user_id=user_id)
        version, raw = entry
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("user_state_corrupted", extra={"user_id": user_id, "error": str(e)})
            return UserRecord(user_id=user_id, version=version, recovered=True)
        return decode_record(user_id, data, version=version)

    def compare_and_set(self, record: UserRecord, expected_version: int) -> bool:
        new_version = expected_version + 1
        raw = json.dumps(encode_record(record.model_copy(update={"version": new_version})))
        with self._lock:
            entry = self._data.get(record.user_id)
            stored_version = entry[0] if entry else 0
            if stored_version != expected_version:
                return False
            self._data[record.user_id] = (new_version, raw)
        return True

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._data.pop(user_id, None)

    def put_raw(self, user_id: str, raw: str, version: int = 1) -> None:
        """Store an arbitrary payload (fixtures, migrations)."""
        with self._lock:
            self._data[user_id] = (version, raw)


class RedisUserStateStore(UserStateStore):
    """
    Redis-backed store with signed serialization.
    compare_and_set uses WATCH/MULTI so concurrent writers on one key lose cleanly.
    """

    def __init__(
        self,
        client: redis.Redis,
        secret: str,
        ttl_seconds: int,
        *,
        key_prefix: str = "paywall:user",
    ) -> None:
        self.client = client
        self.serializer = URLSafeTimedSerializer(secret, salt="paywall-user-state")
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> RedisUserStateStore:
        # Socket timeouts follow the decision budget: a slow Redis means fail-open, not a stall.
        timeout = max(settings.decision_latency_budget_ms / 1000.0, 0.01)
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, settings.state_signing_secret, settings.user_state_ttl)

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}:{user_id}"

    def _decode(self, user_id: str, raw: str | None) -> UserRecord:
        if not raw:
            return UserRecord(user_id=user_id)
        try:
            data = self.serializer.loads(raw, max_age=self.ttl_seconds)
        except (BadSignature, SignatureExpired) as e:
            logger.warning("user_state_corrupted", extra={"user_id": user_id, "error": type(e).__name__})
            return UserRecord(user_id=user_id, recovered=True)
        return decode_record(user_id, data)

    def load(self, user_id: str) -> UserRecord:
        try:
            raw = self.client.get(self._key(user_id))
        except redis.RedisError as e:
            raise StateUnavailableError(str(e)) from e
        return self._decode(user_id, raw)

    def compare_and_set(self, record: UserRecord, expected_version: int) -> bool:
        key = self._key(record.user_id)
        signed = self.serializer.dumps(
            encode_record(record.model_copy(update={"version": expected_version + 1}))
        )
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(key)
                stored = self._decode(record.user_id, pipe.get(key))
                if stored.version != expected_version:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.setex(key, self.ttl_seconds, signed)
                pipe.execute()
                return True
        except redis.WatchError:
            return False
        except redis.RedisError as e:
            raise StateUnavailableError(str(e)) from e

    def clear(self, user_id: str) -> None:
        try:
            self.client.delete(self._key(user_id))
        except redis.RedisError as e:
            raise StateUnavailableError(str(e)) from e


def build_state_store(settings: Settings) -> UserStateStore:
    if settings.redis_url:
        return RedisUserStateStore.from_settings(settings)
    logger.warning("user_state_in_memory", extra={"reason": "redis_url not configured"})
    return InMemoryUserStateStore()
