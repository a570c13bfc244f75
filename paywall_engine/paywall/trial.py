"""
Trial lifecycle: NOT_STARTED -> ACTIVE on explicit start, ACTIVE -> EXPIRED by the
clock (computed on read, no timers), any -> CONVERTED on a verified purchase (terminal).
"""
from __future__ import annotations

import logging
from datetime import datetime

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.models import TrialState, TrialStatus, UserRecord, utcnow
from paywall_engine.services.state import UserStateStore

logger = logging.getLogger(__name__)


def start_trial(record: UserRecord, duration_days: int, now: datetime) -> UserRecord:
    """Pure transition; returns the same record object when there is nothing to do."""
    if record.trial.status != TrialStatus.NOT_STARTED:
        return record
    trial = TrialState(status=TrialStatus.ACTIVE, start_date=now, duration_days=duration_days)
    return record.model_copy(update={"trial": trial})


def convert_trial(record: UserRecord, now: datetime) -> UserRecord:
    if record.trial.status == TrialStatus.CONVERTED:
        return record
    trial = record.trial.model_copy(update={"status": TrialStatus.CONVERTED, "converted_at": now})
    # Платящему пользователю retention-оффер больше не нужен.
    return record.model_copy(update={"trial": trial, "current_offer": None})


class TrialStateTracker:
    def __init__(self, store: UserStateStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def start(self, user_id: str, duration_days: int | None = None, now: datetime | None = None) -> TrialState:
        """Start the trial once; repeated calls return the existing trial unchanged."""
        now = now or utcnow()
        days = self.config.trial_duration_days if duration_days is None else duration_days
        if days < 0:
            raise ValueError("duration_days must be >= 0")

        def _apply(record: UserRecord) -> tuple[UserRecord, TrialState]:
            updated = start_trial(record, days, now)
            return updated, updated.trial

        trial = self.store.mutate(user_id, _apply, max_attempts=self.config.state_write_max_attempts)
        logger.info(
            "trial_started",
            extra={"user_id": user_id, "trial_status": trial.status_at(now).value},
        )
        return trial

    def status(self, user_id: str, now: datetime | None = None) -> TrialStatus:
        return self.store.load(user_id).trial.status_at(now or utcnow())

    def days_remaining(self, user_id: str, now: datetime | None = None) -> int:
        return self.store.load(user_id).trial.days_remaining_at(now or utcnow())

    def mark_converted(self, user_id: str, now: datetime | None = None) -> TrialState:
        """
        Called by the receipt-verification layer after a verified purchase.
        Terminal and idempotent.
        """
        now = now or utcnow()

        def _apply(record: UserRecord) -> tuple[UserRecord, TrialState]:
            updated = convert_trial(record, now)
            return updated, updated.trial

        trial = self.store.mutate(user_id, _apply, max_attempts=self.config.state_write_max_attempts)
        logger.info(
            "trial_converted",
            extra={"user_id": user_id, "trial_status": TrialStatus.CONVERTED.value},
        )
        return trial
