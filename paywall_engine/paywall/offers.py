"""
Retention-офферы: один активный оффер на пользователя, новый - только после cooldown.
"""
from __future__ import annotations

import logging
from datetime import datetime

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.models import Offer, TrialStatus, UserRecord, utcnow
from paywall_engine.services.state import UserStateStore
from paywall_engine.utils.metrics import offers_granted_total

logger = logging.getLogger(__name__)


class OfferSelector:
    def __init__(self, store: UserStateStore, config: EngineConfig) -> None:
        self.store = store
        self.config = config

    def apply(self, record: UserRecord, now: datetime) -> tuple[UserRecord, Offer | None]:
        """
        Pure selection against a loaded record. Returns (record, offer); the record
        object is returned unchanged unless a new offer was created.
        """
        if record.trial.status_at(now) == TrialStatus.CONVERTED:
            return record, None

        current = record.current_offer
        if current is not None and current.is_active(now):
            return record, current

        if record.last_offer_cooldown_until is not None and record.last_offer_cooldown_until > now:
            return record, None

        if record.session_count < self.config.offer_min_sessions:
            return record, None

        offer = Offer(
            discount_percent=self.config.offer_discount_percent,
            created_at=now,
            expires_at=now + self.config.offer_lifetime,
            cooldown_until=now + self.config.offer_cooldown,
        )
        updated = record.model_copy(
            update={
                "current_offer": offer,
                "last_offer_at": now,
                "last_offer_cooldown_until": offer.cooldown_until,
            }
        )
        return updated, offer

    def select(self, user_id: str, now: datetime | None = None) -> Offer | None:
        now = now or utcnow()
        granted: list[Offer] = []

        def _apply(record: UserRecord) -> tuple[UserRecord, Offer | None]:
            updated, offer = self.apply(record, now)
            granted[:] = [offer] if updated is not record and offer is not None else []
            return updated, offer

        offer = self.store.mutate(user_id, _apply, max_attempts=self.config.state_write_max_attempts)
        if granted:
            offers_granted_total.inc()
            logger.info(
                "offer_granted",
                extra={"user_id": user_id, "offer_expires_at": offer.expires_at.isoformat()},
            )
        return offer
