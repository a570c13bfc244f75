"""
PaywallEngine: the injected service that wires store, config, components and the
analytics emitter together. Create one per process (see main.py lifespan) or per test.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from paywall_engine.core.config import Settings
from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.emitter import ConversionEventEmitter
from paywall_engine.paywall.engagement import EngagementScorer
from paywall_engine.paywall.evaluator import PaywallTriggerEvaluator
from paywall_engine.paywall.experiments import ExperimentAssigner
from paywall_engine.paywall.models import (
    ConversionOutcome,
    Offer,
    PaywallDecision,
    TrialState,
    TrialStatus,
    UserActionEvent,
    UserRecord,
    UserSession,
    utcnow,
)
from paywall_engine.paywall.offers import OfferSelector
from paywall_engine.paywall.trial import TrialStateTracker
from paywall_engine.services.analytics import build_analytics_sink
from paywall_engine.services.state import UserStateStore, build_state_store

logger = logging.getLogger(__name__)


class PaywallEngine:
    def __init__(
        self,
        config: EngineConfig,
        store: UserStateStore,
        emitter: ConversionEventEmitter | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.emitter = emitter
        self.trials = TrialStateTracker(store, config)
        self.scorer = EngagementScorer(config)
        self.assigner = ExperimentAssigner()
        self.offers = OfferSelector(store, config)
        self.evaluator = PaywallTriggerEvaluator(
            store,
            config,
            scorer=self.scorer,
            assigner=self.assigner,
            offers=self.offers,
            emitter=emitter,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> PaywallEngine:
        emitter = ConversionEventEmitter.from_settings(settings, build_analytics_sink(settings))
        return cls(EngineConfig.from_settings(settings), build_state_store(settings), emitter)

    def start(self) -> None:
        if self.emitter is not None:
            self.emitter.start()

    def close(self, timeout: float = 5.0) -> None:
        if self.emitter is not None:
            self.emitter.close(timeout)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def handle_action(self, event: UserActionEvent | Mapping[str, Any]) -> PaywallDecision:
        """Evaluate one user action; never raises."""
        return self.evaluator.evaluate(event).to_decision()

    def record_outcome(self, outcome: ConversionOutcome) -> bool:
        """Forward the later outcome of a decision to analytics. False if it was dropped."""
        if self.emitter is None:
            return False
        return self.emitter.emit_outcome(outcome)

    # ------------------------------------------------------------------
    # Trial
    # ------------------------------------------------------------------

    def start_trial(self, user_id: str, duration_days: int | None = None, now: datetime | None = None) -> TrialState:
        return self.trials.start(user_id, duration_days, now)

    def trial_status(self, user_id: str, now: datetime | None = None) -> TrialStatus:
        return self.trials.status(user_id, now)

    def days_remaining(self, user_id: str, now: datetime | None = None) -> int:
        return self.trials.days_remaining(user_id, now)

    def mark_converted(self, user_id: str, now: datetime | None = None) -> TrialState:
        return self.trials.mark_converted(user_id, now)

    # ------------------------------------------------------------------
    # Offers / experiments
    # ------------------------------------------------------------------

    def select_offer(self, user_id: str, now: datetime | None = None) -> Offer | None:
        return self.offers.select(user_id, now)

    def variant(self, user_id: str, experiment_id: str, variant_count: int | None = None) -> int:
        count = self.config.experiment_variant_count if variant_count is None else variant_count
        return self.assigner.variant(user_id, experiment_id, count)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, user_id: str, session_id: str, started_at: datetime | None = None) -> UserSession:
        """
        Open a session explicitly (app launch); later actions accumulate into it.
        A session id the user already has is reused, never counted again.
        """
        started_at = started_at or utcnow()

        def _apply(record: UserRecord) -> tuple[UserRecord, UserSession]:
            known = record.sessions.get(session_id)
            if known is not None:
                if known.ended_at is not None or record.current_session_id == session_id:
                    return record, known
                return record.model_copy(update={"current_session_id": session_id}), known
            session = self.scorer.start(user_id, session_id, started_at)
            updated = record.model_copy(
                update={
                    "sessions": self.scorer.remember(record.sessions, session),
                    "current_session_id": session_id,
                    "session_count": record.session_count + 1,
                }
            )
            return updated, session

        return self.store.mutate(user_id, _apply, max_attempts=self.config.state_write_max_attempts)

    def end_session(self, user_id: str, session_id: str, ended_at: datetime | None = None) -> bool:
        """
        Close a session. Its id stays remembered, so late events still land in it
        and are not counted as a new session. False if the session is unknown or
        already ended.
        """
        ended_at = ended_at or utcnow()

        def _apply(record: UserRecord) -> tuple[UserRecord, bool]:
            session = record.sessions.get(session_id)
            if session is None or session.ended_at is not None:
                return record, False
            sessions = dict(record.sessions)
            sessions[session_id] = session.model_copy(update={"ended_at": ended_at})
            current_id = None if record.current_session_id == session_id else record.current_session_id
            return record.model_copy(update={"sessions": sessions, "current_session_id": current_id}), True

        ended = self.store.mutate(user_id, _apply, max_attempts=self.config.state_write_max_attempts)
        if ended:
            logger.info("session_ended", extra={"user_id": user_id, "session_id": session_id})
        return ended
