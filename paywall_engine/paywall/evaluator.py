"""
PaywallTriggerEvaluator: one UserActionEvent -> exactly one DecisionRecord.

Guardrails (все ведут к show=False):
- converted пользователь -> пейволл никогда не показываем
- действие ниже порога намерения / неподдерживаемое действие
- уже показывали в пределах paywall_repeat_cooldown_hours, любое действие

Всё обновление пользователя (сессии, счётчики, rate limit, оффер) - одна
оптимистичная запись: коммитится целиком или никак.
Любая ошибка -> консервативное решение без показа; запись уходит в аудит в любом случае.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from paywall_engine.paywall.config import EngineConfig
from paywall_engine.paywall.emitter import ConversionEventEmitter
from paywall_engine.paywall.engagement import EngagementScorer
from paywall_engine.paywall.errors import (
    DecisionTimeoutError,
    StateConflictError,
    StateUnavailableError,
)
from paywall_engine.paywall.experiments import ExperimentAssigner
from paywall_engine.paywall.models import (
    ActionType,
    DecisionContext,
    DecisionRecord,
    EngagementLevel,
    Offer,
    TrialStatus,
    UserActionEvent,
    UserRecord,
    utcnow,
)
from paywall_engine.paywall.offers import OfferSelector
from paywall_engine.services.state import UserStateStore
from paywall_engine.utils.metrics import (
    offers_granted_total,
    paywall_decision_duration_seconds,
    paywall_decisions_total,
)

logger = logging.getLogger(__name__)


class _Evaluation(BaseModel):
    show: bool
    context: DecisionContext
    engagement_level: EngagementLevel
    trial_status: TrialStatus
    variant: str | None = None
    offer: Offer | None = None
    offer_granted: bool = False

    model_config = {"frozen": True}


class PaywallTriggerEvaluator:
    def __init__(
        self,
        store: UserStateStore,
        config: EngineConfig,
        *,
        scorer: EngagementScorer | None = None,
        assigner: ExperimentAssigner | None = None,
        offers: OfferSelector | None = None,
        emitter: ConversionEventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self.scorer = scorer or EngagementScorer(config)
        self.assigner = assigner or ExperimentAssigner()
        self.offers = offers or OfferSelector(store, config)
        self.emitter = emitter
        self.clock = clock

    def evaluate(self, event: UserActionEvent | Mapping[str, Any]) -> DecisionRecord:
        started = time.monotonic()
        try:
            record = self._evaluate(event, started)
        except Exception:
            # Последний рубеж: вызывающий всегда получает решение.
            logger.exception("paywall_decision_error", extra=_ids(event))
            record = self._conservative(event, DecisionContext.INTERNAL_ERROR)

        paywall_decisions_total.labels(show=str(record.show).lower(), context=record.context.value).inc()
        paywall_decision_duration_seconds.observe(time.monotonic() - started)
        logger.info(
            "paywall_decision",
            extra={
                "event_id": record.event_id,
                "user_id": record.user_id,
                "session_id": record.session_id,
                "action_type": record.action_type,
                "show": record.show,
                "context": record.context.value,
                "variant": record.variant,
                "engagement_level": record.engagement_level.value if record.engagement_level else None,
                "trial_status": record.trial_status.value if record.trial_status else None,
            },
        )
        if self.emitter is not None:
            self.emitter.emit(record)
        return record

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _evaluate(self, raw: UserActionEvent | Mapping[str, Any], started: float) -> DecisionRecord:
        event = self._parse(raw)
        if event is None:
            return self._conservative(raw, DecisionContext.INVALID_EVENT)

        action = ActionType.parse(event.action_type)
        if action is None:
            logger.warning(
                "paywall_unknown_action_type",
                extra={"user_id": event.user_id, "action_type": event.action_type},
            )

        deadline = started + self.config.decision_latency_budget
        try:
            result = self.store.mutate(
                event.user_id,
                lambda current: self._transition(current, event, action),
                max_attempts=self.config.state_write_max_attempts,
                deadline=deadline,
            )
        except StateConflictError as e:
            logger.warning("paywall_state_conflict", extra={"user_id": event.user_id, "error": str(e)})
            return self._conservative(event, DecisionContext.STATE_CONFLICT)
        except StateUnavailableError as e:
            logger.warning("paywall_state_unavailable", extra={"user_id": event.user_id, "error": str(e)})
            return self._conservative(event, DecisionContext.STATE_UNAVAILABLE)
        except DecisionTimeoutError:
            logger.warning(
                "paywall_latency_budget_exceeded",
                extra={"user_id": event.user_id, "latency_ms": round((time.monotonic() - started) * 1000, 2)},
            )
            return self._conservative(event, DecisionContext.LATENCY_BUDGET_EXCEEDED)

        if result.offer_granted and result.offer is not None:
            offers_granted_total.inc()
            logger.info(
                "offer_granted",
                extra={"user_id": event.user_id, "offer_expires_at": result.offer.expires_at.isoformat()},
            )

        return DecisionRecord(
            event_id=uuid4().hex,
            user_id=event.user_id,
            session_id=event.session_id,
            action_type=event.action_type,
            show=result.show,
            variant=result.variant,
            offer=result.offer,
            context=result.context,
            engagement_level=result.engagement_level,
            trial_status=result.trial_status,
            timestamp=event.timestamp,
        )

    def _transition(
        self,
        record: UserRecord,
        event: UserActionEvent,
        action: ActionType | None,
    ) -> tuple[UserRecord, _Evaluation]:
        """Pure: may run several times under write conflicts."""
        now = event.timestamp

        session = record.sessions.get(event.session_id)
        session_count = record.session_count
        if session is None:
            # Новый id; чередующиеся и опоздавшие события попадают в свою сессию.
            session = self.scorer.start(event.user_id, event.session_id, event.session_start_time or now)
            session_count += 1
        session = self.scorer.record(session, now)
        level = self.scorer.level(session)

        current_id = record.current_session_id
        current = record.session
        if session.ended_at is None and (current is None or now >= current.last_action_at):
            current_id = session.session_id

        updated = record.model_copy(
            update={
                "sessions": self.scorer.remember(record.sessions, session),
                "current_session_id": current_id,
                "session_count": session_count,
                "export_count": record.export_count + (1 if action == ActionType.EXPORT else 0),
                "save_count": record.save_count + (1 if action == ActionType.SAVE else 0),
            }
        )
        trial_status = updated.trial.status_at(now)
        if record.recovered:
            # Нечитаемое состояние заменено новой записью: начинаем заново, но не продаём на ней.
            return updated, _Evaluation(
                show=False, context=DecisionContext.STATE_RECOVERED, engagement_level=level, trial_status=trial_status
            )
        show, context = self._trigger(action, level, trial_status, updated, now)
        if not show:
            return updated, _Evaluation(
                show=False, context=context, engagement_level=level, trial_status=trial_status
            )

        variant = self.assigner.variant(
            event.user_id,
            self.config.paywall_experiment_id,
            self.config.experiment_variant_count,
        )
        with_offer, offer = self.offers.apply(updated, now)
        granted = with_offer is not updated
        final = with_offer.model_copy(update={"last_paywall_shown_at": now})
        return final, _Evaluation(
            show=True,
            context=context,
            engagement_level=level,
            trial_status=trial_status,
            variant=str(variant),
            offer=offer,
            offer_granted=granted,
        )

    def _trigger(
        self,
        action: ActionType | None,
        level: EngagementLevel,
        trial_status: TrialStatus,
        record: UserRecord,
        now: datetime,
    ) -> tuple[bool, DecisionContext]:
        # Guardrail: платящим пейволл не показываем
        if trial_status == TrialStatus.CONVERTED:
            return False, DecisionContext.CONVERTED

        cfg = self.config
        if action == ActionType.EXPORT:
            eligible = record.export_count >= cfg.export_intent_threshold
        elif action == ActionType.ADVANCED_FEATURE:
            eligible = level.at_least(EngagementLevel.MEDIUM)
        elif action == ActionType.SAVE:
            eligible = record.save_count >= cfg.save_intent_threshold
        elif action == ActionType.SHARE:
            eligible = True
        else:
            # OTHER и всё нераспознанное
            return False, DecisionContext.UNSUPPORTED_ACTION

        if not eligible:
            return False, DecisionContext.BELOW_THRESHOLD

        last_shown = record.last_paywall_shown_at
        if last_shown is not None and now - last_shown < cfg.paywall_repeat_cooldown:
            return False, DecisionContext.RATE_LIMITED

        return True, DecisionContext.SHOWN

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parse(self, raw: UserActionEvent | Mapping[str, Any]) -> UserActionEvent | None:
        if isinstance(raw, UserActionEvent):
            return raw
        try:
            return UserActionEvent.model_validate(raw)
        except ValidationError as e:
            logger.warning(
                "paywall_invalid_event",
                extra={**_ids(raw), "error": f"{e.error_count()} validation error(s)"},
            )
            return None

    def _conservative(self, raw: Any, context: DecisionContext) -> DecisionRecord:
        ids = _ids(raw)
        timestamp = raw.timestamp if isinstance(raw, UserActionEvent) else self.clock()
        return DecisionRecord(
            event_id=uuid4().hex,
            user_id=ids["user_id"],
            session_id=ids["session_id"],
            action_type=ids["action_type"],
            show=False,
            context=context,
            timestamp=timestamp,
        )


def _ids(raw: Any) -> dict[str, str]:
    """Best-effort identifiers from whatever was passed in, for logs and audit records."""
    if isinstance(raw, UserActionEvent):
        return {"user_id": raw.user_id, "session_id": raw.session_id, "action_type": raw.action_type}
    if not isinstance(raw, Mapping):
        return {"user_id": "", "session_id": "", "action_type": ""}

    def pick(*keys: str) -> str:
        for key in keys:
            value = raw.get(key)
            if value is not None:
                return str(value)
        return ""

    return {
        "user_id": pick("user_id", "userId"),
        "session_id": pick("session_id", "sessionId"),
        "action_type": pick("action_type", "actionType"),
    }
