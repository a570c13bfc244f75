"""
DTO paywall engine: inbound UserActionEvent, persisted UserRecord (trial, offer,
session counters), DecisionRecord (audit) and PaywallDecision (caller-facing).
All datetimes are timezone-aware UTC.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC; aware ones are converted to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----- Closed enumerations -----


class ActionType(str, Enum):
    EXPORT = "export"
    ADVANCED_FEATURE = "advancedFeature"
    SAVE = "save"
    SHARE = "share"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: object) -> ActionType | None:
        """Return the matching member or None for anything unrecognized."""
        if isinstance(raw, cls):
            return raw
        try:
            return cls(raw)
        except ValueError:
            return None


class EngagementLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _ENGAGEMENT_RANK[self]

    def at_least(self, other: EngagementLevel) -> bool:
        return self.rank >= other.rank


_ENGAGEMENT_RANK = {
    EngagementLevel.LOW: 0,
    EngagementLevel.MEDIUM: 1,
    EngagementLevel.HIGH: 2,
}


class TrialStatus(str, Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"


class DecisionContext(str, Enum):
    """Reason code attached to every decision."""

    SHOWN = "shown"
    CONVERTED = "converted"
    BELOW_THRESHOLD = "below_threshold"
    UNSUPPORTED_ACTION = "unsupported_action"
    RATE_LIMITED = "rate_limited"
    INVALID_EVENT = "invalid_event"
    STATE_CONFLICT = "state_conflict"
    STATE_UNAVAILABLE = "state_unavailable"
    LATENCY_BUDGET_EXCEEDED = "latency_budget_exceeded"
    STATE_RECOVERED = "state_recovered"
    INTERNAL_ERROR = "internal_error"


class OutcomeType(str, Enum):
    PURCHASED = "purchased"
    DISMISSED = "dismissed"
    OFFER_REDEEMED = "offer_redeemed"


# ----- Input -----


class UserActionEvent(BaseModel):
    """Inbound user action. actionType is kept raw; the evaluator maps it to ActionType."""

    user_id: str = Field(..., min_length=1, alias="userId")
    session_id: str = Field(..., min_length=1, alias="sessionId")
    action_type: str = Field(..., alias="actionType")
    timestamp: datetime = Field(default_factory=utcnow)
    # When the client knows the session began earlier than its first reported action.
    session_start_time: datetime | None = Field(None, alias="sessionStartTime")

    model_config = {"frozen": True, "populate_by_name": True}

    @field_validator("timestamp", "session_start_time")
    @classmethod
    def _utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


# ----- Session / trial / offer state -----


class UserSession(BaseModel):
    """Counters of one app session. Kept on the user record while the id is remembered."""

    user_id: str
    session_id: str
    session_start_time: datetime
    action_count: int = 0
    last_action_at: datetime
    ended_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.last_action_at - self.session_start_time).total_seconds())


class TrialState(BaseModel):
    """
    Persisted trial. Only NOT_STARTED, ACTIVE and CONVERTED are ever stored;
    EXPIRED is derived from the clock in status_at().
    """

    status: TrialStatus = TrialStatus.NOT_STARTED
    start_date: datetime | None = None
    duration_days: int | None = Field(None, ge=0)
    converted_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def ends_at(self) -> datetime | None:
        if self.start_date is None or self.duration_days is None:
            return None
        return self.start_date + timedelta(days=self.duration_days)

    def status_at(self, now: datetime) -> TrialStatus:
        if self.status == TrialStatus.CONVERTED:
            return TrialStatus.CONVERTED
        ends_at = self.ends_at
        if self.status == TrialStatus.NOT_STARTED or ends_at is None:
            return TrialStatus.NOT_STARTED
        if now >= ends_at:
            return TrialStatus.EXPIRED
        return TrialStatus.ACTIVE

    def days_remaining_at(self, now: datetime) -> int:
        ends_at = self.ends_at
        if self.status != TrialStatus.ACTIVE or ends_at is None:
            return 0
        remaining = (ends_at - now) / timedelta(days=1)
        return max(0, math.ceil(remaining))


class Offer(BaseModel):
    discount_percent: int = Field(..., gt=0, lt=100)
    created_at: datetime
    expires_at: datetime
    cooldown_until: datetime

    model_config = {"frozen": True}

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now


class ExperimentAssignment(BaseModel):
    """Derived on every request, never persisted."""

    user_id: str
    experiment_id: str
    variant: int

    model_config = {"frozen": True}


class UserRecord(BaseModel):
    """
    Persisted per-user state. version is the optimistic concurrency token:
    the store bumps it on every successful write.
    """

    user_id: str
    version: int = 0
    trial: TrialState = Field(default_factory=TrialState)
    last_offer_at: datetime | None = None
    last_offer_cooldown_until: datetime | None = None
    current_offer: Offer | None = None
    last_paywall_shown_at: datetime | None = None
    export_count: int = Field(0, ge=0)
    save_count: int = Field(0, ge=0)
    session_count: int = Field(0, ge=0)
    # Known sessions by id, bounded by session_history_limit (least recently active evicted).
    sessions: dict[str, UserSession] = Field(default_factory=dict)
    current_session_id: str | None = None
    # Set by the store when stored data was unusable and this is a fresh record; never persisted.
    recovered: bool = Field(False, exclude=True)

    model_config = {"frozen": True}

    @property
    def session(self) -> UserSession | None:
        """The most recently active session, None after it was ended."""
        if self.current_session_id is None:
            return None
        return self.sessions.get(self.current_session_id)


# ----- Output -----


class PaywallDecision(BaseModel):
    """Caller-facing result of one action event."""

    show: bool
    variant: str | None = None
    offer: Offer | None = None
    context: str
    event_id: str

    model_config = {"frozen": True}


class DecisionRecord(BaseModel):
    """Auditable record of one decision; event_id is the sink's deduplication key."""

    event_id: str
    user_id: str
    session_id: str
    action_type: str
    show: bool
    variant: str | None = None
    offer: Offer | None = None
    context: DecisionContext
    engagement_level: EngagementLevel | None = None
    trial_status: TrialStatus | None = None
    timestamp: datetime

    model_config = {"frozen": True}

    @property
    def idempotency_key(self) -> str:
        return self.event_id

    def to_decision(self) -> PaywallDecision:
        return PaywallDecision(
            show=self.show,
            variant=self.variant,
            offer=self.offer,
            context=self.context.value,
            event_id=self.event_id,
        )


class ConversionOutcome(BaseModel):
    """Later outcome of a shown paywall, addressed by the decision's event_id."""

    event_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    outcome: OutcomeType
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def idempotency_key(self) -> str:
        return f"{self.event_id}:{self.outcome.value}"
