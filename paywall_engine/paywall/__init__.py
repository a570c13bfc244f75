"""
Paywall decision engine (internal library).
Components live in submodules (trial, engagement, experiments, offers, evaluator,
emitter); the package exports the shared contract types only.
"""
from paywall_engine.paywall.errors import (
    DecisionTimeoutError,
    PaywallEngineError,
    SinkDeliveryError,
    StateConflictError,
    StateUnavailableError,
)
from paywall_engine.paywall.models import (
    ActionType,
    ConversionOutcome,
    DecisionContext,
    DecisionRecord,
    EngagementLevel,
    Offer,
    OutcomeType,
    PaywallDecision,
    TrialState,
    TrialStatus,
    UserActionEvent,
    UserRecord,
    UserSession,
)

__all__ = [
    "ActionType",
    "ConversionOutcome",
    "DecisionContext",
    "DecisionRecord",
    "EngagementLevel",
    "Offer",
    "OutcomeType",
    "PaywallDecision",
    "TrialState",
    "TrialStatus",
    "UserActionEvent",
    "UserRecord",
    "UserSession",
    "PaywallEngineError",
    "StateUnavailableError",
    "StateConflictError",
    "DecisionTimeoutError",
    "SinkDeliveryError",
]
