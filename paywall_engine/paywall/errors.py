"""
Engine exceptions. None of them reach the caller of a decision: the evaluator
maps each one to a conservative no-show decision.
"""


class PaywallEngineError(Exception):
    """Base class for engine errors."""


class StateUnavailableError(PaywallEngineError):
    """The per-user record could not be read or written (backend down, timeout)."""


class StateConflictError(PaywallEngineError):
    """Optimistic write lost the race more times than allowed."""

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(f"state write conflict for {user_id} after {attempts} attempts")
        self.user_id = user_id
        self.attempts = attempts


class DecisionTimeoutError(PaywallEngineError):
    """The decision could not be committed within the latency budget."""


class SinkDeliveryError(PaywallEngineError):
    """Analytics sink rejected or failed to accept an event."""
