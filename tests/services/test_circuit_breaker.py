"""Circuit breaker listener: gauge + logs on state change."""
import pybreaker
import pytest

from paywall_engine.services.circuit_breaker import build_circuit_breaker
from paywall_engine.utils.metrics import circuit_breaker_state


def _fail():
    raise ConnectionError("down")


def test_opens_after_fail_max(caplog):
    breaker = build_circuit_breaker("test_sink", fail_max=2, reset_timeout=60)
    with pytest.raises(ConnectionError):
        breaker.call(_fail)
    with pytest.raises((ConnectionError, pybreaker.CircuitBreakerError)):
        breaker.call(_fail)
    assert breaker.current_state == pybreaker.STATE_OPEN
    assert circuit_breaker_state.labels(name="test_sink")._value.get() == 1
    assert any(r.message == "circuit_breaker_state_change" for r in caplog.records)
    with pytest.raises(pybreaker.CircuitBreakerError):
        breaker.call(lambda: "ok")


def test_closed_breaker_passes_through():
    breaker = build_circuit_breaker("test_ok", fail_max=2, reset_timeout=60)
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.current_state == pybreaker.STATE_CLOSED
