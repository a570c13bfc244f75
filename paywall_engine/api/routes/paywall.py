from typing import Any

from fastapi import APIRouter, Body, Depends, status

from paywall_engine.api.deps import get_engine
from paywall_engine.engine import PaywallEngine
from paywall_engine.paywall.models import ConversionOutcome, PaywallDecision, UserSession, ensure_utc
from paywall_engine.schemas.paywall import OfferOut, OutcomeAccepted, SessionEnded, SessionIn


router = APIRouter(tags=["paywall"])


@router.post("/paywall/decisions", response_model=PaywallDecision)
def decide(
    payload: dict[str, Any] = Body(...),
    engine: PaywallEngine = Depends(get_engine),
) -> PaywallDecision:
    """
    Evaluate one user action. The raw body goes to the engine as-is: malformed
    events still get a (no-show) decision instead of a 422.
    """
    return engine.handle_action(payload)


@router.post("/paywall/outcomes", response_model=OutcomeAccepted, status_code=status.HTTP_202_ACCEPTED)
def record_outcome(
    outcome: ConversionOutcome,
    engine: PaywallEngine = Depends(get_engine),
) -> OutcomeAccepted:
    queued = engine.record_outcome(outcome)
    return OutcomeAccepted(event_id=outcome.event_id, queued=queued)


@router.post("/offers/{user_id}/select", response_model=OfferOut)
def select_offer(user_id: str, engine: PaywallEngine = Depends(get_engine)) -> OfferOut:
    return OfferOut(user_id=user_id, offer=engine.select_offer(user_id))


@router.post("/sessions/start", response_model=UserSession)
def start_session(body: SessionIn, engine: PaywallEngine = Depends(get_engine)) -> UserSession:
    """App launch: open a session so later actions accumulate into it."""
    started_at = ensure_utc(body.started_at) if body.started_at else None
    return engine.start_session(body.user_id, body.session_id, started_at)


@router.post("/sessions/end", response_model=SessionEnded)
def end_session(body: SessionIn, engine: PaywallEngine = Depends(get_engine)) -> SessionEnded:
    return SessionEnded(session_id=body.session_id, ended=engine.end_session(body.user_id, body.session_id))
