from fastapi import APIRouter, Body, Depends

from paywall_engine.api.deps import get_engine
from paywall_engine.engine import PaywallEngine
from paywall_engine.paywall.models import utcnow
from paywall_engine.schemas.paywall import PurchaseVerifiedIn, TrialOut, TrialStartIn


router = APIRouter(tags=["trials"])


def _trial_out(engine: PaywallEngine, user_id: str) -> TrialOut:
    now = utcnow()
    trial = engine.store.load(user_id).trial
    return TrialOut(
        user_id=user_id,
        status=trial.status_at(now),
        days_remaining=trial.days_remaining_at(now),
        start_date=trial.start_date,
        duration_days=trial.duration_days,
    )


@router.post("/trials/{user_id}/start", response_model=TrialOut)
def start_trial(
    user_id: str,
    body: TrialStartIn | None = Body(None),
    engine: PaywallEngine = Depends(get_engine),
) -> TrialOut:
    """Start the trial once; repeated calls return the existing trial."""
    engine.start_trial(user_id, body.duration_days if body else None)
    return _trial_out(engine, user_id)


@router.get("/trials/{user_id}", response_model=TrialOut)
def get_trial(user_id: str, engine: PaywallEngine = Depends(get_engine)) -> TrialOut:
    return _trial_out(engine, user_id)


@router.post("/purchases/verified", response_model=TrialOut)
def purchase_verified(body: PurchaseVerifiedIn, engine: PaywallEngine = Depends(get_engine)) -> TrialOut:
    """Called by the receipt-verification layer; converts the user permanently."""
    engine.mark_converted(body.user_id)
    return _trial_out(engine, body.user_id)
