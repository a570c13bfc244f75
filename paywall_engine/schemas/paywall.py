from datetime import datetime

from pydantic import BaseModel, Field

from paywall_engine.paywall.models import Offer, TrialStatus


class TrialStartIn(BaseModel):
    duration_days: int | None = Field(None, ge=0)


class TrialOut(BaseModel):
    user_id: str
    status: TrialStatus
    days_remaining: int
    start_date: datetime | None = None
    duration_days: int | None = None


class PurchaseVerifiedIn(BaseModel):
    user_id: str = Field(..., min_length=1)


class OfferOut(BaseModel):
    user_id: str
    offer: Offer | None = None


class OutcomeAccepted(BaseModel):
    event_id: str
    queued: bool


class SessionIn(BaseModel):
    user_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    started_at: datetime | None = None


class SessionEnded(BaseModel):
    session_id: str
    ended: bool
