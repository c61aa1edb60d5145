from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class CreateCheckoutSessionRequest(BaseModel):
    plan: Literal["gold", "platinum"]


class CreateCheckoutSessionResponse(BaseModel):
    checkout_session_id: str
    checkout_url: str


class BillingWebhookResponse(BaseModel):
    event_id: str
    event_type: str
    handled: bool
    applied: bool


class CancelSubscriptionResponse(BaseModel):
    success: bool
    message: str
    plan: str
    cancel_at_period_end: bool
    current_period_end: datetime | None
    degraded: bool = False
