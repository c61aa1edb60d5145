from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CreateCheckoutSessionInput:
    user_id: str
    plan: str
    success_url: str
    cancel_url: str


@dataclass(frozen=True)
class CreateCheckoutSessionOutput:
    checkout_session_id: str
    checkout_url: str


@dataclass(frozen=True)
class BillingWebhookInput:
    signature: str
    payload: bytes


@dataclass(frozen=True)
class BillingWebhookOutput:
    event_id: str
    event_type: str
    handled: bool
    applied: bool
    user_id: str | None


@dataclass(frozen=True)
class CheckoutSessionResult:
    id: str
    url: str


@dataclass(frozen=True)
class SubscriptionDetails:
    subscription_id: str
    customer_ref: str | None
    status: str
    price_id: str | None
    current_period_end: datetime | None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class BillingEvent:
    event_id: str
    event_type: str
    created_at: datetime
    customer_ref: str | None
    user_id: str | None
    subscription_id: str | None
    plan: str | None
    status: str | None
    period_end: datetime | None


@dataclass(frozen=True)
class CancelSubscriptionOutput:
    user_id: str
    plan: str
    cancel_at_period_end: bool
    subscription_end_date: datetime | None
    degraded: bool
