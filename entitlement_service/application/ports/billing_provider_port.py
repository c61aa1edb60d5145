from __future__ import annotations

from typing import Protocol

from entitlement_service.application.dto.billing import (
    BillingEvent,
    CheckoutSessionResult,
    SubscriptionDetails,
)


class BillingProviderPort(Protocol):
    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_ref: str | None,
    ) -> CheckoutSessionResult:
        ...

    def verify_webhook(self, *, signature: str, payload: bytes) -> BillingEvent:
        ...

    def retrieve_subscription(self, *, subscription_id: str) -> SubscriptionDetails:
        ...

    def cancel_at_period_end(self, *, customer_ref: str) -> SubscriptionDetails | None:
        ...
