from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any

import stripe

from entitlement_service.application.dto.billing import (
    BillingEvent,
    CheckoutSessionResult,
    SubscriptionDetails,
)
from entitlement_service.application.ports.billing_provider_port import BillingProviderPort
from entitlement_service.domain.exceptions import (
    BillingProviderError,
    MalformedBillingEventError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})


class StripeClient(BillingProviderPort):
    def __init__(self, *, secret_key: str, webhook_secret: str, timeout_seconds: float = 10):
        stripe.api_key = secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.new_default_http_client(timeout=timeout_seconds)
        self._webhook_secret = webhook_secret

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
        payload: dict = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id, "plan": plan},
            "subscription_data": {"metadata": {"user_id": user_id, "plan": plan}},
        }
        if customer_ref:
            payload["customer"] = customer_ref

        try:
            session = stripe.checkout.Session.create(**payload)
        except stripe.StripeError as exc:
            logger.error("stripe_client: checkout_session_failed user_id=%s error=%s", user_id, exc)
            raise BillingProviderError("Failed to create Stripe checkout session.") from exc

        session_id = getattr(session, "id", None)
        session_url = getattr(session, "url", None)
        if not session_id or not session_url:
            raise BillingProviderError("Stripe checkout session response is incomplete.")

        return CheckoutSessionResult(id=str(session_id), url=str(session_url))

    def verify_webhook(self, *, signature: str, payload: bytes) -> BillingEvent:
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.warning("stripe_client: webhook_rejected error=%s", exc.__class__.__name__)
            raise WebhookSignatureError("Invalid Stripe webhook signature.") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise MalformedBillingEventError("Stripe webhook payload is not valid JSON.") from exc
        return parse_event(event)

    def retrieve_subscription(self, *, subscription_id: str) -> SubscriptionDetails:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_client: subscription_lookup_failed subscription_id=%s error=%s",
                subscription_id,
                exc,
            )
            raise BillingProviderError("Failed to retrieve Stripe subscription.") from exc
        return _subscription_details(_as_dict(subscription))

    def cancel_at_period_end(self, *, customer_ref: str) -> SubscriptionDetails | None:
        try:
            listing = _as_dict(stripe.Subscription.list(customer=customer_ref, limit=10))
            subscription_id = next(
                (_ref(item) for item in listing.get("data") or [] if item.get("status") in ACTIVE_STATUSES),
                None,
            )
            if subscription_id is None:
                return None
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_client: subscription_cancel_failed customer_ref=%s error=%s",
                customer_ref,
                exc,
            )
            raise BillingProviderError("Failed to cancel Stripe subscription.") from exc
        return _subscription_details(_as_dict(subscription))


def parse_event(event: dict) -> BillingEvent:
    event_id = event.get("id")
    event_type = event.get("type")
    created = event.get("created")
    if not event_id or not event_type or created is None:
        raise MalformedBillingEventError("Stripe event is missing id, type or created.")

    data_object = (event.get("data") or {}).get("object") or {}
    metadata = data_object.get("metadata") or {}

    if event_type == "checkout.session.completed":
        return BillingEvent(
            event_id=str(event_id),
            event_type=str(event_type),
            created_at=_to_datetime(created),
            customer_ref=_ref(data_object.get("customer")),
            user_id=metadata.get("user_id") or metadata.get("userId") or data_object.get("client_reference_id"),
            subscription_id=_ref(data_object.get("subscription")),
            plan=metadata.get("plan"),
            status=data_object.get("status"),
            period_end=None,
        )

    if event_type.startswith("customer.subscription."):
        details = _subscription_details(data_object)
        return BillingEvent(
            event_id=str(event_id),
            event_type=str(event_type),
            created_at=_to_datetime(created),
            customer_ref=details.customer_ref,
            user_id=metadata.get("user_id") or metadata.get("userId"),
            subscription_id=details.subscription_id,
            plan=metadata.get("plan"),
            status=details.status,
            period_end=details.current_period_end,
        )

    return BillingEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        created_at=_to_datetime(created),
        customer_ref=_ref(data_object.get("customer")),
        user_id=None,
        subscription_id=None,
        plan=None,
        status=None,
        period_end=None,
    )


def _subscription_details(data: dict) -> SubscriptionDetails:
    items = (data.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}
    period_end = data.get("current_period_end")
    if period_end is None:
        # Newer API versions carry the period on the subscription item.
        period_end = first_item.get("current_period_end")
    return SubscriptionDetails(
        subscription_id=str(data.get("id") or ""),
        customer_ref=_ref(data.get("customer")),
        status=str(data.get("status") or ""),
        price_id=price.get("id") if isinstance(price, dict) else _ref(price),
        current_period_end=_to_datetime(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
    )


def _as_dict(obj: Any) -> dict:
    if type(obj) is dict:
        return obj
    for method in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, method, None)
        if callable(converter):
            return converter()
    return json.loads(str(obj))


def _ref(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    elif not isinstance(value, str):
        value = getattr(value, "id", value)
    return str(value) if value else None


def _to_datetime(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
