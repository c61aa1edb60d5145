from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, Mapping

from entitlement_service.application.dto.billing import (
    BillingEvent,
    BillingWebhookInput,
    BillingWebhookOutput,
)
from entitlement_service.application.ports.billing_provider_port import BillingProviderPort
from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import PAID_PLANS
from entitlement_service.domain.entities.quota import QuotaPolicy
from entitlement_service.domain.exceptions import MalformedBillingEventError

from .common import utcnow


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

CANCELED_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})
ACTIVE_STATUSES = frozenset({"active", "trialing"})


class ProcessBillingWebhookUseCase:
    """Apply verified billing provider events to user entitlements.

    Checkout events find the user through the id carried in the session
    metadata. Subscription events find the user through the stored billing
    customer reference. Every transition goes through the store's guarded
    billing upsert, so replays and stale deliveries are no-ops.
    """

    def __init__(
        self,
        *,
        store: EntitlementStorePort,
        cache: PlanCachePort,
        billing_provider: BillingProviderPort,
        policy: QuotaPolicy,
        price_plans: Mapping[str, str],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._billing_provider = billing_provider
        self._policy = policy
        self._price_plans = dict(price_plans)
        self._clock = clock

    def execute(self, command: BillingWebhookInput) -> BillingWebhookOutput:
        event = self._billing_provider.verify_webhook(signature=command.signature, payload=command.payload)
        logger.info("billing_webhook: received event_id=%s type=%s", event.event_id, event.event_type)

        if event.event_type == CHECKOUT_COMPLETED:
            return self._apply_checkout(event)
        if event.event_type in {SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}:
            return self._apply_subscription_change(event)

        return BillingWebhookOutput(
            event_id=event.event_id,
            event_type=event.event_type,
            handled=False,
            applied=False,
            user_id=None,
        )

    def _apply_checkout(self, event: BillingEvent) -> BillingWebhookOutput:
        if not event.user_id:
            logger.error("billing_webhook: missing_user_id event_id=%s", event.event_id)
            raise MalformedBillingEventError("Checkout event carries no user id.")
        if not event.subscription_id:
            logger.error("billing_webhook: missing_subscription event_id=%s user_id=%s", event.event_id, event.user_id)
            raise MalformedBillingEventError("Checkout event carries no subscription id.")

        details = self._billing_provider.retrieve_subscription(subscription_id=event.subscription_id)
        # Deterministic per event, never the wall clock.
        period_end = details.current_period_end or event.created_at + self._policy.cycle_length

        plan = self._resolve_plan(
            price_id=details.price_id,
            metadata_plan=event.plan,
            current_plan=None,
            prefer_metadata=True,
        )
        patch = {
            "plan": plan,
            "subscription_end_date": period_end,
            "grandfathered": False,
        }
        customer_ref = event.customer_ref or details.customer_ref
        if customer_ref:
            patch["billing_customer_ref"] = customer_ref

        return self._apply(event, user_id=event.user_id, patch=patch)

    def _apply_subscription_change(self, event: BillingEvent) -> BillingWebhookOutput:
        if not event.customer_ref:
            logger.error("billing_webhook: missing_customer event_id=%s", event.event_id)
            raise MalformedBillingEventError("Subscription event carries no customer reference.")

        entitlement = self._store.get_by_billing_customer_ref(customer_ref=event.customer_ref)
        if entitlement is None:
            logger.warning(
                "billing_webhook: unknown_customer event_id=%s customer_ref=%s",
                event.event_id,
                event.customer_ref,
            )
            return BillingWebhookOutput(
                event_id=event.event_id,
                event_type=event.event_type,
                handled=True,
                applied=False,
                user_id=None,
            )

        if event.event_type == SUBSCRIPTION_DELETED or event.status in CANCELED_STATUSES:
            patch = {"plan": None, "subscription_end_date": None}
        elif event.status in ACTIVE_STATUSES:
            price_id = None
            period_end = event.period_end
            if event.subscription_id:
                details = self._billing_provider.retrieve_subscription(subscription_id=event.subscription_id)
                price_id = details.price_id
                period_end = details.current_period_end or period_end
            patch = {
                "plan": self._resolve_plan(
                    price_id=price_id,
                    metadata_plan=event.plan,
                    current_plan=entitlement.plan,
                    prefer_metadata=False,
                ),
                "subscription_end_date": period_end or event.created_at + self._policy.cycle_length,
            }
        else:
            logger.info(
                "billing_webhook: status_ignored event_id=%s user_id=%s status=%s",
                event.event_id,
                entitlement.id,
                event.status,
            )
            return BillingWebhookOutput(
                event_id=event.event_id,
                event_type=event.event_type,
                handled=True,
                applied=False,
                user_id=entitlement.id,
            )

        return self._apply(event, user_id=entitlement.id, patch=patch)

    def _apply(self, event: BillingEvent, *, user_id: str, patch: dict) -> BillingWebhookOutput:
        updated = self._store.apply_billing_update(
            user_id=user_id,
            patch=patch,
            event_id=event.event_id,
            event_at=event.created_at,
            now=self._clock(),
        )
        self._cache.invalidate(user_id=user_id)

        if updated is None:
            logger.warning(
                "billing_webhook: stale_or_duplicate event_id=%s user_id=%s",
                event.event_id,
                user_id,
            )
        else:
            logger.info(
                "billing_webhook: applied event_id=%s user_id=%s plan=%s subscription_end_date=%s",
                event.event_id,
                user_id,
                updated.plan,
                updated.subscription_end_date.isoformat() if updated.subscription_end_date else None,
            )
        return BillingWebhookOutput(
            event_id=event.event_id,
            event_type=event.event_type,
            handled=True,
            applied=updated is not None,
            user_id=user_id,
        )

    def _resolve_plan(
        self,
        *,
        price_id: str | None,
        metadata_plan: str | None,
        current_plan: str | None,
        prefer_metadata: bool,
    ) -> str:
        from_metadata = (metadata_plan or "").strip().lower()
        from_metadata = from_metadata if from_metadata in PAID_PLANS else None
        from_price = self._price_plans.get(price_id) if price_id else None
        ordered = (from_metadata, from_price) if prefer_metadata else (from_price, from_metadata)
        for candidate in (*ordered, current_plan):
            if candidate in PAID_PLANS:
                return candidate
        return "gold"
