from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from entitlement_service.application.dto.billing import CancelSubscriptionOutput
from entitlement_service.application.ports.billing_provider_port import BillingProviderPort
from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import PAID_PLANS
from entitlement_service.domain.exceptions import (
    BillingProviderError,
    EntitlementStoreUnavailableError,
    NoActiveSubscriptionError,
)
from entitlement_service.domain.services.entitlements import normalize_plan

from .common import utcnow


logger = logging.getLogger(__name__)


class CancelSubscriptionUseCase:
    """Stop a paid subscription from renewing.

    The plan stays in force until the current period ends. The period end
    reported by the provider becomes the user's ``subscription_end_date``; the
    provider's deletion event reverts the plan once the period is over.
    """

    def __init__(
        self,
        *,
        store: EntitlementStorePort,
        cache: PlanCachePort,
        billing_provider: BillingProviderPort,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._billing_provider = billing_provider
        self._clock = clock

    def execute(self, *, user_id: str) -> CancelSubscriptionOutput:
        now = self._clock()
        entitlement = self._store.load_or_create(user_id=user_id, now=now)
        if entitlement.degraded:
            raise EntitlementStoreUnavailableError("Entitlement store is unavailable.")
        if entitlement.plan not in PAID_PLANS or not entitlement.billing_customer_ref:
            raise NoActiveSubscriptionError("No active subscription found.")

        details = self._billing_provider.cancel_at_period_end(customer_ref=entitlement.billing_customer_ref)
        if details is None:
            raise NoActiveSubscriptionError("No active subscription found.")
        if details.current_period_end is None:
            raise BillingProviderError("Billing provider did not report the current period end.")

        written = self._store.write(
            user_id=user_id,
            patch={"subscription_end_date": details.current_period_end},
            now=now,
            expected={"plan": entitlement.plan},
        )
        self._cache.invalidate(user_id=user_id)
        if written is None:
            logger.warning("cancel_subscription: plan_changed user_id=%s", user_id)
            written = self._store.load_or_create(user_id=user_id, now=now)
        else:
            logger.info(
                "cancel_subscription: scheduled user_id=%s subscription_id=%s current_period_end=%s",
                user_id,
                details.subscription_id,
                details.current_period_end.isoformat(),
            )

        return CancelSubscriptionOutput(
            user_id=user_id,
            plan=normalize_plan(written.plan),
            cancel_at_period_end=True,
            subscription_end_date=written.subscription_end_date,
            degraded=written.degraded,
        )
