from __future__ import annotations

from typing import Mapping

from entitlement_service.application.dto.billing import CreateCheckoutSessionInput, CreateCheckoutSessionOutput
from entitlement_service.application.ports.billing_provider_port import BillingProviderPort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import PAID_PLANS
from entitlement_service.domain.exceptions import InvalidPlanError

from .common import utcnow


class CreateCheckoutSessionUseCase:
    def __init__(
        self,
        *,
        cache: PlanCachePort,
        billing_provider: BillingProviderPort,
        plan_prices: Mapping[str, str],
    ):
        self._cache = cache
        self._billing_provider = billing_provider
        self._plan_prices = dict(plan_prices)

    def execute(self, command: CreateCheckoutSessionInput) -> CreateCheckoutSessionOutput:
        plan = command.plan.strip().lower()
        if plan not in PAID_PLANS:
            raise InvalidPlanError(f"Plan '{command.plan}' cannot be purchased.")
        price_id = self._plan_prices.get(plan)
        if not price_id:
            raise InvalidPlanError(f"No price is configured for plan '{plan}'.")

        entitlement = self._cache.get(user_id=command.user_id, now=utcnow())
        result = self._billing_provider.create_checkout_session(
            user_id=command.user_id,
            plan=plan,
            price_id=price_id,
            success_url=command.success_url,
            cancel_url=command.cancel_url,
            customer_ref=entitlement.billing_customer_ref,
        )
        return CreateCheckoutSessionOutput(
            checkout_session_id=result.id,
            checkout_url=result.url,
        )
