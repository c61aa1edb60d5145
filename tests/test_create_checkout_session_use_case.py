from __future__ import annotations

from datetime import datetime, timezone

import pytest

from entitlement_service.application.dto.billing import CheckoutSessionResult, CreateCheckoutSessionInput
from entitlement_service.application.use_cases.create_checkout_session import CreateCheckoutSessionUseCase
from entitlement_service.domain.exceptions import InvalidPlanError
from entitlement_service.infrastructure.cache.plan_cache import TtlPlanCache
from entitlement_service.infrastructure.db.repositories.in_memory_entitlement_store import (
    InMemoryEntitlementStore,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeBillingProvider:
    def __init__(self):
        self.calls = []

    def create_checkout_session(self, **kwargs) -> CheckoutSessionResult:
        self.calls.append(kwargs)
        return CheckoutSessionResult(id="cs_1", url="https://checkout.stripe.com/c/cs_1")


def _command(plan: str) -> CreateCheckoutSessionInput:
    return CreateCheckoutSessionInput(
        user_id="user-1",
        plan=plan,
        success_url="https://app.example.com/billing/success",
        cancel_url="https://app.example.com/pricing",
    )


def _build():
    store = InMemoryEntitlementStore(degraded=False)
    provider = FakeBillingProvider()
    use_case = CreateCheckoutSessionUseCase(
        cache=TtlPlanCache(store=store, ttl_seconds=300),
        billing_provider=provider,
        plan_prices={"gold": "price_gold", "platinum": "price_platinum"},
    )
    return use_case, store, provider


def test_checkout_session_uses_configured_price_and_existing_customer():
    use_case, store, provider = _build()
    store.load_or_create(user_id="user-1", now=NOW)
    store.write(user_id="user-1", patch={"billing_customer_ref": "cus_1"}, now=NOW)

    output = use_case.execute(_command("gold"))

    assert output.checkout_session_id == "cs_1"
    assert output.checkout_url.startswith("https://checkout.stripe.com/")
    assert provider.calls[0]["price_id"] == "price_gold"
    assert provider.calls[0]["customer_ref"] == "cus_1"
    assert provider.calls[0]["plan"] == "gold"


def test_checkout_session_rejects_free_and_unpriced_plans():
    use_case, _, provider = _build()
    with pytest.raises(InvalidPlanError):
        use_case.execute(_command("free"))

    unpriced = CreateCheckoutSessionUseCase(
        cache=TtlPlanCache(store=InMemoryEntitlementStore(degraded=False), ttl_seconds=300),
        billing_provider=provider,
        plan_prices={"gold": "price_gold"},
    )
    with pytest.raises(InvalidPlanError):
        unpriced.execute(_command("platinum"))
    assert provider.calls == []
