from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlement_service.application.dto.billing import (
    BillingEvent,
    BillingWebhookInput,
    SubscriptionDetails,
)
from entitlement_service.application.use_cases.admin_override import AdminOverrideUseCase
from entitlement_service.application.use_cases.process_billing_webhook import ProcessBillingWebhookUseCase
from entitlement_service.domain.entities.quota import QuotaPolicy
from entitlement_service.domain.exceptions import (
    BillingProviderError,
    MalformedBillingEventError,
    WebhookSignatureError,
)
from entitlement_service.infrastructure.cache.plan_cache import TtlPlanCache
from entitlement_service.infrastructure.db.repositories.in_memory_entitlement_store import (
    InMemoryEntitlementStore,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 3, 31, 12, 0, tzinfo=timezone.utc)


class FakeBillingProvider:
    def __init__(self):
        self.events: dict[bytes, BillingEvent] = {}
        self.subscriptions: dict[str, SubscriptionDetails] = {}
        self.lookups = 0

    def add_event(self, payload: bytes, event: BillingEvent) -> BillingWebhookInput:
        self.events[payload] = event
        return BillingWebhookInput(signature="t=1,v1=sig", payload=payload)

    def verify_webhook(self, *, signature: str, payload: bytes) -> BillingEvent:
        if signature != "t=1,v1=sig" or payload not in self.events:
            raise WebhookSignatureError("Invalid Stripe webhook signature.")
        return self.events[payload]

    def retrieve_subscription(self, *, subscription_id: str) -> SubscriptionDetails:
        self.lookups += 1
        if subscription_id not in self.subscriptions:
            raise BillingProviderError("Failed to retrieve Stripe subscription.")
        return self.subscriptions[subscription_id]

    def create_checkout_session(self, **kwargs):
        raise NotImplementedError


def _event(event_id: str, event_type: str, *, created_at: datetime = NOW, **overrides) -> BillingEvent:
    values = {
        "customer_ref": "cus_1",
        "user_id": None,
        "subscription_id": "sub_1",
        "plan": None,
        "status": None,
        "period_end": None,
    }
    values.update(overrides)
    return BillingEvent(event_id=event_id, event_type=event_type, created_at=created_at, **values)


def _build():
    store = InMemoryEntitlementStore(degraded=False)
    cache = TtlPlanCache(store=store, ttl_seconds=300)
    provider = FakeBillingProvider()
    provider.subscriptions["sub_1"] = SubscriptionDetails(
        subscription_id="sub_1",
        customer_ref="cus_1",
        status="active",
        price_id="price_gold",
        current_period_end=PERIOD_END,
    )
    use_case = ProcessBillingWebhookUseCase(
        store=store,
        cache=cache,
        billing_provider=provider,
        policy=QuotaPolicy(),
        price_plans={"price_gold": "gold", "price_platinum": "platinum"},
        clock=lambda: NOW,
    )
    return use_case, store, cache, provider


def _checkout(provider: FakeBillingProvider, event_id: str = "evt_checkout", **overrides) -> BillingWebhookInput:
    values = {"user_id": "user-1"}
    values.update(overrides)
    return provider.add_event(
        event_id.encode(),
        _event(event_id, "checkout.session.completed", **values),
    )


def test_checkout_completed_grants_plan_with_provider_period_end():
    use_case, store, _, provider = _build()

    output = use_case.execute(_checkout(provider))

    assert output.handled and output.applied
    assert output.user_id == "user-1"
    row = store.load_or_create(user_id="user-1", now=NOW)
    assert row.plan == "gold"
    assert row.subscription_end_date == PERIOD_END
    assert row.billing_customer_ref == "cus_1"
    assert not row.grandfathered


def test_checkout_replay_is_idempotent():
    use_case, store, _, provider = _build()
    command = _checkout(provider)

    use_case.execute(command)
    first = store.load_or_create(user_id="user-1", now=NOW)
    replay = use_case.execute(command)
    second = store.load_or_create(user_id="user-1", now=NOW)

    assert not replay.applied
    assert second.subscription_end_date == first.subscription_end_date
    assert second.updated_at == first.updated_at


def test_checkout_without_provider_period_end_uses_event_time():
    use_case, store, _, provider = _build()
    provider.subscriptions["sub_1"] = SubscriptionDetails(
        subscription_id="sub_1",
        customer_ref="cus_1",
        status="active",
        price_id=None,
        current_period_end=None,
    )

    use_case.execute(_checkout(provider))

    row = store.load_or_create(user_id="user-1", now=NOW)
    assert row.subscription_end_date == NOW + timedelta(days=30)
    assert row.plan == "gold"


def test_checkout_metadata_plan_wins_over_price_map():
    use_case, store, _, provider = _build()

    use_case.execute(_checkout(provider, plan="platinum"))

    assert store.load_or_create(user_id="user-1", now=NOW).plan == "platinum"


def test_checkout_without_user_id_is_malformed_and_changes_nothing():
    use_case, store, _, provider = _build()

    with pytest.raises(MalformedBillingEventError):
        use_case.execute(_checkout(provider, user_id=None))

    assert store.get_by_billing_customer_ref(customer_ref="cus_1") is None


def test_checkout_without_subscription_is_malformed():
    use_case, _, _, provider = _build()

    with pytest.raises(MalformedBillingEventError):
        use_case.execute(_checkout(provider, subscription_id=None))


def test_invalid_signature_is_rejected_without_mutation():
    use_case, store, _, provider = _build()
    _checkout(provider)

    with pytest.raises(WebhookSignatureError):
        use_case.execute(BillingWebhookInput(signature="t=1,v1=forged", payload=b"evt_checkout"))

    assert store.get_by_billing_customer_ref(customer_ref="cus_1") is None


def test_provider_lookup_failure_propagates():
    use_case, store, _, provider = _build()

    with pytest.raises(BillingProviderError):
        use_case.execute(_checkout(provider, subscription_id="sub_missing"))

    assert store.get_by_billing_customer_ref(customer_ref="cus_1") is None


def test_subscription_deleted_reverts_user_to_free_and_invalidates_cache():
    use_case, store, cache, provider = _build()
    use_case.execute(_checkout(provider))
    assert cache.get(user_id="user-1", now=NOW).plan == "gold"

    deleted = provider.add_event(
        b"evt_deleted",
        _event("evt_deleted", "customer.subscription.deleted", created_at=NOW + timedelta(days=1), status="canceled"),
    )
    output = use_case.execute(deleted)

    assert output.applied
    assert cache.get(user_id="user-1", now=NOW).plan is None
    assert store.load_or_create(user_id="user-1", now=NOW).subscription_end_date is None


def test_past_due_update_is_a_handled_no_op():
    use_case, store, _, provider = _build()
    use_case.execute(_checkout(provider))

    update = provider.add_event(
        b"evt_past_due",
        _event("evt_past_due", "customer.subscription.updated", created_at=NOW + timedelta(days=1), status="past_due"),
    )
    output = use_case.execute(update)

    assert output.handled
    assert not output.applied
    assert store.load_or_create(user_id="user-1", now=NOW).plan == "gold"


def test_unpaid_update_cancels():
    use_case, store, _, provider = _build()
    use_case.execute(_checkout(provider))

    update = provider.add_event(
        b"evt_unpaid",
        _event("evt_unpaid", "customer.subscription.updated", created_at=NOW + timedelta(days=1), status="unpaid"),
    )
    use_case.execute(update)

    assert store.load_or_create(user_id="user-1", now=NOW).plan is None


def test_out_of_order_update_does_not_undo_cancellation():
    use_case, store, _, provider = _build()
    use_case.execute(_checkout(provider))
    deleted = provider.add_event(
        b"evt_deleted",
        _event("evt_deleted", "customer.subscription.deleted", created_at=NOW + timedelta(days=2), status="canceled"),
    )
    late_update = provider.add_event(
        b"evt_update",
        _event("evt_update", "customer.subscription.updated", created_at=NOW + timedelta(days=1), status="active"),
    )

    use_case.execute(deleted)
    output = use_case.execute(late_update)

    assert not output.applied
    assert store.load_or_create(user_id="user-1", now=NOW).plan is None


def test_renewal_extends_subscription_end_date_and_follows_price():
    use_case, store, _, provider = _build()
    use_case.execute(_checkout(provider))
    renewed_end = PERIOD_END + timedelta(days=30)
    provider.subscriptions["sub_1"] = SubscriptionDetails(
        subscription_id="sub_1",
        customer_ref="cus_1",
        status="active",
        price_id="price_platinum",
        current_period_end=renewed_end,
    )
    renewal = provider.add_event(
        b"evt_renewal",
        _event("evt_renewal", "customer.subscription.updated", created_at=NOW + timedelta(days=30), status="active"),
    )

    use_case.execute(renewal)

    row = store.load_or_create(user_id="user-1", now=NOW)
    assert row.subscription_end_date == renewed_end
    assert row.plan == "platinum"


def test_subscription_event_for_unknown_customer_is_a_no_op():
    use_case, _, _, provider = _build()
    update = provider.add_event(
        b"evt_unknown",
        _event("evt_unknown", "customer.subscription.deleted", customer_ref="cus_unknown", status="canceled"),
    )

    output = use_case.execute(update)

    assert output.handled
    assert not output.applied
    assert output.user_id is None


def test_unrelated_event_types_are_not_handled():
    use_case, _, _, provider = _build()
    invoice = provider.add_event(b"evt_invoice", _event("evt_invoice", "invoice.paid"))

    output = use_case.execute(invoice)

    assert not output.handled
    assert provider.lookups == 0


def test_admin_override_wins_over_older_billing_event_and_loses_to_newer():
    use_case, store, cache, provider = _build()
    use_case.execute(_checkout(provider))
    admin = AdminOverrideUseCase(store=store, cache=cache, clock=lambda: NOW + timedelta(hours=1))
    admin.grant(user_id="user-1", plan="platinum")

    stale = provider.add_event(
        b"evt_stale",
        _event("evt_stale", "customer.subscription.deleted", created_at=NOW + timedelta(minutes=30), status="canceled"),
    )
    assert not use_case.execute(stale).applied
    assert store.load_or_create(user_id="user-1", now=NOW).plan == "platinum"

    newer = provider.add_event(
        b"evt_newer",
        _event("evt_newer", "customer.subscription.deleted", created_at=NOW + timedelta(hours=2), status="canceled"),
    )
    assert use_case.execute(newer).applied
    assert store.load_or_create(user_id="user-1", now=NOW).plan is None
