from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from entitlement_service.domain.entities.entitlement import UserEntitlement
from entitlement_service.domain.entities.quota import QuotaPolicy
from entitlement_service.domain.exceptions import InvalidEntitlementPatchError, InvalidPlanError
from entitlement_service.domain.services.entitlements import (
    billing_update_applies,
    cycle_elapsed,
    effective_plan,
    is_subscription_lapsed,
    is_unlimited,
    next_updated_at,
    normalize_plan,
    parse_plan,
    validate_patch,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _entitlement(**overrides) -> UserEntitlement:
    base = UserEntitlement(
        id="user-1",
        plan=None,
        grandfathered=False,
        subscription_end_date=None,
        api_request_count=0,
        api_cycle_start=NOW,
        billing_customer_ref=None,
        billing_event_id=None,
        billing_event_at=None,
        created_at=NOW,
        updated_at=NOW,
    )
    return replace(base, **overrides)


def test_parse_plan_normalizes_case_and_rejects_unknown():
    assert parse_plan(" Gold ") == "gold"
    assert parse_plan(None) is None
    with pytest.raises(InvalidPlanError):
        parse_plan("premium")


def test_normalize_plan_reads_missing_plan_as_free():
    assert normalize_plan(None) == "free"
    assert normalize_plan("platinum") == "platinum"


def test_validate_patch_rejects_unknown_and_invalid_values():
    with pytest.raises(InvalidEntitlementPatchError):
        validate_patch({})
    with pytest.raises(InvalidEntitlementPatchError):
        validate_patch({"id": "other"})
    with pytest.raises(InvalidEntitlementPatchError):
        validate_patch({"api_request_count": -1})
    with pytest.raises(InvalidEntitlementPatchError):
        validate_patch({"api_cycle_start": None})
    with pytest.raises(InvalidPlanError):
        validate_patch({"plan": "diamond"})


def test_gold_with_future_end_date_is_unlimited():
    entitlement = _entitlement(plan="gold", subscription_end_date=NOW + timedelta(days=3))
    assert not is_subscription_lapsed(entitlement, now=NOW)
    assert is_unlimited(entitlement, now=NOW)


def test_gold_with_past_end_date_is_lapsed_and_metered_as_free():
    entitlement = _entitlement(plan="gold", subscription_end_date=NOW - timedelta(seconds=1))
    assert is_subscription_lapsed(entitlement, now=NOW)
    assert effective_plan(entitlement, now=NOW) == "free"
    assert not is_unlimited(entitlement, now=NOW)


def test_gold_without_end_date_is_unlimited():
    assert is_unlimited(_entitlement(plan="gold"), now=NOW)


def test_platinum_and_grandfathered_ignore_end_date():
    past = NOW - timedelta(days=10)
    assert is_unlimited(_entitlement(plan="platinum", subscription_end_date=past), now=NOW)
    assert is_unlimited(_entitlement(grandfathered=True, subscription_end_date=past), now=NOW)


def test_free_user_is_metered_with_default_policy_limit():
    entitlement = _entitlement()
    policy = QuotaPolicy()
    assert not is_unlimited(entitlement, now=NOW)
    assert policy.limit_for(effective_plan(entitlement, now=NOW)) == 250


def test_cycle_elapsed_at_exact_cycle_length():
    policy = QuotaPolicy()
    entitlement = _entitlement(api_cycle_start=NOW - timedelta(days=30))
    assert cycle_elapsed(entitlement, now=NOW, cycle_length=policy.cycle_length)
    assert not cycle_elapsed(
        _entitlement(api_cycle_start=NOW - timedelta(days=29)),
        now=NOW,
        cycle_length=policy.cycle_length,
    )


def test_next_updated_at_is_strictly_increasing():
    assert next_updated_at(None, NOW) == NOW
    assert next_updated_at(NOW - timedelta(seconds=1), NOW) == NOW
    assert next_updated_at(NOW, NOW) == NOW + timedelta(microseconds=1)
    assert next_updated_at(NOW + timedelta(seconds=5), NOW) == NOW + timedelta(seconds=5, microseconds=1)


def test_billing_update_applies_orders_by_event_time_and_id():
    assert billing_update_applies(None, event_id="evt_1", event_at=NOW)

    applied = _entitlement(billing_event_id="evt_1", billing_event_at=NOW)
    assert not billing_update_applies(applied, event_id="evt_1", event_at=NOW)
    assert not billing_update_applies(applied, event_id="evt_0", event_at=NOW - timedelta(seconds=1))
    assert billing_update_applies(applied, event_id="evt_2", event_at=NOW)
    assert billing_update_applies(applied, event_id="evt_3", event_at=NOW + timedelta(seconds=1))
