from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping

from entitlement_service.domain.entities.entitlement import PLAN_TIERS, PlanTier, UserEntitlement
from entitlement_service.domain.exceptions import InvalidEntitlementPatchError, InvalidPlanError


WRITABLE_FIELDS = frozenset(
    {
        "plan",
        "grandfathered",
        "subscription_end_date",
        "api_request_count",
        "api_cycle_start",
        "billing_customer_ref",
        "billing_event_id",
        "billing_event_at",
    }
)


def parse_plan(value: str | None) -> PlanTier | None:
    """Validate a plan value for writing. ``None`` stays ``None``."""
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized not in PLAN_TIERS:
        raise InvalidPlanError(f"Unknown plan '{value}'. Expected one of {', '.join(PLAN_TIERS)}.")
    return normalized  # type: ignore[return-value]


def normalize_plan(value: str | None) -> PlanTier:
    parsed = parse_plan(value)
    return parsed if parsed is not None else "free"


def validate_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    if not patch:
        raise InvalidEntitlementPatchError("Patch is empty.")
    unknown = set(patch) - WRITABLE_FIELDS
    if unknown:
        raise InvalidEntitlementPatchError(f"Patch has non-writable fields: {sorted(unknown)}")

    cleaned = dict(patch)
    if "plan" in cleaned:
        cleaned["plan"] = parse_plan(cleaned["plan"])
    if "api_request_count" in cleaned:
        count = cleaned["api_request_count"]
        if not isinstance(count, int) or count < 0:
            raise InvalidEntitlementPatchError("api_request_count must be a non-negative integer.")
    if "api_cycle_start" in cleaned and cleaned["api_cycle_start"] is None:
        raise InvalidEntitlementPatchError("api_cycle_start cannot be null.")
    if "grandfathered" in cleaned:
        cleaned["grandfathered"] = bool(cleaned["grandfathered"])
    return cleaned


def is_subscription_lapsed(entitlement: UserEntitlement, *, now: datetime) -> bool:
    # Platinum and grandfathered users are unlimited regardless of the end date.
    if entitlement.plan != "gold":
        return False
    end = entitlement.subscription_end_date
    return end is not None and end <= now


def effective_plan(entitlement: UserEntitlement, *, now: datetime) -> PlanTier:
    if is_subscription_lapsed(entitlement, now=now):
        return "free"
    return normalize_plan(entitlement.plan)


def is_unlimited(entitlement: UserEntitlement, *, now: datetime) -> bool:
    if entitlement.grandfathered:
        return True
    return effective_plan(entitlement, now=now) in {"gold", "platinum"}


def cycle_elapsed(entitlement: UserEntitlement, *, now: datetime, cycle_length: timedelta) -> bool:
    return now - entitlement.api_cycle_start >= cycle_length


def next_cycle_reset(entitlement: UserEntitlement, *, cycle_length: timedelta) -> datetime:
    return entitlement.api_cycle_start + cycle_length


def next_updated_at(previous: datetime | None, now: datetime) -> datetime:
    """``updated_at`` for a write: ``now``, bumped past ``previous`` if the clock did not move."""
    if previous is None or now > previous:
        return now
    return previous + timedelta(microseconds=1)


def billing_update_applies(
    entitlement: UserEntitlement | None,
    *,
    event_id: str,
    event_at: datetime,
) -> bool:
    if entitlement is None or entitlement.billing_event_at is None:
        return True
    if entitlement.billing_event_id == event_id:
        return False
    return entitlement.billing_event_at <= event_at
