from __future__ import annotations

import logging
from typing import Any, Mapping

from entitlement_service.domain.entities.entitlement import PLAN_TIERS, UserEntitlement


logger = logging.getLogger(__name__)


def _as_str(value: Any) -> str:
    return str(value)


def _as_plan(user_id: str, value: Any):
    if value is None:
        return None
    plan = str(value).strip().lower()
    if plan not in PLAN_TIERS:
        logger.warning("entitlements_mapper: unknown_plan user_id=%s plan=%s, reading as free", user_id, value)
        return None
    return plan


def map_row_to_user_entitlement(row: Mapping[str, Any]) -> UserEntitlement:
    user_id = _as_str(row["id"])
    return UserEntitlement(
        id=user_id,
        plan=_as_plan(user_id, row.get("plan")),
        grandfathered=bool(row.get("grandfathered") or False),
        subscription_end_date=row.get("subscription_end_date"),
        api_request_count=int(row.get("api_request_count") or 0),
        api_cycle_start=row["api_cycle_start"],
        billing_customer_ref=row.get("billing_customer_ref"),
        billing_event_id=row.get("billing_event_id"),
        billing_event_at=row.get("billing_event_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
