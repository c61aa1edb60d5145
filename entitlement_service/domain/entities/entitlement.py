from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


PlanTier = Literal["free", "gold", "platinum"]

PLAN_TIERS: tuple[str, ...] = ("free", "gold", "platinum")
PAID_PLANS = frozenset({"gold", "platinum"})


@dataclass(frozen=True)
class UserEntitlement:
    id: str
    plan: PlanTier | None
    grandfathered: bool
    subscription_end_date: datetime | None
    api_request_count: int
    api_cycle_start: datetime
    billing_customer_ref: str | None
    billing_event_id: str | None
    billing_event_at: datetime | None
    created_at: datetime
    updated_at: datetime
    degraded: bool = False
