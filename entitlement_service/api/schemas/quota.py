from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class QuotaDecisionResponse(BaseModel):
    allowed: bool
    plan: str
    limit: int | None
    used: int
    remaining: int | None
    degraded: bool


class UsageResponse(BaseModel):
    user_id: str
    plan: str
    unlimited: bool
    limit: int | None
    used: int
    remaining: int | None
    cycle_resets_at: datetime | None
    subscription_end_date: datetime | None
    has_billing: bool
    degraded: bool
