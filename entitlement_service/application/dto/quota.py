from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class UsageOutput:
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
