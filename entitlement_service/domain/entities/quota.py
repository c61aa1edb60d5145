from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

from entitlement_service.domain.entities.entitlement import PlanTier


DEFAULT_FREE_REQUEST_LIMIT = 250
DEFAULT_CYCLE_LENGTH = timedelta(days=30)


def _default_limits() -> dict[str, int | None]:
    return {"free": DEFAULT_FREE_REQUEST_LIMIT, "gold": None, "platinum": None}


@dataclass(frozen=True)
class QuotaPolicy:
    """Per-tier cycle limits. ``None`` means the tier is not metered."""

    limits: Mapping[str, int | None] = field(default_factory=_default_limits)
    cycle_length: timedelta = DEFAULT_CYCLE_LENGTH

    def limit_for(self, plan: PlanTier) -> int | None:
        return self.limits.get(plan)


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int | None
    plan: PlanTier
    limit: int | None
    used: int
    degraded: bool
