from __future__ import annotations

from datetime import datetime
from typing import Callable

from entitlement_service.application.dto.quota import UsageOutput
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.quota import QuotaPolicy
from entitlement_service.domain.services.entitlements import (
    cycle_elapsed,
    effective_plan,
    is_unlimited,
    next_cycle_reset,
)

from .common import utcnow


class GetUsageUseCase:
    def __init__(
        self,
        *,
        cache: PlanCachePort,
        policy: QuotaPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._cache = cache
        self._policy = policy
        self._clock = clock

    def execute(self, *, user_id: str) -> UsageOutput:
        now = self._clock()
        snapshot = self._cache.get(user_id=user_id, now=now)
        plan = effective_plan(snapshot, now=now)
        limit = self._policy.limit_for(plan)
        unlimited = is_unlimited(snapshot, now=now) or limit is None

        # An elapsed cycle is reset by the next consume; report it as empty.
        elapsed = cycle_elapsed(snapshot, now=now, cycle_length=self._policy.cycle_length)
        used = 0 if elapsed else snapshot.api_request_count

        if unlimited:
            remaining = None
            resets_at = None
            limit = None
        else:
            remaining = max(limit - used, 0)
            resets_at = now if elapsed else next_cycle_reset(snapshot, cycle_length=self._policy.cycle_length)

        return UsageOutput(
            user_id=snapshot.id,
            plan=plan,
            unlimited=unlimited,
            limit=limit,
            used=used,
            remaining=remaining,
            cycle_resets_at=resets_at,
            subscription_end_date=snapshot.subscription_end_date,
            has_billing=snapshot.billing_customer_ref is not None,
            degraded=snapshot.degraded,
        )
