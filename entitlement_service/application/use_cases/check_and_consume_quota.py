from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import UserEntitlement
from entitlement_service.domain.entities.quota import QuotaDecision, QuotaPolicy
from entitlement_service.domain.services.entitlements import (
    cycle_elapsed,
    effective_plan,
    is_subscription_lapsed,
    is_unlimited,
)

from .common import utcnow


logger = logging.getLogger(__name__)


class CheckAndConsumeQuotaUseCase:
    """Decide whether a metered call is allowed and count it if so.

    The count and the limit check happen in one conditional store increment, so
    concurrent callers can never push a metered user past the limit.
    """

    def __init__(
        self,
        *,
        store: EntitlementStorePort,
        cache: PlanCachePort,
        policy: QuotaPolicy,
        remove_api_limits: bool = False,
        environment: str = "development",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._policy = policy
        self._bypass_limits = remove_api_limits and environment != "production"
        self._clock = clock
        if remove_api_limits and not self._bypass_limits:
            logger.warning("quota: remove_api_limits ignored environment=%s", environment)

    def execute(self, *, user_id: str) -> QuotaDecision:
        now = self._clock()
        snapshot = self._cache.get(user_id=user_id, now=now)

        if self._bypass_limits:
            return QuotaDecision(
                allowed=True,
                remaining=None,
                plan=effective_plan(snapshot, now=now),
                limit=None,
                used=snapshot.api_request_count,
                degraded=snapshot.degraded,
            )

        if is_subscription_lapsed(snapshot, now=now):
            snapshot = self._expire_subscription(snapshot, now=now)

        plan = effective_plan(snapshot, now=now)
        limit = self._policy.limit_for(plan)
        if is_unlimited(snapshot, now=now) or limit is None:
            return QuotaDecision(
                allowed=True,
                remaining=None,
                plan=plan,
                limit=None,
                used=snapshot.api_request_count,
                degraded=snapshot.degraded,
            )

        if cycle_elapsed(snapshot, now=now, cycle_length=self._policy.cycle_length):
            snapshot = self._reset_cycle(snapshot, now=now)

        updated = self._store.increment_usage(user_id=user_id, now=now, limit=limit)
        if updated is None:
            self._cache.invalidate(user_id=user_id)
            logger.info("quota: denied user_id=%s plan=%s limit=%s", user_id, plan, limit)
            return QuotaDecision(
                allowed=False,
                remaining=0,
                plan=plan,
                limit=limit,
                used=max(snapshot.api_request_count, limit),
                degraded=snapshot.degraded,
            )

        self._cache.refresh(updated)
        return QuotaDecision(
            allowed=True,
            remaining=max(limit - updated.api_request_count, 0),
            plan=plan,
            limit=limit,
            used=updated.api_request_count,
            degraded=snapshot.degraded or updated.degraded,
        )

    def _expire_subscription(self, snapshot: UserEntitlement, *, now: datetime) -> UserEntitlement:
        written = self._store.write(
            user_id=snapshot.id,
            patch={"plan": None, "subscription_end_date": None},
            now=now,
            expected={"plan": "gold", "subscription_end_date": snapshot.subscription_end_date},
        )
        self._cache.invalidate(user_id=snapshot.id)
        if written is None:
            # Plan changed concurrently; reload it.
            return self._cache.get(user_id=snapshot.id, now=now)
        logger.info(
            "quota: subscription_lapsed user_id=%s subscription_end_date=%s",
            snapshot.id,
            snapshot.subscription_end_date.isoformat() if snapshot.subscription_end_date else None,
        )
        return written

    def _reset_cycle(self, snapshot: UserEntitlement, *, now: datetime) -> UserEntitlement:
        written = self._store.write(
            user_id=snapshot.id,
            patch={"api_request_count": 0, "api_cycle_start": now},
            now=now,
            expected={"api_cycle_start": snapshot.api_cycle_start},
        )
        if written is None:
            self._cache.invalidate(user_id=snapshot.id)
            return self._cache.get(user_id=snapshot.id, now=now)
        logger.info("quota: cycle_reset user_id=%s previous_count=%s", snapshot.id, snapshot.api_request_count)
        self._cache.refresh(written)
        return written
