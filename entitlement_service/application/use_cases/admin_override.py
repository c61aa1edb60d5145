from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable

from entitlement_service.application.dto.admin import AdminOverrideOutput
from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.domain.entities.entitlement import UserEntitlement
from entitlement_service.domain.services.entitlements import normalize_plan, parse_plan

from .common import utcnow


logger = logging.getLogger(__name__)


class AdminOverrideUseCase:
    """Manual plan changes.

    Overrides stamp ``billing_event_at`` with the current time, so a billing
    event created before the override cannot undo it, while a later one can.
    """

    def __init__(
        self,
        *,
        store: EntitlementStorePort,
        cache: PlanCachePort,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache = cache
        self._clock = clock

    def grant(self, *, user_id: str, plan: str) -> AdminOverrideOutput:
        tier = parse_plan(plan)
        now = self._clock()
        updated = self._override(
            user_id=user_id,
            patch={
                "plan": tier,
                "subscription_end_date": None,
                "billing_event_id": None,
                "billing_event_at": now,
            },
            now=now,
        )
        logger.info("admin_override: plan_granted user_id=%s plan=%s", user_id, tier)
        return _to_output(updated)

    def revoke(self, *, user_id: str) -> AdminOverrideOutput:
        now = self._clock()
        updated = self._override(
            user_id=user_id,
            patch={
                "plan": None,
                "subscription_end_date": None,
                "grandfathered": False,
                "billing_event_id": None,
                "billing_event_at": now,
            },
            now=now,
        )
        logger.info("admin_override: plan_revoked user_id=%s", user_id)
        return _to_output(updated)

    def _override(self, *, user_id: str, patch: dict, now: datetime) -> UserEntitlement:
        current = self._store.load_or_create(user_id=user_id, now=now)
        updated = self._store.write(user_id=user_id, patch=patch, now=now)
        self._cache.invalidate(user_id=user_id)
        return updated if updated is not None else current


def _to_output(entitlement: UserEntitlement) -> AdminOverrideOutput:
    return AdminOverrideOutput(
        user_id=entitlement.id,
        plan=normalize_plan(entitlement.plan),
        grandfathered=entitlement.grandfathered,
        degraded=entitlement.degraded,
    )
