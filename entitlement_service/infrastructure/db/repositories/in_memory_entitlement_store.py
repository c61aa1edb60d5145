from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any, Mapping

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.domain.entities.entitlement import UserEntitlement
from entitlement_service.domain.services.entitlements import (
    billing_update_applies,
    next_updated_at,
    validate_patch,
)


class InMemoryEntitlementStore(EntitlementStorePort):
    """Process-local entitlement map.

    Used as the degraded-mode fallback when the database is unreachable and as
    the only store when no DSN is configured. Every operation runs inside one
    critical section, so increments and compare-and-set writes are atomic within
    this process but are not shared with other instances.
    """

    def __init__(self, *, degraded: bool = True):
        self._degraded = degraded
        self._rows: dict[str, UserEntitlement] = {}
        self._lock = Lock()

    def _new_row(self, *, user_id: str, now: datetime) -> UserEntitlement:
        return UserEntitlement(
            id=user_id,
            plan=None,
            grandfathered=False,
            subscription_end_date=None,
            api_request_count=0,
            api_cycle_start=now,
            billing_customer_ref=None,
            billing_event_id=None,
            billing_event_at=None,
            created_at=now,
            updated_at=now,
            degraded=self._degraded,
        )

    def _stamp(self, row: UserEntitlement, changes: Mapping[str, Any], now: datetime) -> UserEntitlement:
        updated = replace(row, **changes, updated_at=next_updated_at(row.updated_at, now))
        self._rows[row.id] = updated
        return updated

    def load_or_create(self, *, user_id: str, now: datetime) -> UserEntitlement:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                row = self._new_row(user_id=user_id, now=now)
                self._rows[user_id] = row
            return row

    def write(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        now: datetime,
        expected: Mapping[str, Any] | None = None,
    ) -> UserEntitlement | None:
        changes = validate_patch(patch)
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                return None
            for field_name, value in (expected or {}).items():
                if getattr(row, field_name) != value:
                    return None
            return self._stamp(row, changes, now)

    def increment_usage(
        self,
        *,
        user_id: str,
        amount: int = 1,
        now: datetime,
        limit: int | None = None,
    ) -> UserEntitlement | None:
        with self._lock:
            row = self._rows.get(user_id)
            if row is None:
                return None
            new_count = row.api_request_count + amount
            if limit is not None and new_count > limit:
                return None
            return self._stamp(row, {"api_request_count": new_count}, now)

    def apply_billing_update(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        event_id: str,
        event_at: datetime,
        now: datetime,
    ) -> UserEntitlement | None:
        changes = validate_patch(patch)
        with self._lock:
            row = self._rows.get(user_id)
            if not billing_update_applies(row, event_id=event_id, event_at=event_at):
                return None
            if row is None:
                row = self._new_row(user_id=user_id, now=now)
            changes.update(billing_event_id=event_id, billing_event_at=event_at)
            return self._stamp(row, changes, now)

    def get_by_billing_customer_ref(self, *, customer_ref: str) -> UserEntitlement | None:
        with self._lock:
            for row in self._rows.values():
                if row.billing_customer_ref == customer_ref:
                    return row
        return None
