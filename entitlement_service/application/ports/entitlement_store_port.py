from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol

from entitlement_service.domain.entities.entitlement import UserEntitlement


class EntitlementStorePort(Protocol):
    def load_or_create(self, *, user_id: str, now: datetime) -> UserEntitlement:
        ...

    def write(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        now: datetime,
        expected: Mapping[str, Any] | None = None,
    ) -> UserEntitlement | None:
        ...

    def increment_usage(
        self,
        *,
        user_id: str,
        amount: int = 1,
        now: datetime,
        limit: int | None = None,
    ) -> UserEntitlement | None:
        ...

    def apply_billing_update(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        event_id: str,
        event_at: datetime,
        now: datetime,
    ) -> UserEntitlement | None:
        ...

    def get_by_billing_customer_ref(self, *, customer_ref: str) -> UserEntitlement | None:
        ...
