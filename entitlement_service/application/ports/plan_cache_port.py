from __future__ import annotations

from datetime import datetime
from typing import Protocol

from entitlement_service.domain.entities.entitlement import UserEntitlement


class PlanCachePort(Protocol):
    def get(self, *, user_id: str, now: datetime) -> UserEntitlement:
        ...

    def invalidate(self, *, user_id: str) -> None:
        ...

    def refresh(self, snapshot: UserEntitlement) -> None:
        ...
