from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging
from typing import Any, Callable, Mapping, TypeVar

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.domain.entities.entitlement import UserEntitlement
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackEntitlementStore(EntitlementStorePort):
    """Primary store with a process-local fallback for the request path.

    ``load_or_create`` and ``write`` are retried once against the primary and
    then served from the fallback. ``increment_usage`` is never retried and goes
    straight to the fallback on failure. Billing operations never fall back.
    """

    def __init__(
        self,
        *,
        primary: EntitlementStorePort,
        fallback: EntitlementStorePort,
        retries: int = 1,
    ):
        self._primary = primary
        self._fallback = fallback
        self._retries = retries

    def _call_primary(self, operation: str, user_id: str, call: Callable[[], T], *, retries: int) -> T:
        attempt = 0
        while True:
            try:
                return call()
            except EntitlementStoreUnavailableError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.info("entitlement_store: retry operation=%s user_id=%s attempt=%s", operation, user_id, attempt)

    def _degrade(self, operation: str, user_id: str, call: Callable[[], T]) -> T:
        logger.warning("entitlement_store: degraded operation=%s user_id=%s", operation, user_id)
        result = call()
        if isinstance(result, UserEntitlement) and not result.degraded:
            return replace(result, degraded=True)
        return result

    def load_or_create(self, *, user_id: str, now: datetime) -> UserEntitlement:
        try:
            return self._call_primary(
                "load_or_create",
                user_id,
                lambda: self._primary.load_or_create(user_id=user_id, now=now),
                retries=self._retries,
            )
        except EntitlementStoreUnavailableError:
            return self._degrade(
                "load_or_create",
                user_id,
                lambda: self._fallback.load_or_create(user_id=user_id, now=now),
            )

    def write(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        now: datetime,
        expected: Mapping[str, Any] | None = None,
    ) -> UserEntitlement | None:
        try:
            return self._call_primary(
                "write",
                user_id,
                lambda: self._primary.write(user_id=user_id, patch=patch, now=now, expected=expected),
                retries=self._retries,
            )
        except EntitlementStoreUnavailableError:
            return self._degrade(
                "write",
                user_id,
                lambda: self._write_fallback(user_id=user_id, patch=patch, now=now, expected=expected),
            )

    def _write_fallback(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        now: datetime,
        expected: Mapping[str, Any] | None,
    ) -> UserEntitlement | None:
        self._fallback.load_or_create(user_id=user_id, now=now)
        return self._fallback.write(user_id=user_id, patch=patch, now=now, expected=expected)

    def increment_usage(
        self,
        *,
        user_id: str,
        amount: int = 1,
        now: datetime,
        limit: int | None = None,
    ) -> UserEntitlement | None:
        try:
            return self._primary.increment_usage(user_id=user_id, amount=amount, now=now, limit=limit)
        except EntitlementStoreUnavailableError:
            return self._degrade(
                "increment_usage",
                user_id,
                lambda: self._increment_fallback(user_id=user_id, amount=amount, now=now, limit=limit),
            )

    def _increment_fallback(
        self,
        *,
        user_id: str,
        amount: int,
        now: datetime,
        limit: int | None,
    ) -> UserEntitlement | None:
        self._fallback.load_or_create(user_id=user_id, now=now)
        return self._fallback.increment_usage(user_id=user_id, amount=amount, now=now, limit=limit)

    def apply_billing_update(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        event_id: str,
        event_at: datetime,
        now: datetime,
    ) -> UserEntitlement | None:
        return self._primary.apply_billing_update(
            user_id=user_id,
            patch=patch,
            event_id=event_id,
            event_at=event_at,
            now=now,
        )

    def get_by_billing_customer_ref(self, *, customer_ref: str) -> UserEntitlement | None:
        return self._primary.get_by_billing_customer_ref(customer_ref=customer_ref)
