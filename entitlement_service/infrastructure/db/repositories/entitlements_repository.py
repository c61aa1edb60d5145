from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import logging
from typing import Any, Iterator, Mapping

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError
from entitlement_service.domain.services.entitlements import WRITABLE_FIELDS, validate_patch
from entitlement_service.infrastructure.db.mappers.entitlements_mapper import map_row_to_user_entitlement


logger = logging.getLogger(__name__)


_COLUMNS = """
    id,
    plan,
    grandfathered,
    subscription_end_date,
    api_request_count,
    api_cycle_start,
    billing_customer_ref,
    billing_event_id,
    billing_event_at,
    created_at,
    updated_at
"""

_TABLE = "public.user_entitlements"

# updated_at must strictly increase even when two writes share a clock reading.
_NEXT_UPDATED_AT = f"GREATEST(:now, {_TABLE}.updated_at + interval '1 microsecond')"


class SqlEntitlementStore(EntitlementStorePort):
    def __init__(self, engine):
        self._engine = engine

    @contextmanager
    def _translate_errors(self, operation: str, user_id: str | None) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.warning(
                "entitlements_repo: %s failed user_id=%s error=%s",
                operation,
                user_id,
                exc.__class__.__name__,
            )
            raise EntitlementStoreUnavailableError(f"Entitlement store {operation} failed.") from exc

    def load_or_create(self, *, user_id: str, now: datetime):
        sql = f"""
            INSERT INTO {_TABLE} (
                id, plan, grandfathered, api_request_count, api_cycle_start, created_at, updated_at
            ) VALUES (
                :id, NULL, false, 0, :now, :now, :now
            )
            ON CONFLICT (id) DO UPDATE SET id = EXCLUDED.id
            RETURNING {_COLUMNS}
        """
        with self._translate_errors("load_or_create", user_id):
            with self._engine.begin() as conn:
                row = conn.execute(text(sql), {"id": user_id, "now": now}).mappings().one()
        return map_row_to_user_entitlement(row)

    def write(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        now: datetime,
        expected: Mapping[str, Any] | None = None,
    ):
        changes = validate_patch(patch)
        assignments = [f"{column} = :set_{column}" for column in changes]
        assignments.append(f"updated_at = {_NEXT_UPDATED_AT}")
        params: dict[str, Any] = {f"set_{column}": value for column, value in changes.items()}
        params.update(user_id=user_id, now=now)

        conditions = ["id = :user_id"]
        for column, value in (expected or {}).items():
            if column not in WRITABLE_FIELDS:
                raise ValueError(f"Cannot compare on column '{column}'.")
            if value is None:
                conditions.append(f"{column} IS NULL")
                continue
            conditions.append(f"{column} = :expect_{column}")
            params[f"expect_{column}"] = value

        sql = f"""
            UPDATE {_TABLE}
            SET {", ".join(assignments)}
            WHERE {" AND ".join(conditions)}
            RETURNING {_COLUMNS}
        """
        with self._translate_errors("write", user_id):
            with self._engine.begin() as conn:
                row = conn.execute(text(sql), params).mappings().first()
        if row is None:
            return None
        return map_row_to_user_entitlement(row)

    def increment_usage(
        self,
        *,
        user_id: str,
        amount: int = 1,
        now: datetime,
        limit: int | None = None,
    ):
        params: dict[str, Any] = {"user_id": user_id, "amount": amount, "now": now}
        limit_clause = ""
        if limit is not None:
            limit_clause = "AND api_request_count + :amount <= :limit"
            params["limit"] = limit

        sql = f"""
            UPDATE {_TABLE}
            SET api_request_count = api_request_count + :amount,
                updated_at = {_NEXT_UPDATED_AT}
            WHERE id = :user_id
              {limit_clause}
            RETURNING {_COLUMNS}
        """
        with self._translate_errors("increment_usage", user_id):
            with self._engine.begin() as conn:
                row = conn.execute(text(sql), params).mappings().first()
        if row is None:
            return None
        return map_row_to_user_entitlement(row)

    def apply_billing_update(
        self,
        *,
        user_id: str,
        patch: Mapping[str, Any],
        event_id: str,
        event_at: datetime,
        now: datetime,
    ):
        changes = validate_patch(patch)
        values: dict[str, Any] = {
            "plan": None,
            "grandfathered": False,
            "api_request_count": 0,
            "api_cycle_start": now,
        }
        values.update(changes)
        values.update(billing_event_id=event_id, billing_event_at=event_at)

        insert_columns = ["id", *values.keys(), "created_at", "updated_at"]
        placeholders = [":id", *(f":{column}" for column in values), ":now", ":now"]
        updates = [f"{column} = EXCLUDED.{column}" for column in changes]
        updates += [
            "billing_event_id = EXCLUDED.billing_event_id",
            "billing_event_at = EXCLUDED.billing_event_at",
            f"updated_at = {_NEXT_UPDATED_AT}",
        ]

        sql = f"""
            INSERT INTO {_TABLE} ({", ".join(insert_columns)})
            VALUES ({", ".join(placeholders)})
            ON CONFLICT (id) DO UPDATE SET {", ".join(updates)}
            WHERE {_TABLE}.billing_event_at IS NULL
               OR (
                    {_TABLE}.billing_event_at <= EXCLUDED.billing_event_at
                    AND {_TABLE}.billing_event_id IS DISTINCT FROM EXCLUDED.billing_event_id
               )
            RETURNING {_COLUMNS}
        """
        params = {"id": user_id, "now": now, **values}
        with self._translate_errors("apply_billing_update", user_id):
            with self._engine.begin() as conn:
                row = conn.execute(text(sql), params).mappings().first()
        if row is None:
            logger.info(
                "entitlements_repo: billing_update_skipped user_id=%s event_id=%s event_at=%s",
                user_id,
                event_id,
                event_at.isoformat(),
            )
            return None
        return map_row_to_user_entitlement(row)

    def get_by_billing_customer_ref(self, *, customer_ref: str):
        sql = f"""
            SELECT {_COLUMNS}
            FROM {_TABLE}
            WHERE billing_customer_ref = :customer_ref
            LIMIT 1
        """
        with self._translate_errors("get_by_billing_customer_ref", None):
            with self._engine.connect() as conn:
                row = conn.execute(text(sql), {"customer_ref": customer_ref}).mappings().first()
        if row is None:
            return None
        return map_row_to_user_entitlement(row)
