from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _with_driver(dsn: str) -> str:
    for prefix in ("postgresql://", "postgres://"):
        if dsn.startswith(prefix):
            return "postgresql+psycopg://" + dsn[len(prefix):]
    return dsn


@lru_cache(maxsize=4)
def get_engine(dsn: str, timeout_seconds: float = 3.0):
    statement_timeout_ms = int(timeout_seconds * 1000)
    return create_engine(
        _with_driver(dsn),
        future=True,
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={statement_timeout_ms}",
        },
    )


def ensure_schema(engine) -> None:
    from entitlement_service.infrastructure.db.models.entitlements import UserEntitlementModel

    Base.metadata.create_all(engine, tables=[UserEntitlementModel.__table__])
