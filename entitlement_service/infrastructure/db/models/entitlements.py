from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from entitlement_service.infrastructure.db.engine import Base


class UserEntitlementModel(Base):
    __tablename__ = "user_entitlements"
    __table_args__ = (
        CheckConstraint(
            "plan IS NULL OR plan IN ('free', 'gold', 'platinum')",
            name="ck_user_entitlements_plan",
        ),
        CheckConstraint("api_request_count >= 0", name="ck_user_entitlements_count_non_negative"),
        {"schema": "public"},
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    grandfathered: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    api_request_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    api_cycle_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("now()")
    )
    billing_customer_ref: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    billing_event_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=text("now()"))
