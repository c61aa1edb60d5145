from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
import hmac
import logging

from fastapi import Depends, Header, HTTPException

from entitlement_service.application.ports.entitlement_store_port import EntitlementStorePort
from entitlement_service.application.ports.plan_cache_port import PlanCachePort
from entitlement_service.application.use_cases.admin_override import AdminOverrideUseCase
from entitlement_service.application.use_cases.cancel_subscription import CancelSubscriptionUseCase
from entitlement_service.application.use_cases.check_and_consume_quota import CheckAndConsumeQuotaUseCase
from entitlement_service.application.use_cases.create_checkout_session import CreateCheckoutSessionUseCase
from entitlement_service.application.use_cases.get_usage import GetUsageUseCase
from entitlement_service.application.use_cases.process_billing_webhook import ProcessBillingWebhookUseCase
from entitlement_service.domain.entities.quota import QuotaDecision, QuotaPolicy
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError
from entitlement_service.infrastructure.cache.plan_cache import TtlPlanCache
from entitlement_service.infrastructure.clients.stripe_client import StripeClient
from entitlement_service.infrastructure.db.engine import get_engine
from entitlement_service.infrastructure.db.repositories.entitlements_repository import SqlEntitlementStore
from entitlement_service.infrastructure.db.repositories.fallback_entitlement_store import (
    FallbackEntitlementStore,
)
from entitlement_service.infrastructure.db.repositories.in_memory_entitlement_store import (
    InMemoryEntitlementStore,
)
from entitlement_service.shared.config import get_settings


logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_quota_policy() -> QuotaPolicy:
    settings = get_settings()
    return QuotaPolicy(
        limits={"free": settings.free_request_limit, "gold": None, "platinum": None},
        cycle_length=timedelta(days=settings.usage_cycle_days),
    )


@lru_cache(maxsize=1)
def _get_entitlement_store() -> EntitlementStorePort:
    settings = get_settings()
    if not settings.postgres_dsn:
        logger.warning("deps: postgres_dsn_missing, entitlements are process-local and degraded")
        return InMemoryEntitlementStore(degraded=True)
    engine = get_engine(settings.postgres_dsn, settings.store_timeout_seconds)
    return FallbackEntitlementStore(
        primary=SqlEntitlementStore(engine),
        fallback=InMemoryEntitlementStore(degraded=True),
    )


@lru_cache(maxsize=1)
def _get_plan_cache() -> PlanCachePort:
    settings = get_settings()
    return TtlPlanCache(
        store=_get_entitlement_store(),
        ttl_seconds=settings.plan_cache_ttl_seconds,
    )


@lru_cache(maxsize=1)
def _get_stripe_client() -> StripeClient:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="STRIPE_SECRET_KEY is required.")
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=500, detail="STRIPE_WEBHOOK_SECRET is required.")
    return StripeClient(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )


def get_check_and_consume_quota_use_case() -> CheckAndConsumeQuotaUseCase:
    settings = get_settings()
    return CheckAndConsumeQuotaUseCase(
        store=_get_entitlement_store(),
        cache=_get_plan_cache(),
        policy=_get_quota_policy(),
        remove_api_limits=settings.remove_api_limits,
        environment=settings.environment,
    )


def get_get_usage_use_case() -> GetUsageUseCase:
    return GetUsageUseCase(cache=_get_plan_cache(), policy=_get_quota_policy())


def get_create_checkout_session_use_case() -> CreateCheckoutSessionUseCase:
    return CreateCheckoutSessionUseCase(
        cache=_get_plan_cache(),
        billing_provider=_get_stripe_client(),
        plan_prices=get_settings().plan_prices,
    )


def get_process_billing_webhook_use_case() -> ProcessBillingWebhookUseCase:
    return ProcessBillingWebhookUseCase(
        store=_get_entitlement_store(),
        cache=_get_plan_cache(),
        billing_provider=_get_stripe_client(),
        policy=_get_quota_policy(),
        price_plans=get_settings().price_plans,
    )


def get_cancel_subscription_use_case() -> CancelSubscriptionUseCase:
    return CancelSubscriptionUseCase(
        store=_get_entitlement_store(),
        cache=_get_plan_cache(),
        billing_provider=_get_stripe_client(),
    )


def get_admin_override_use_case() -> AdminOverrideUseCase:
    return AdminOverrideUseCase(store=_get_entitlement_store(), cache=_get_plan_cache())


def get_current_user_id(x_user_id: str = Header(..., alias="X-User-Id")) -> str:
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user id.")
    return user_id


def require_admin_key(authorization: str = Header(...)) -> None:
    expected = get_settings().admin_api_key
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_API_KEY is required.")
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header.")
    provided = authorization.replace("Bearer ", "", 1).strip()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid admin key.")


def require_quota(
    user_id: str = Depends(get_current_user_id),
    use_case: CheckAndConsumeQuotaUseCase = Depends(get_check_and_consume_quota_use_case),
) -> QuotaDecision:
    try:
        decision = use_case.execute(user_id=user_id)
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail={
                "code": "QUOTA_EXCEEDED",
                "message": "Monthly API request limit reached.",
                "plan": decision.plan,
                "limit": decision.limit,
            },
        )
    return decision
