from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from entitlement_service.api.deps import get_current_user_id, get_get_usage_use_case, require_quota
from entitlement_service.api.schemas.quota import QuotaDecisionResponse, UsageResponse
from entitlement_service.application.use_cases.get_usage import GetUsageUseCase
from entitlement_service.domain.entities.quota import QuotaDecision
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError


router = APIRouter()


@router.post("/v1/quota/consume", response_model=QuotaDecisionResponse)
def consume_quota(decision: QuotaDecision = Depends(require_quota)):
    return QuotaDecisionResponse(
        allowed=decision.allowed,
        plan=decision.plan,
        limit=decision.limit,
        used=decision.used,
        remaining=decision.remaining,
        degraded=decision.degraded,
    )


@router.get("/v1/me/usage", response_model=UsageResponse)
def get_usage(
    user_id: str = Depends(get_current_user_id),
    use_case: GetUsageUseCase = Depends(get_get_usage_use_case),
):
    try:
        output = use_case.execute(user_id=user_id)
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return UsageResponse(
        user_id=output.user_id,
        plan=output.plan,
        unlimited=output.unlimited,
        limit=output.limit,
        used=output.used,
        remaining=output.remaining,
        cycle_resets_at=output.cycle_resets_at,
        subscription_end_date=output.subscription_end_date,
        has_billing=output.has_billing,
        degraded=output.degraded,
    )
