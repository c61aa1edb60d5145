from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from entitlement_service.api.deps import get_admin_override_use_case, require_admin_key
from entitlement_service.api.schemas.admin import AdminOverrideResponse, RevokePlanRequest, SetPlanRequest
from entitlement_service.application.dto.admin import AdminOverrideOutput
from entitlement_service.application.use_cases.admin_override import AdminOverrideUseCase
from entitlement_service.domain.exceptions import EntitlementStoreUnavailableError, InvalidPlanError


router = APIRouter(dependencies=[Depends(require_admin_key)])


def _to_response(output: AdminOverrideOutput) -> AdminOverrideResponse:
    return AdminOverrideResponse(
        user_id=output.user_id,
        plan=output.plan,
        grandfathered=output.grandfathered,
        degraded=output.degraded,
    )


@router.post("/v1/admin/set-plan", response_model=AdminOverrideResponse)
def set_plan(
    req: SetPlanRequest,
    use_case: AdminOverrideUseCase = Depends(get_admin_override_use_case),
):
    try:
        output = use_case.grant(user_id=req.user_id, plan=req.plan)
    except InvalidPlanError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _to_response(output)


@router.post("/v1/admin/revoke-plan", response_model=AdminOverrideResponse)
def revoke_plan(
    req: RevokePlanRequest,
    use_case: AdminOverrideUseCase = Depends(get_admin_override_use_case),
):
    try:
        output = use_case.revoke(user_id=req.user_id)
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return _to_response(output)
