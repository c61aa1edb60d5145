from __future__ import annotations

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from entitlement_service.api.deps import (
    get_cancel_subscription_use_case,
    get_create_checkout_session_use_case,
    get_current_user_id,
    get_process_billing_webhook_use_case,
)
from entitlement_service.api.schemas.billing import (
    BillingWebhookResponse,
    CancelSubscriptionResponse,
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
)
from entitlement_service.application.dto.billing import BillingWebhookInput, CreateCheckoutSessionInput
from entitlement_service.application.use_cases.cancel_subscription import CancelSubscriptionUseCase
from entitlement_service.application.use_cases.create_checkout_session import CreateCheckoutSessionUseCase
from entitlement_service.application.use_cases.process_billing_webhook import ProcessBillingWebhookUseCase
from entitlement_service.domain.exceptions import (
    BillingProviderError,
    EntitlementStoreUnavailableError,
    InvalidPlanError,
    MalformedBillingEventError,
    NoActiveSubscriptionError,
    WebhookSignatureError,
)
from entitlement_service.shared.config import get_settings


router = APIRouter()


@router.post("/v1/billing/checkout-session", response_model=CreateCheckoutSessionResponse)
def create_checkout_session(
    req: CreateCheckoutSessionRequest,
    user_id: str = Depends(get_current_user_id),
    use_case: CreateCheckoutSessionUseCase = Depends(get_create_checkout_session_use_case),
):
    settings = get_settings()
    try:
        output = use_case.execute(
            CreateCheckoutSessionInput(
                user_id=user_id,
                plan=req.plan,
                success_url=settings.stripe_success_url,
                cancel_url=settings.stripe_cancel_url,
            )
        )
    except InvalidPlanError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return CreateCheckoutSessionResponse(
        checkout_session_id=output.checkout_session_id,
        checkout_url=output.checkout_url,
    )


@router.post("/v1/billing/webhook", response_model=BillingWebhookResponse)
async def billing_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    use_case: ProcessBillingWebhookUseCase = Depends(get_process_billing_webhook_use_case),
):
    payload = await request.body()
    try:
        output = await run_in_threadpool(
            use_case.execute,
            BillingWebhookInput(signature=stripe_signature, payload=payload),
        )
    except (WebhookSignatureError, MalformedBillingEventError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return BillingWebhookResponse(
        event_id=output.event_id,
        event_type=output.event_type,
        handled=output.handled,
        applied=output.applied,
    )


@router.post("/v1/billing/cancel-subscription", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user_id: str = Depends(get_current_user_id),
    use_case: CancelSubscriptionUseCase = Depends(get_cancel_subscription_use_case),
):
    try:
        output = use_case.execute(user_id=user_id)
    except NoActiveSubscriptionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BillingProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except EntitlementStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return CancelSubscriptionResponse(
        success=True,
        message="Subscription will be canceled at the end of the current billing period.",
        plan=output.plan,
        cancel_at_period_end=output.cancel_at_period_end,
        current_period_end=output.subscription_end_date,
        degraded=output.degraded,
    )
