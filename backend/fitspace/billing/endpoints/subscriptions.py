from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..engine import BillingEngine
from ..shared.models import (
    AccessStatusResponse,
    CancellationResponse,
    CancelSubscriptionRequest,
    EligibilityResponse,
    ReactivationResponse,
)
from .dependencies import get_current_user_id, get_engine, raise_http_error

router = APIRouter(tags=["billing-subscriptions"])


@router.post("/subscriptions/{subscription_id}/cancel", response_model=CancellationResponse)
async def cancel_subscription(
    subscription_id: str,
    request: CancelSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> CancellationResponse:
    """Cancel now or at the end of the paid period."""
    try:
        result = await engine.subscriptions.cancel_subscription(
            user_id, subscription_id, immediate=request.immediate, reason=request.reason
        )
    except Exception as e:
        raise_http_error(e, "[CANCEL]")
    return CancellationResponse(
        subscription_id=result.subscription_id,
        status=result.status.value,
        immediate=result.immediate,
        access_ends_at=result.access_ends_at,
        provider_confirmed=result.provider_confirmed,
        message=result.message,
    )


@router.get("/packages/{package_id}/reactivation", response_model=ReactivationResponse)
async def reactivate_subscription(
    package_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> ReactivationResponse:
    try:
        intent = await engine.subscriptions.reactivate_subscription(user_id, package_id)
    except Exception as e:
        raise_http_error(e)
    return ReactivationResponse(
        package_id=intent.package_id,
        can_reactivate=intent.can_reactivate,
        trial_eligible=intent.trial_eligible,
        message=intent.message,
        previous_subscription_id=intent.previous_subscription_id,
        blocking_subscription_id=intent.blocking_subscription_id,
    )


@router.get("/reactivation-eligibility", response_model=List[EligibilityResponse])
async def reactivation_eligibility(
    user_id: str = Depends(get_current_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> List[EligibilityResponse]:
    try:
        results = await engine.subscriptions.get_reactivation_eligibility(user_id)
    except Exception as e:
        raise_http_error(e)
    return [
        EligibilityResponse(
            package_id=r.package_id,
            can_reactivate=r.can_reactivate,
            trial_eligible=r.trial_eligible,
            reason=r.reason,
            blocking_subscription_id=r.blocking_subscription_id,
            previous_subscription_id=r.previous_subscription_id,
        )
        for r in results
    ]


@router.get("/access", response_model=AccessStatusResponse)
async def access_status(
    package_id: Optional[str] = Query(default=None, alias="packageId"),
    user_id: str = Depends(get_current_user_id),
    engine: BillingEngine = Depends(get_engine),
) -> AccessStatusResponse:
    try:
        summary = await engine.reconciliation.get_access_status(user_id, package_id)
    except Exception as e:
        raise_http_error(e)
    return AccessStatusResponse(
        status=summary.status.value,
        has_access=summary.has_access,
        expires_at=summary.expires_at,
        days_remaining=summary.days_remaining,
        subscription_id=summary.subscription_id,
    )
