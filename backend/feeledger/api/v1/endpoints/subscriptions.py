# feeledger/api/v1/endpoints/subscriptions.py
#
# Installment plans. Creation and admin actions live here; the
# lifecycle itself is driven by the gateway through webhooks.py.
# due / retries are what the external scheduler polls.

from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from feeledger.api.deps import get_services
from feeledger.core.security import (
    CurrentUser, ensure_can_view, get_current_user, require_admin, require_staff,
)
from feeledger.schemas.common import APIResponse
from feeledger.schemas.subscriptions import (
    ApproveSubscriptionRequest, CancelSubscriptionRequest, ChargeFailureRequest,
    RetryFailedPaymentRequest, Subscription, SubscriptionCreate, SubscriptionStats,
    SubscriptionStatus,
)
from feeledger.services.container import Services

router = APIRouter(prefix="/subscriptions", tags=["Installment Plans"])


@router.post("", response_model=APIResponse[Subscription], status_code=201)
async def create_subscription(
    body: SubscriptionCreate,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    sub = await services.subscriptions.create(body, user.user_id)
    return APIResponse(
        data=sub,
        message=f"Plan created: {sub.total_installments} × {sub.installment_amount}",
    )


# ═══════════════════════════════════════════════════════════
# READS (static paths first so they don't match /{subscription_id})
# ═══════════════════════════════════════════════════════════

@router.get("", response_model=APIResponse[List[Subscription]])
async def list_subscriptions(
    student_id: Optional[str] = Query(default=None),
    ledger_id: Optional[str] = Query(default=None),
    status: Optional[SubscriptionStatus] = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    student_id = user.scoped_student_id(student_id)
    return APIResponse(data=services.subscriptions.list_subscriptions(student_id, ledger_id, status))


@router.get("/stats", response_model=APIResponse[SubscriptionStats])
async def subscription_stats(
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=services.subscriptions.stats())


@router.get("/due", response_model=APIResponse[List[Subscription]])
async def due_for_charge(
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=services.subscriptions.due_for_charge())


@router.get("/retries", response_model=APIResponse[List[Subscription]])
async def due_for_retry(
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    return APIResponse(data=services.subscriptions.due_for_retry())


@router.get("/{subscription_id}", response_model=APIResponse[Subscription])
async def get_subscription(
    subscription_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    sub = services.subscriptions.get(subscription_id)
    ensure_can_view(user, sub.student_id, "installment plans")
    return APIResponse(data=sub)


# ═══════════════════════════════════════════════════════════
# ADMIN ACTIONS
# ═══════════════════════════════════════════════════════════

@router.post("/{subscription_id}/approve", response_model=APIResponse[Subscription])
async def approve_subscription(
    subscription_id: str,
    body: ApproveSubscriptionRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    sub = await services.subscriptions.approve(subscription_id, user.user_id, body.notes)
    return APIResponse(data=sub, message="Plan approved")


@router.post("/{subscription_id}/cancel", response_model=APIResponse[Subscription])
async def cancel_subscription(
    subscription_id: str,
    body: CancelSubscriptionRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    sub = await services.subscriptions.cancel(subscription_id, user.user_id, body.reason)
    return APIResponse(data=sub, message="Plan cancelled")


@router.post("/{subscription_id}/failures", response_model=APIResponse[Subscription])
async def record_charge_failure(
    subscription_id: str,
    body: ChargeFailureRequest,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    sub = await services.subscriptions.on_charge_failure(
        subscription_id, body.reason, body.gateway_payment_id,
    )
    return APIResponse(data=sub, message=f"Failure recorded; plan is {sub.status.value}")


@router.post("/{subscription_id}/retry", response_model=APIResponse[Subscription])
async def retry_failed_payment(
    subscription_id: str,
    body: RetryFailedPaymentRequest,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    sub = await services.subscriptions.retry_failed_payment(
        subscription_id, body.installment_number, user.user_id,
    )
    return APIResponse(data=sub, message=f"Retry scheduled for installment {body.installment_number}")
