# feeledger/api/v1/endpoints/payments.py
#
# Recording, verifying and refunding payments, plus the Razorpay
# checkout pair (create-order → confirm) and receipts.
#
# Students may pay online and read their own payments and
# receipts; everything else is staff-only.

from datetime import datetime
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from feeledger.api.deps import get_services
from feeledger.core.security import (
    CurrentUser, ensure_can_view, get_current_user, require_admin, require_staff,
)
from feeledger.schemas.common import APIResponse, PaginationParams
from feeledger.schemas.payments import (
    ConfirmGatewayPaymentRequest, CreateOrderRequest, CreateOrderResponse, Payment,
    PaymentStats, PaymentStatus, ReceiptView, RecordPaymentRequest, RefundPaymentRequest,
    VerifyPaymentRequest,
)
from feeledger.services.container import Services
from feeledger.utils.receipt import format_receipt_number

router = APIRouter(prefix="/payments", tags=["Payments"])


# ═══════════════════════════════════════════════════════════
# MANUAL ENTRY (cash / cheque / bank transfer at the counter)
# ═══════════════════════════════════════════════════════════

@router.post("", response_model=APIResponse[Payment], status_code=201)
async def record_payment(
    body: RecordPaymentRequest,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    payment = await services.payments.record_manual(body, user.user_id)
    return APIResponse(
        data=payment,
        message=f"Payment recorded. Receipt {format_receipt_number(payment.receipt_number)}",
    )


@router.post("/{payment_id}/verify", response_model=APIResponse[Payment])
async def verify_payment(
    payment_id: str,
    body: VerifyPaymentRequest,
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    payment = await services.payments.verify(payment_id, body.approved, user.user_id, body.notes)
    return APIResponse(
        data=payment,
        message="Payment verified" if body.approved else "Payment rejected",
    )


@router.post("/{payment_id}/refund", response_model=APIResponse[Payment])
async def refund_payment(
    payment_id: str,
    body: RefundPaymentRequest,
    user: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    payment = await services.payments.refund(payment_id, body.reason, user.user_id)
    return APIResponse(data=payment, message=f"Payment of {payment.amount} refunded")


# ═══════════════════════════════════════════════════════════
# ONLINE CHECKOUT
# ═══════════════════════════════════════════════════════════

@router.post("/orders", response_model=APIResponse[CreateOrderResponse], status_code=201)
async def create_order(
    body: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    ledger = services.ledgers.get(body.ledger_id)
    ensure_can_view(user, ledger.student_id, "payments")
    order = await services.payments.create_order(body.ledger_id, body.amount, user.user_id)
    return APIResponse(data=order, message="Order created")


@router.post("/confirm", response_model=APIResponse[Payment])
async def confirm_gateway_payment(
    body: ConfirmGatewayPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    ledger = services.ledgers.get(body.ledger_id)
    ensure_can_view(user, ledger.student_id, "payments")
    payment = await services.payments.confirm_gateway_payment(body, user.user_id)
    return APIResponse(
        data=payment,
        message=f"Payment confirmed. Receipt {format_receipt_number(payment.receipt_number)}",
    )


# ═══════════════════════════════════════════════════════════
# READS & RECEIPTS
# ═══════════════════════════════════════════════════════════

@router.get("", response_model=APIResponse[List[Payment]])
async def list_payments(
    ledger_id: Optional[str] = Query(default=None),
    student_id: Optional[str] = Query(default=None),
    status: Optional[PaymentStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    student_id = user.scoped_student_id(student_id)
    payments = services.payments.list_payments(ledger_id, student_id, status)
    pagination = PaginationParams(page=page, page_size=page_size)
    return APIResponse(data=pagination.slice(payments), message=f"{len(payments)} payment(s)")


@router.get("/stats", response_model=APIResponse[PaymentStats])
async def payment_stats(
    academic_year: Optional[str] = Query(default=None),
    semester: Optional[int] = Query(default=None, ge=1),
    date_from: Optional[datetime] = Query(default=None),
    date_to: Optional[datetime] = Query(default=None),
    user: CurrentUser = Depends(require_staff),
    services: Services = Depends(get_services),
):
    stats = services.payments.stats(academic_year, semester, date_from, date_to)
    return APIResponse(data=stats, message=f"{stats.total_payments} payment(s)")


@router.get("/{payment_id}", response_model=APIResponse[Payment])
async def get_payment(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    payment = services.payments.get(payment_id)
    ensure_can_view(user, payment.student_id, "payments")
    return APIResponse(data=payment)


@router.get("/{payment_id}/receipt", response_model=APIResponse[ReceiptView])
async def get_receipt(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    receipt = services.payments.receipt(payment_id)
    ensure_can_view(user, receipt.student_id, "payments")
    return APIResponse(data=receipt)


@router.get("/{payment_id}/receipt.pdf")
async def download_receipt_pdf(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    payment = services.payments.get(payment_id)
    ensure_can_view(user, payment.student_id, "payments")
    pdf = services.payments.receipt_pdf(payment_id)
    filename = format_receipt_number(payment.receipt_number)
    return Response(
        content=pdf.getvalue(),
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{filename}.pdf"',
            "Cache-Control": "no-store",
        },
    )
