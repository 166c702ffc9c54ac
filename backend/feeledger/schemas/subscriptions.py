# feeledger/schemas/subscriptions.py
#
# Installment (EMI) plans. The gateway drives the lifecycle through
# webhooks; we store what it told us and what we posted.

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Any, Dict
from datetime import datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import Document, ZERO


class PlanType(str, Enum):
    monthly   = "monthly"
    quarterly = "quarterly"
    yearly    = "yearly"


class SubscriptionStatus(str, Enum):
    created       = "created"
    authenticated = "authenticated"
    active        = "active"
    paused        = "paused"
    halted        = "halted"
    cancelled     = "cancelled"
    completed     = "completed"
    expired       = "expired"


TERMINAL_STATUSES = {
    SubscriptionStatus.cancelled,
    SubscriptionStatus.completed,
    SubscriptionStatus.expired,
}

# Legal status moves. Anything else arriving by webhook is logged and ignored.
# Status events only: a posted charge makes the plan active on its own.
ALLOWED_TRANSITIONS = {
    SubscriptionStatus.created: {
        SubscriptionStatus.authenticated,
        SubscriptionStatus.cancelled,
        SubscriptionStatus.expired,
    },
    SubscriptionStatus.authenticated: {
        SubscriptionStatus.active,
        SubscriptionStatus.cancelled,
        SubscriptionStatus.expired,
    },
    SubscriptionStatus.active: {
        SubscriptionStatus.completed,
        SubscriptionStatus.halted,
        SubscriptionStatus.cancelled,
        SubscriptionStatus.paused,
    },
    SubscriptionStatus.paused: {
        SubscriptionStatus.active,
        SubscriptionStatus.cancelled,
    },
    SubscriptionStatus.halted: {
        SubscriptionStatus.active,
        SubscriptionStatus.cancelled,
    },
    SubscriptionStatus.cancelled: set(),
    SubscriptionStatus.completed: set(),
    SubscriptionStatus.expired: set(),
}


class SubscriptionPaymentMethod(str, Enum):
    card       = "card"
    upi        = "upi"
    netbanking = "netbanking"
    wallet     = "wallet"


class WebhookEventStatus(str, Enum):
    processed = "processed"
    failed    = "failed"
    ignored   = "ignored"


# ── Embedded parts ───────────────────────────────────────────
class InstallmentRecord(BaseModel):
    installment_number: int
    gateway_payment_id: str
    payment_id: str                         # our Payment document
    amount: Decimal
    paid_at: datetime
    receipt_number: str
    notes: Optional[str] = None


class FailedAttempt(BaseModel):
    installment_number: int
    gateway_payment_id: Optional[str] = None
    failed_at: datetime
    reason: str
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None


class WebhookEventRecord(BaseModel):
    event_type: str
    event_id: Optional[str] = None
    processed_at: datetime
    status: WebhookEventStatus = WebhookEventStatus.processed
    note: Optional[str] = None


class CustomerDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


# ── Stored document ──────────────────────────────────────────
class Subscription(Document):
    student_id: str
    ledger_id: str

    gateway_subscription_id: str
    gateway_plan_id: str
    gateway_customer_id: str
    auth_url: Optional[str] = None

    plan_type: PlanType
    total_amount: Decimal = Field(gt=0)
    installment_amount: Decimal = Field(gt=0)
    total_installments: int = Field(ge=1)
    completed_installments: int = Field(default=0, ge=0)

    status: SubscriptionStatus = SubscriptionStatus.created
    start_date: datetime
    end_date: datetime
    next_charge_at: Optional[datetime] = None

    paid_installments: List[InstallmentRecord] = []
    failed_payments: List[FailedAttempt] = []
    webhook_events: List[WebhookEventRecord] = []

    notes: Optional[str] = Field(default=None, max_length=1000)
    created_by: str
    approved_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    academic_year: str
    semester: Optional[int] = None
    customer: CustomerDetails = Field(default_factory=CustomerDetails)
    payment_method: SubscriptionPaymentMethod = SubscriptionPaymentMethod.card

    @property
    def next_installment_number(self) -> int:
        return self.completed_installments + 1

    @property
    def remaining_amount(self) -> Decimal:
        return self.total_amount - self.completed_installments * self.installment_amount

    @property
    def completion_percentage(self) -> int:
        return round(self.completed_installments / self.total_installments * 100)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def installment_for(self, gateway_payment_id: str) -> Optional[InstallmentRecord]:
        return next(
            (i for i in self.paid_installments if i.gateway_payment_id == gateway_payment_id),
            None,
        )

    def failure_for(self, installment_number: int) -> Optional[FailedAttempt]:
        return next(
            (f for f in self.failed_payments if f.installment_number == installment_number),
            None,
        )


# ── Requests / responses ─────────────────────────────────────
class SubscriptionCreate(BaseModel):
    ledger_id: str
    plan_type: PlanType
    total_amount: Decimal = Field(gt=0)
    installment_amount: Decimal = Field(gt=0)
    total_installments: int = Field(ge=1, le=60)
    start_date: Optional[datetime] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CancelSubscriptionRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=300)


class ApproveSubscriptionRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=300)


class ChargeFailureRequest(BaseModel):
    reason: str = Field(min_length=1)
    gateway_payment_id: Optional[str] = None


class RetryFailedPaymentRequest(BaseModel):
    installment_number: int = Field(ge=1)


class WebhookOutcome(BaseModel):
    status: str                             # processed | ignored | duplicate | failed
    event_type: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None
    detail: Optional[str] = None


class SubscriptionStats(BaseModel):
    total_subscriptions: int = 0
    by_status: Dict[str, int] = {}
    total_amount: Decimal = ZERO
    total_collected: Decimal = ZERO


class WebhookPayload(BaseModel):
    """Gateway webhook body: {"event": "...", "payload": {...}}."""
    event: str
    payload: Dict[str, Any] = {}
