# feeledger/schemas/payments.py

from pydantic import BaseModel, Field
from typing import Dict, Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import Document, ZERO
from feeledger.utils.dates import utcnow


class PaymentMode(str, Enum):
    online  = "online"
    offline = "offline"


class PaymentMethod(str, Enum):
    upi          = "upi"
    cash         = "cash"
    cheque       = "cheque"
    card         = "card"
    netbanking   = "netbanking"
    wallet       = "wallet"
    razorpay     = "razorpay"
    subscription = "subscription"
    qr_code      = "qr_code"


class PaymentStatus(str, Enum):
    pending   = "pending"
    confirmed = "confirmed"
    verified  = "verified"
    failed    = "failed"
    refunded  = "refunded"


class PaymentSource(str, Enum):
    student_portal    = "student_portal"
    admin_entry       = "admin_entry"
    qr_scan           = "qr_scan"
    subscription_auto = "subscription_auto"
    walk_in           = "walk_in"


class RefundStatus(str, Enum):
    none    = "none"
    partial = "partial"
    full    = "full"


class ChequeStatus(str, Enum):
    pending = "pending"
    cleared = "cleared"
    bounced = "bounced"


# ── Embedded parts ───────────────────────────────────────────
class PaymentAllocation(BaseModel):
    """How much of the payment landed on one fee item."""
    fee_item_id: str
    category_id: Optional[str] = None
    name: str
    amount: Decimal = Field(ge=0)


class GatewayRefs(BaseModel):
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


class ChequeDetails(BaseModel):
    cheque_no: str
    bank_name: Optional[str] = None
    cheque_date: Optional[datetime] = None
    status: ChequeStatus = ChequeStatus.pending


# ── Stored document ──────────────────────────────────────────
class Payment(Document):
    student_id: str
    ledger_id: str
    mode: PaymentMode
    method: PaymentMethod
    amount: Decimal = Field(gt=0)
    date: datetime = Field(default_factory=utcnow)
    allocations: List[PaymentAllocation] = []
    unallocated_amount: Decimal = ZERO
    receipt_number: str

    gateway: Optional[GatewayRefs] = None
    # Flattened copy of gateway.payment_id so the store can enforce uniqueness.
    gateway_payment_id: Optional[str] = None

    status: PaymentStatus = PaymentStatus.confirmed
    requires_verification: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = Field(default=None, max_length=500)

    refund_amount: Decimal = ZERO
    refund_status: RefundStatus = RefundStatus.none
    refund_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refunded_at: Optional[datetime] = None

    subscription_id: Optional[str] = None
    installment_number: Optional[int] = None
    source: PaymentSource = PaymentSource.admin_entry
    cheque_details: Optional[ChequeDetails] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    academic_year: str
    semester: Optional[int] = None
    added_by: str

    @property
    def allocated_amount(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)


# ── Requests ─────────────────────────────────────────────────
class RecordPaymentRequest(BaseModel):
    ledger_id: str
    amount: Decimal = Field(gt=0)
    paid_for: List[str] = []                # fee item ids, in allocation order
    mode: PaymentMode = PaymentMode.offline
    method: PaymentMethod = PaymentMethod.cash
    source: Optional[PaymentSource] = None
    transaction_id: Optional[str] = None
    cheque_details: Optional[ChequeDetails] = None
    requires_verification: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class VerifyPaymentRequest(BaseModel):
    approved: bool
    notes: Optional[str] = Field(default=None, max_length=500)


class RefundPaymentRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=300)


class CreateOrderRequest(BaseModel):
    ledger_id: str
    amount: Decimal = Field(gt=0)
    description: Optional[str] = None


class CreateOrderResponse(BaseModel):
    order_id: str
    amount: Decimal
    currency: str
    receipt: str
    key_id: str


class ConfirmGatewayPaymentRequest(BaseModel):
    """What the checkout widget hands back after a successful payment."""
    ledger_id: str
    order_id: str
    payment_id: str
    signature: str
    paid_for: List[str] = []
    notes: Optional[str] = Field(default=None, max_length=500)


class ReceiptView(BaseModel):
    receipt_number: str
    payment_id: str
    date: datetime
    student_id: str
    amount: Decimal
    mode: PaymentMode
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: Optional[str]
    semester: Optional[int]
    academic_year: str
    net_amount: Decimal
    total_paid: Decimal
    remaining_balance: Decimal
    allocations: List[PaymentAllocation]
    unallocated_amount: Decimal
    added_by: str
    verified_by: Optional[str]
    notes: Optional[str]


class MethodBreakdown(BaseModel):
    count: int = 0
    total_amount: Decimal = ZERO


class PaymentStats(BaseModel):
    """Collections dashboard. Refunded and failed payments are counted but not collected."""
    total_payments: int = 0
    total_amount: Decimal = ZERO
    total_collected: Decimal = ZERO
    total_refunded: Decimal = ZERO
    average_payment: Decimal = ZERO
    online_payments: int = 0
    offline_payments: int = 0
    by_method: Dict[str, MethodBreakdown] = {}
    by_status: Dict[str, int] = {}
    pending_verification: int = 0
    recent: List[Payment] = []
