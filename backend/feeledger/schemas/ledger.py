# ============================================================
# feeledger/schemas/ledger.py
#
# The per-student, per-term fee ledger and the value objects it
# owns (fee items, fines, discounts).
#
# The ledger is ONE document: items, fines and discounts are
# embedded, so a single versioned write updates all of them
# atomically. Derived totals are never trusted from input:
# recompute() rebuilds them after every mutation.
# ============================================================

from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Literal, Union, Annotated
from datetime import datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import Document, ZERO, money, new_id
from feeledger.utils.dates import utcnow


class FeeItemStatus(str, Enum):
    unpaid  = "unpaid"
    partial = "partial"
    paid    = "paid"


class LedgerStatus(str, Enum):
    unpaid  = "unpaid"
    partial = "partial"
    paid    = "paid"
    overdue = "overdue"


class DiscountType(str, Enum):
    percentage = "percentage"
    fixed      = "fixed"


class ServiceName(str, Enum):
    hostel    = "hostel"
    mess      = "mess"
    transport = "transport"
    library   = "library"


# ── Fee item metadata (tagged by category kind) ──────────────
class HostelMeta(BaseModel):
    kind: Literal["hostel"] = "hostel"
    room_type: Optional[str] = None         # single | double | triple | ac | non-ac
    block_name: Optional[str] = None
    room_number: Optional[str] = None


class MessMeta(BaseModel):
    kind: Literal["mess"] = "mess"
    meal_type: Optional[str] = None         # veg | non-veg | both
    plan_type: Optional[str] = None         # monthly | semester | annual


class TransportMeta(BaseModel):
    kind: Literal["transport"] = "transport"
    route: Optional[str] = None
    distance_km: Optional[Decimal] = None
    pickup_point: Optional[str] = None


class CustomMeta(BaseModel):
    """Admin-defined categories with no fixed shape."""
    kind: Literal["custom"] = "custom"
    values: Dict[str, str] = {}


FeeItemMeta = Annotated[
    Union[HostelMeta, MessMeta, TransportMeta, CustomMeta],
    Field(discriminator="kind"),
]


# ── Owned value objects ──────────────────────────────────────
class FeeItem(BaseModel):
    id: str = Field(default_factory=new_id)
    category_id: Optional[str] = None
    name: str = Field(min_length=1)
    original_amount: Decimal = Field(ge=0)
    paid: Decimal = Field(default=ZERO, ge=0)
    status: FeeItemStatus = FeeItemStatus.unpaid
    is_optional: bool = False
    is_included: bool = True
    service: Optional[ServiceName] = None   # set for optional service items
    meta: Optional[FeeItemMeta] = None
    notes: Optional[str] = Field(default=None, max_length=300)
    last_updated: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _paid_within_amount(self):
        if self.paid > self.original_amount:
            raise ValueError(
                f"paid ({self.paid}) exceeds original amount ({self.original_amount}) "
                f"for fee item '{self.name}'"
            )
        return self

    @property
    def balance(self) -> Decimal:
        return self.original_amount - self.paid

    def derive_status(self) -> FeeItemStatus:
        if self.paid == 0:
            return FeeItemStatus.unpaid
        if self.paid >= self.original_amount:
            return FeeItemStatus.paid
        return FeeItemStatus.partial

    def service_name(self) -> Optional[ServiceName]:
        """
        Which optional service this line belongs to. Explicit `service`
        wins, then the meta kind, then a name match ("Hostel Fee").
        """
        if self.service:
            return self.service
        if self.meta is not None and self.meta.kind in ServiceName.__members__:
            return ServiceName(self.meta.kind)
        lowered = self.name.lower()
        for svc in ServiceName:
            if svc.value in lowered:
                return svc
        return None


class Fine(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)
    reason: str = Field(min_length=1)
    imposed_by: str
    imposed_at: datetime = Field(default_factory=utcnow)
    is_paid: bool = False
    paid_at: Optional[datetime] = None


class Discount(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    amount: Decimal = Field(ge=0)           # always the resolved absolute amount
    type: DiscountType = DiscountType.fixed
    percentage: Optional[Decimal] = None    # kept for display when type=percentage
    reason: str = Field(min_length=1)
    approved_by: str
    approved_at: datetime = Field(default_factory=utcnow)


# ── Aggregate root ───────────────────────────────────────────
class StudentFeeLedger(Document):
    student_id: str
    course_id: Optional[str] = None
    semester: Optional[int] = Field(default=None, ge=1, le=12)
    academic_year: str
    template_id: Optional[str] = None

    fee_items: List[FeeItem] = []
    fines: List[Fine] = []
    discounts: List[Discount] = []

    # Derived, rebuilt by recompute()
    total_due: Decimal = ZERO
    total_paid: Decimal = ZERO
    total_fines: Decimal = ZERO
    total_discounts: Decimal = ZERO
    net_amount: Decimal = ZERO
    status: LedgerStatus = LedgerStatus.unpaid

    # Money received through the gateway beyond the targeted items
    credit_balance: Decimal = ZERO

    due_date: Optional[datetime] = None
    generated_by: str
    last_modified_by: Optional[str] = None

    def recompute(self, now: Optional[datetime] = None) -> "StudentFeeLedger":
        """
        Rebuild every derived field from the owned items.

        Pure with respect to the stored data: given the same items and
        the same `now`, running it twice yields the same result.
        """
        now = now or utcnow()
        included = [item for item in self.fee_items if item.is_included]

        self.total_due = sum((item.original_amount for item in included), ZERO)
        self.total_paid = sum((item.paid for item in included), ZERO)
        self.total_fines = sum((f.amount for f in self.fines if not f.is_paid), ZERO)
        self.total_discounts = sum((d.amount for d in self.discounts), ZERO)
        self.net_amount = self.total_due + self.total_fines - self.total_discounts

        for item in self.fee_items:
            item.status = item.derive_status()

        if self.total_paid == 0:
            status = LedgerStatus.unpaid
        elif self.total_paid >= self.net_amount:
            status = LedgerStatus.paid
        else:
            status = LedgerStatus.partial

        if self.due_date is not None and self.due_date < now and status != LedgerStatus.paid:
            status = LedgerStatus.overdue

        self.status = status
        return self

    # ── Lookups ──────────────────────────────────────────────
    def item(self, item_id: str) -> Optional[FeeItem]:
        return next((i for i in self.fee_items if i.id == item_id), None)

    def fine(self, fine_id: str) -> Optional[Fine]:
        return next((f for f in self.fines if f.id == fine_id), None)

    def outstanding_item_ids(self) -> List[str]:
        """Included items that still owe something, in ledger order."""
        return [i.id for i in self.fee_items if i.is_included and i.balance > 0]

    @property
    def balance_due(self) -> Decimal:
        return max(ZERO, self.net_amount - self.total_paid)

    @property
    def payment_percentage(self) -> int:
        if self.net_amount <= 0:
            return 0
        return int((self.total_paid / self.net_amount * 100).to_integral_value())


# ── Seeds and requests ───────────────────────────────────────
class LedgerSeedItem(BaseModel):
    category_id: Optional[str] = None
    name: str
    original_amount: Decimal = Field(ge=0)
    meta: Optional[FeeItemMeta] = None
    is_optional: bool = False
    service: Optional[ServiceName] = None
    description: Optional[str] = None


class LedgerSeed(BaseModel):
    """What the template catalog hands over: cloneForStudent()."""
    student_id: str
    course_id: Optional[str] = None
    semester: Optional[int] = None
    academic_year: str
    template_id: Optional[str] = None
    fee_items: List[LedgerSeedItem] = []
    total_due: Decimal = ZERO


class LedgerFromTemplateCreate(BaseModel):
    student_id: str
    template_id: Optional[str] = None
    course_id: Optional[str] = None
    semester: Optional[int] = None
    academic_year: Optional[str] = None
    due_date: Optional[datetime] = None

    @model_validator(mode="after")
    def _template_or_term(self):
        if not self.template_id and not (self.course_id and self.semester and self.academic_year):
            raise ValueError("Provide template_id or course_id + semester + academic_year")
        return self


class BareLedgerCreate(BaseModel):
    student_id: str
    course_id: Optional[str] = None
    semester: int = Field(default=1, ge=1, le=12)
    academic_year: Optional[str] = None


class FineCreate(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)


class DiscountCreate(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)           # rupees for fixed, percent for percentage
    type: DiscountType = DiscountType.fixed
    reason: str = Field(min_length=1)

    @model_validator(mode="after")
    def _percentage_range(self):
        if self.type == DiscountType.percentage and self.amount > 100:
            raise ValueError("A percentage discount cannot exceed 100")
        return self


class CustomFeeCreate(BaseModel):
    name: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    notes: Optional[str] = Field(default=None, max_length=300)
    is_optional: bool = False


class ItemInclusionUpdate(BaseModel):
    included: bool


class ServiceSyncRequest(BaseModel):
    service: ServiceName
    opted: bool


class LedgerSummary(BaseModel):
    ledger_id: str
    student_id: str
    semester: Optional[int]
    academic_year: str
    total_due: Decimal
    total_paid: Decimal
    total_fines: Decimal
    total_discounts: Decimal
    net_amount: Decimal
    balance_due: Decimal
    payment_percentage: int
    credit_balance: Decimal
    status: LedgerStatus
    due_date: Optional[datetime]

    @classmethod
    def of(cls, ledger: StudentFeeLedger) -> "LedgerSummary":
        return cls(
            ledger_id=ledger.id,
            student_id=ledger.student_id,
            semester=ledger.semester,
            academic_year=ledger.academic_year,
            total_due=money(ledger.total_due),
            total_paid=money(ledger.total_paid),
            total_fines=money(ledger.total_fines),
            total_discounts=money(ledger.total_discounts),
            net_amount=money(ledger.net_amount),
            balance_due=money(ledger.balance_due),
            payment_percentage=ledger.payment_percentage,
            credit_balance=money(ledger.credit_balance),
            status=ledger.status,
            due_date=ledger.due_date,
        )
