# feeledger/schemas/upgrades.py
#
# Students and courses are owned by the academic side of the system;
# only the fields the semester upgrade needs are modelled here.

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum

from feeledger.schemas.common import Document, ZERO
from feeledger.schemas.ledger import ServiceName


class AcademicStatus(str, Enum):
    active    = "active"
    on_hold   = "on_hold"
    backlog   = "backlog"
    suspended = "suspended"
    graduated = "graduated"
    dropped   = "dropped"


# ── Services opted ───────────────────────────────────────────
class HostelService(BaseModel):
    is_opted: bool = False
    room_type: Optional[str] = "double"
    block_name: Optional[str] = None
    room_number: Optional[str] = None
    opted_at: Optional[datetime] = None


class MessService(BaseModel):
    is_opted: bool = False
    meal_type: Optional[str] = "veg"
    plan_type: Optional[str] = "monthly"
    opted_at: Optional[datetime] = None


class TransportService(BaseModel):
    is_opted: bool = False
    route: Optional[str] = None
    distance_km: Optional[Decimal] = None
    pickup_point: Optional[str] = None
    opted_at: Optional[datetime] = None


class LibraryService(BaseModel):
    is_opted: bool = True
    card_number: Optional[str] = None
    opted_at: Optional[datetime] = None


class ServicesOpted(BaseModel):
    hostel: HostelService = Field(default_factory=HostelService)
    mess: MessService = Field(default_factory=MessService)
    transport: TransportService = Field(default_factory=TransportService)
    library: LibraryService = Field(default_factory=LibraryService)

    def is_opted(self, service: ServiceName) -> bool:
        return getattr(self, service.value).is_opted


class Course(Document):
    name: str
    code: Optional[str] = None
    total_semesters: int = Field(ge=1, le=12)


class Student(Document):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    course_id: Optional[str] = None
    current_semester: int = Field(default=1, ge=1, le=12)
    academic_year: Optional[str] = None
    academic_status: AcademicStatus = AcademicStatus.active
    is_upgrade_eligible: bool = True
    is_active: bool = True
    services_opted: ServicesOpted = Field(default_factory=ServicesOpted)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ── Upgrade log ──────────────────────────────────────────────
class UpgradeType(str, Enum):
    auto   = "auto"
    manual = "manual"
    bulk   = "bulk"


class UpgradeReason(str, Enum):
    semester_completion = "semester_completion"
    manual_promotion    = "manual_promotion"
    bulk_upgrade        = "bulk_upgrade"
    correction          = "correction"
    readmission         = "readmission"


class UpgradeLogStatus(str, Enum):
    completed   = "completed"
    failed      = "failed"
    rolled_back = "rolled_back"


class ServiceAction(str, Enum):
    opted_in  = "opted_in"
    opted_out = "opted_out"
    modified  = "modified"
    no_change = "no_change"


class ServiceChange(BaseModel):
    """A requested change, as sent by the admin."""
    service_name: ServiceName
    action: ServiceAction
    new_data: Dict[str, Any] = {}


class ServiceChangeRecord(BaseModel):
    """An applied change, with the before/after snapshot used by rollback."""
    service_name: ServiceName
    action: ServiceAction
    previous_data: Dict[str, Any] = {}
    new_data: Dict[str, Any] = {}


class SemesterUpgradeLog(Document):
    student_id: str
    course_id: Optional[str] = None
    from_semester: int
    to_semester: int
    academic_year: Optional[str] = None
    upgrade_type: UpgradeType
    upgrade_reason: UpgradeReason
    upgraded_by: str
    upgrade_date: datetime

    service_changes: List[ServiceChangeRecord] = []

    fee_template_id: Optional[str] = None
    generated_ledger_id: Optional[str] = None
    fee_amount: Decimal = ZERO

    status: UpgradeLogStatus = UpgradeLogStatus.completed
    notes: Optional[str] = Field(default=None, max_length=500)
    failure_reason: Optional[str] = None

    is_rolled_back: bool = False
    rolled_back_by: Optional[str] = None
    rollback_date: Optional[datetime] = None
    rollback_reason: Optional[str] = Field(default=None, max_length=300)
    rollback_warnings: List[str] = []


# ── Requests / results ───────────────────────────────────────
class UpgradeStudentRequest(BaseModel):
    reason: UpgradeReason = UpgradeReason.manual_promotion
    notes: Optional[str] = Field(default=None, max_length=500)
    service_changes: List[ServiceChange] = []


class BulkUpgradeRequest(BaseModel):
    student_ids: List[str] = Field(min_length=1)
    exclude_students: List[str] = []
    reason: UpgradeReason = UpgradeReason.bulk_upgrade
    notes: Optional[str] = Field(default=None, max_length=500)


class RollbackRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=300)


class UpgradeSuccess(BaseModel):
    student_id: str
    student_name: str
    from_semester: int
    to_semester: int
    upgrade_log_id: str
    ledger_id: Optional[str] = None


class UpgradeFailure(BaseModel):
    student_id: str
    reason: str


class BulkUpgradeResult(BaseModel):
    successful: List[UpgradeSuccess] = []
    failed: List[UpgradeFailure] = []
    total: int = 0


class UpgradeStats(BaseModel):
    academic_year: Optional[str] = None
    total_upgrades: int = 0
    # upgrade_type → status → count
    by_type: Dict[str, Dict[str, int]] = {}
    unique_students: int = 0
