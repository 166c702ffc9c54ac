# feeledger/schemas/templates.py
#
# Fee templates come from the catalog (managed elsewhere). The ledger
# only ever reads them and clones them into a LedgerSeed.

from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal

from feeledger.schemas.common import Document, ZERO
from feeledger.schemas.ledger import FeeItemMeta, LedgerSeed, LedgerSeedItem, ServiceName


class TemplateItem(BaseModel):
    category_id: Optional[str] = None
    name: str
    amount: Decimal = Field(ge=0)
    meta: Optional[FeeItemMeta] = None
    is_optional: bool = False
    service: Optional[ServiceName] = None
    description: Optional[str] = Field(default=None, max_length=200)


class FeeTemplate(Document):
    course_id: str
    semester: int = Field(ge=1, le=12)
    academic_year: str                      # e.g. "2024-25"
    template_name: str
    fee_items: List[TemplateItem] = []
    is_active: bool = True
    description: Optional[str] = None

    @property
    def total_amount(self) -> Decimal:
        return sum((item.amount for item in self.fee_items), ZERO)

    def clone_for_student(self, student_id: str) -> LedgerSeed:
        return LedgerSeed(
            student_id=student_id,
            course_id=self.course_id,
            semester=self.semester,
            academic_year=self.academic_year,
            template_id=self.id,
            fee_items=[
                LedgerSeedItem(
                    category_id=item.category_id,
                    name=item.name,
                    original_amount=item.amount,
                    meta=item.meta,
                    is_optional=item.is_optional,
                    service=item.service,
                    description=item.description,
                )
                for item in self.fee_items
            ],
            total_due=self.total_amount,
        )


class AssignmentResult(BaseModel):
    template_id: str
    assigned: List[str] = []                # ledger ids created
    skipped: List[str] = []                 # student ids that already had a ledger
    failed: List[dict] = []                 # {"student_id", "reason"}
