# feeledger/services/template_service.py
#
# Read-only view of the fee template catalog. Templates are
# authored elsewhere; the ledger only looks them up by id or by
# (course, semester, academic year) and clones them.

from typing import Optional
import logging

from feeledger.core.database import FeeDB, FEE_TEMPLATES
from feeledger.core.errors import NotFoundError, ValidationError
from feeledger.schemas.templates import FeeTemplate

logger = logging.getLogger(__name__)


class TemplateCatalog:

    def __init__(self, db: FeeDB):
        self.db = db

    def get(self, template_id: str) -> FeeTemplate:
        row = self.db.select_one(FEE_TEMPLATES, template_id)
        if not row:
            raise NotFoundError("Fee template not found", detail={"template_id": template_id})
        return FeeTemplate.model_validate(row)

    def find_for_term(
        self, course_id: str, semester: int, academic_year: Optional[str] = None
    ) -> Optional[FeeTemplate]:
        """
        The active template for a course semester. Without an academic
        year, the most recently created one wins.
        """
        eq = {"course_id": course_id, "semester": semester, "is_active": True}
        if academic_year:
            eq["academic_year"] = academic_year
        rows = self.db.select(FEE_TEMPLATES, eq=eq, order_by="created_at", desc=True, limit=1)
        return FeeTemplate.model_validate(rows[0]) if rows else None

    def require_for_term(
        self, course_id: str, semester: int, academic_year: Optional[str] = None
    ) -> FeeTemplate:
        template = self.find_for_term(course_id, semester, academic_year)
        if template is None:
            raise ValidationError(
                f"No active fee template for semester {semester}",
                detail={"course_id": course_id, "semester": semester,
                        "academic_year": academic_year},
            )
        return template
