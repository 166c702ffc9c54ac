# ============================================================
# feeledger/services/ledger_service.py
#
# Everything that creates or changes a StudentFeeLedger
# (payments excepted, see payment_service.py).
#
# Write pattern for every mutation:
#   1. read the ledger document (with its version)
#   2. change items / fines / discounts in memory
#   3. recompute() the derived totals
#   4. write back with expected_version
#   5. lost the race? re-read and repeat (mutate_with_retry)
#
# Read paths return freshly recomputed copies so an "overdue"
# status is current even if nothing was written since the due
# date passed.
# ============================================================

from datetime import datetime
from typing import Callable, List, Optional, TypeVar
import logging

from feeledger.core.config import settings
from feeledger.core.database import FeeDB, LEDGERS, STUDENTS
from feeledger.core.errors import ConflictError, FeeLedgerError, NotFoundError, ValidationError
from feeledger.core.unit_of_work import mutate_with_retry
from feeledger.schemas.common import ZERO, money
from feeledger.schemas.ledger import (
    BareLedgerCreate, CustomFeeCreate, CustomMeta, Discount, DiscountCreate, DiscountType,
    FeeItem, Fine, FineCreate, LedgerFromTemplateCreate, LedgerSeed, LedgerStatus, LedgerSummary,
    ServiceName, StudentFeeLedger,
)
from feeledger.schemas.notifications import NotificationType
from feeledger.schemas.templates import AssignmentResult
from feeledger.schemas.upgrades import AcademicStatus, ServicesOpted, Student
from feeledger.services.activity_service import ActivityLog
from feeledger.services.notification_service import N8nNotifier
from feeledger.services.template_service import TemplateCatalog
from feeledger.utils.dates import academic_year_for, due_date_from, ensure_aware, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_ledger(
    seed: LedgerSeed,
    actor: str,
    due_date: Optional[datetime] = None,
    services_opted: Optional[ServicesOpted] = None,
    now: Optional[datetime] = None,
) -> StudentFeeLedger:
    """
    Turn a template clone into a ledger document (not yet stored).
    Optional service items the student has not opted into are kept
    but excluded, so a later opt-in only has to flip is_included.
    """
    items = []
    for seed_item in seed.fee_items:
        item = FeeItem(
            category_id=seed_item.category_id,
            name=seed_item.name,
            original_amount=money(seed_item.original_amount),
            is_optional=seed_item.is_optional,
            service=seed_item.service,
            meta=seed_item.meta,
            notes=seed_item.description,
        )
        if services_opted is not None and item.is_optional:
            service = item.service_name()
            if service is not None and not services_opted.is_opted(service):
                item.is_included = False
        items.append(item)

    ledger = StudentFeeLedger(
        student_id=seed.student_id,
        course_id=seed.course_id,
        semester=seed.semester,
        academic_year=seed.academic_year,
        template_id=seed.template_id,
        fee_items=items,
        due_date=ensure_aware(due_date),
        generated_by=actor,
        last_modified_by=actor,
    )
    return ledger.recompute(now)


class LedgerService:

    def __init__(
        self,
        db: FeeDB,
        catalog: TemplateCatalog,
        activity: ActivityLog,
        notifier: N8nNotifier,
    ):
        self.db = db
        self.catalog = catalog
        self.activity = activity
        self.notifier = notifier

    # ── Reads ────────────────────────────────────────────────
    def get(self, ledger_id: str, now: Optional[datetime] = None) -> StudentFeeLedger:
        row = self.db.select_one(LEDGERS, ledger_id)
        if not row:
            raise NotFoundError("Fee ledger not found", detail={"ledger_id": ledger_id})
        return StudentFeeLedger.model_validate(row).recompute(now)

    def find_for_term(
        self, student_id: str, semester: Optional[int], academic_year: str
    ) -> Optional[StudentFeeLedger]:
        row = self.db.find_one(
            LEDGERS, student_id=student_id, semester=semester, academic_year=academic_year
        )
        return StudentFeeLedger.model_validate(row).recompute() if row else None

    def list_for_student(self, student_id: str) -> List[StudentFeeLedger]:
        rows = self.db.select(LEDGERS, eq={"student_id": student_id}, order_by="created_at")
        return [StudentFeeLedger.model_validate(r).recompute() for r in rows]

    def overdue(self, now: Optional[datetime] = None) -> List[StudentFeeLedger]:
        now = now or utcnow()
        rows = self.db.select(LEDGERS, lt={"due_date": now}, order_by="due_date")
        ledgers = [StudentFeeLedger.model_validate(r).recompute(now) for r in rows]
        return [l for l in ledgers if l.status == LedgerStatus.overdue]

    def summary(self, ledger_id: str) -> LedgerSummary:
        return LedgerSummary.of(self.get(ledger_id))

    def _student(self, student_id: str) -> Optional[Student]:
        row = self.db.select_one(STUDENTS, student_id)
        return Student.model_validate(row) if row else None

    # ── Creation ─────────────────────────────────────────────
    async def create(
        self,
        seed: LedgerSeed,
        actor: str,
        due_date: Optional[datetime] = None,
        services_opted: Optional[ServicesOpted] = None,
    ) -> StudentFeeLedger:
        """One ledger per (student, semester, academic year)."""
        if self.find_for_term(seed.student_id, seed.semester, seed.academic_year):
            raise ConflictError(
                "A fee ledger already exists for this student and term",
                detail={"student_id": seed.student_id, "semester": seed.semester,
                        "academic_year": seed.academic_year},
            )
        ledger = build_ledger(seed, actor, due_date, services_opted)
        # The unique index still catches a concurrent create.
        self.db.insert(LEDGERS, ledger.to_row())
        await self.announce_created(ledger, actor)
        return ledger

    async def announce_created(self, ledger: StudentFeeLedger, actor: str) -> None:
        logger.info(
            f"Ledger {ledger.id} created for student {ledger.student_id} "
            f"(sem {ledger.semester}, {ledger.academic_year}) net={ledger.net_amount}"
        )
        await self.activity.log_activity(
            action="ledger.created", user_id=actor,
            entity_type="student_fee", entity_id=ledger.id,
            metadata={"student_id": ledger.student_id, "semester": ledger.semester,
                      "academic_year": ledger.academic_year,
                      "net_amount": str(ledger.net_amount)},
        )
        await self.notifier.notify(
            ledger.student_id, NotificationType.fee_assigned,
            title="Fees assigned",
            message=(f"Fees of {money(ledger.net_amount)} have been assigned for "
                     f"{ledger.academic_year}" +
                     (f", semester {ledger.semester}" if ledger.semester else "")),
            entity_type="student_fee", entity_id=ledger.id,
        )

    async def create_from_template(
        self, body: LedgerFromTemplateCreate, actor: str
    ) -> StudentFeeLedger:
        if body.template_id:
            template = self.catalog.get(body.template_id)
        else:
            template = self.catalog.require_for_term(
                body.course_id, body.semester, body.academic_year
            )
        student = self._student(body.student_id)
        due_date = body.due_date or due_date_from(utcnow(), settings.DEFAULT_DUE_DAYS)
        return await self.create(
            template.clone_for_student(body.student_id),
            actor,
            due_date=due_date,
            services_opted=student.services_opted if student else None,
        )

    async def create_bare(self, body: BareLedgerCreate, actor: str) -> StudentFeeLedger:
        """An empty ledger that custom fees can be added to."""
        student = self._student(body.student_id)
        academic_year = (
            body.academic_year
            or (student.academic_year if student else None)
            or academic_year_for(utcnow())
        )
        seed = LedgerSeed(
            student_id=body.student_id,
            course_id=body.course_id or (student.course_id if student else None),
            semester=body.semester,
            academic_year=academic_year,
        )
        return await self.create(
            seed, actor, due_date=due_date_from(utcnow(), settings.DEFAULT_DUE_DAYS)
        )

    # ── Mutations ────────────────────────────────────────────
    def _mutate(self, ledger_id: str, actor: str, fn: Callable[[StudentFeeLedger], T]):
        def apply(ledger: StudentFeeLedger) -> T:
            ledger.recompute()
            outcome = fn(ledger)
            ledger.last_modified_by = actor
            ledger.recompute()
            return outcome

        row = self.db.select_one(LEDGERS, ledger_id)
        if not row:
            raise NotFoundError("Fee ledger not found", detail={"ledger_id": ledger_id})
        return mutate_with_retry(self.db, LEDGERS, ledger_id, StudentFeeLedger, apply)

    async def add_fine(self, ledger_id: str, body: FineCreate, actor: str) -> StudentFeeLedger:
        def apply(ledger: StudentFeeLedger) -> Fine:
            fine = Fine(name=body.name, amount=money(body.amount), reason=body.reason,
                        imposed_by=actor)
            ledger.fines.append(fine)
            return fine

        ledger, fine = self._mutate(ledger_id, actor, apply)
        await self.activity.log_activity(
            action="ledger.fine_added", user_id=actor,
            entity_type="student_fee", entity_id=ledger.id,
            metadata={"fine_id": fine.id, "amount": str(fine.amount), "reason": fine.reason},
        )
        await self.notifier.notify(
            ledger.student_id, NotificationType.fine_added,
            title="Fine added",
            message=f"A fine of {fine.amount} was added: {fine.reason}",
            entity_type="student_fee", entity_id=ledger.id,
        )
        return ledger

    async def add_discount(
        self, ledger_id: str, body: DiscountCreate, actor: str
    ) -> StudentFeeLedger:
        def apply(ledger: StudentFeeLedger) -> Discount:
            if body.type == DiscountType.percentage:
                amount = money(ledger.total_due * body.amount / 100)
                percentage = body.amount
            else:
                amount = money(body.amount)
                percentage = None
            if amount > ledger.net_amount:
                raise ValidationError(
                    "Discount exceeds the amount owed",
                    detail={"discount": str(amount), "net_amount": str(ledger.net_amount)},
                )
            discount = Discount(name=body.name, amount=amount, type=body.type,
                                percentage=percentage, reason=body.reason, approved_by=actor)
            ledger.discounts.append(discount)
            return discount

        ledger, discount = self._mutate(ledger_id, actor, apply)
        await self.activity.log_activity(
            action="ledger.discount_applied", user_id=actor,
            entity_type="student_fee", entity_id=ledger.id,
            metadata={"discount_id": discount.id, "amount": str(discount.amount),
                      "type": discount.type.value},
        )
        await self.notifier.notify(
            ledger.student_id, NotificationType.discount_applied,
            title="Discount applied",
            message=f"A discount of {discount.amount} was applied: {discount.reason}",
            entity_type="student_fee", entity_id=ledger.id,
        )
        return ledger

    async def set_item_inclusion(
        self, ledger_id: str, item_id: str, included: bool, actor: str
    ) -> StudentFeeLedger:
        def apply(ledger: StudentFeeLedger) -> None:
            item = ledger.item(item_id)
            if item is None:
                raise NotFoundError("Fee item not found", detail={"item_id": item_id})
            _set_inclusion(item, included)

        ledger, _ = self._mutate(ledger_id, actor, apply)
        await self.activity.log_activity(
            action="ledger.item_included" if included else "ledger.item_excluded",
            user_id=actor, entity_type="student_fee", entity_id=ledger.id,
            metadata={"item_id": item_id},
        )
        return ledger

    async def add_custom_fee(
        self, ledger_id: str, body: CustomFeeCreate, actor: str
    ) -> StudentFeeLedger:
        def apply(ledger: StudentFeeLedger) -> FeeItem:
            item = FeeItem(name=body.name, original_amount=money(body.amount),
                           notes=body.notes, is_optional=body.is_optional, meta=CustomMeta())
            ledger.fee_items.append(item)
            return item

        ledger, item = self._mutate(ledger_id, actor, apply)
        await self.activity.log_activity(
            action="ledger.custom_fee_added", user_id=actor,
            entity_type="student_fee", entity_id=ledger.id,
            metadata={"item_id": item.id, "name": item.name, "amount": str(item.original_amount)},
        )
        await self.notifier.notify(
            ledger.student_id, NotificationType.fee_assigned,
            title="New fee added",
            message=f"{item.name} ({item.original_amount}) was added to your fees",
            entity_type="student_fee", entity_id=ledger.id,
        )
        return ledger

    async def settle_fine(self, ledger_id: str, fine_id: str, actor: str) -> StudentFeeLedger:
        def apply(ledger: StudentFeeLedger) -> Fine:
            fine = ledger.fine(fine_id)
            if fine is None:
                raise NotFoundError("Fine not found", detail={"fine_id": fine_id})
            if fine.is_paid:
                raise ConflictError("Fine is already settled")
            fine.is_paid = True
            fine.paid_at = utcnow()
            return fine

        ledger, fine = self._mutate(ledger_id, actor, apply)
        await self.activity.log_activity(
            action="ledger.fine_settled", user_id=actor,
            entity_type="student_fee", entity_id=ledger.id,
            metadata={"fine_id": fine.id, "amount": str(fine.amount)},
        )
        return ledger

    async def sync_service_items(
        self, student_id: str, service: ServiceName, opted: bool, actor: str
    ) -> Optional[StudentFeeLedger]:
        """
        Follow a service opt-in/out on the student's current-term
        ledger. Returns None when that ledger does not exist yet.
        """
        student = self._student(student_id)
        if student is None:
            raise NotFoundError("Student not found", detail={"student_id": student_id})
        current = self.find_for_term(student_id, student.current_semester, student.academic_year)
        if current is None:
            logger.info(f"No current ledger for student {student_id}; {service.value} sync skipped")
            return None

        def apply(ledger: StudentFeeLedger) -> int:
            changed = 0
            for item in ledger.fee_items:
                if item.is_optional and item.service_name() == service and item.is_included != opted:
                    _set_inclusion(item, opted)
                    changed += 1
            return changed

        ledger, changed = self._mutate(current.id, actor, apply)
        if changed:
            await self.activity.log_activity(
                action="ledger.service_synced", user_id=actor,
                entity_type="student_fee", entity_id=ledger.id,
                metadata={"service": service.value, "opted": opted, "items": changed},
            )
        return ledger

    # ── Mass assignment ──────────────────────────────────────
    def eligible_for_template(self, course_id: str, semester: int) -> List[Student]:
        rows = self.db.select(
            STUDENTS,
            eq={"course_id": course_id, "current_semester": semester,
                "is_active": True, "academic_status": AcademicStatus.active},
        )
        return [Student.model_validate(r) for r in rows]

    async def assign_template_to_eligible_students(
        self, template_id: str, actor: str
    ) -> AssignmentResult:
        """
        Give every active student of the template's course/semester a
        ledger. Each student stands alone: a failure is reported and
        the loop moves on.
        """
        template = self.catalog.get(template_id)
        result = AssignmentResult(template_id=template_id)
        due_date = due_date_from(utcnow(), settings.DEFAULT_DUE_DAYS)

        for student in self.eligible_for_template(template.course_id, template.semester):
            if self.find_for_term(student.id, template.semester, template.academic_year):
                result.skipped.append(student.id)
                continue
            try:
                ledger = await self.create(
                    template.clone_for_student(student.id), actor,
                    due_date=due_date, services_opted=student.services_opted,
                )
                result.assigned.append(ledger.id)
            except ConflictError:
                result.skipped.append(student.id)
            except FeeLedgerError as e:
                result.failed.append({"student_id": student.id, "reason": e.message})
            except Exception as e:
                logger.error(f"Assigning template {template_id} to {student.id} failed: {e}",
                             exc_info=True)
                result.failed.append({"student_id": student.id, "reason": str(e)})

        logger.info(
            f"Template {template_id}: assigned={len(result.assigned)} "
            f"skipped={len(result.skipped)} failed={len(result.failed)}"
        )
        await self.activity.log_activity(
            action="template.assigned", user_id=actor,
            entity_type="fee_template", entity_id=template_id,
            metadata={"assigned": len(result.assigned), "skipped": len(result.skipped),
                      "failed": len(result.failed)},
        )
        return result


def _set_inclusion(item: FeeItem, included: bool) -> None:
    if not included:
        if not item.is_optional:
            raise ValidationError(f"'{item.name}' is not optional and cannot be excluded")
        if item.paid > ZERO:
            raise ValidationError(
                f"'{item.name}' already has payments and cannot be excluded",
                detail={"item_id": item.id, "paid": str(item.paid)},
            )
    item.is_included = included
    item.last_updated = utcnow()
