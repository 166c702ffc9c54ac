# ============================================================
# feeledger/services/upgrade_service.py
#
# SemesterUpgradeCoordinator: move a student to the next
# semester and give them that semester's ledger.
#
# upgrade_one is ONE unit of work:
#   student   → services changed, current_semester + 1
#   ledger    → new, cloned from the next semester's template
#   log       → status completed, with the service diff
# All three commit together or not at all. A failure leaves the
# student untouched and writes a separate `failed` log instead.
#
# rollback is a compensating action, not an undo: it restores
# the semester and services, deletes exactly the ledger this
# upgrade generated (by id), and records a warning if money was
# already paid against that ledger.
#
# Bulk upgrades run upgrade_one per student; one failure never
# stops the batch.
# ============================================================

from typing import Dict, Iterable, List, Optional, Tuple
import logging

from feeledger.core.config import settings
from feeledger.core.database import (
    FeeDB, COURSES, LEDGERS, PAYMENTS, STUDENTS, SUBSCRIPTIONS, UPGRADE_LOGS,
)
from feeledger.core.errors import ConflictError, FeeLedgerError, NotFoundError, ValidationError
from feeledger.core.unit_of_work import UnitOfWork, retry_on_stale
from feeledger.schemas.common import ZERO, money
from feeledger.schemas.ledger import StudentFeeLedger
from feeledger.schemas.notifications import NotificationType
from feeledger.schemas.subscriptions import TERMINAL_STATUSES, SubscriptionStatus
from feeledger.schemas.upgrades import (
    AcademicStatus, BulkUpgradeResult, Course, SemesterUpgradeLog, ServiceAction,
    ServiceChange, ServiceChangeRecord, Student, UpgradeFailure, UpgradeLogStatus,
    UpgradeReason, UpgradeStats, UpgradeSuccess, UpgradeType,
)
from feeledger.services.activity_service import ActivityLog
from feeledger.services.ledger_service import LedgerService, build_ledger
from feeledger.services.notification_service import N8nNotifier
from feeledger.services.template_service import TemplateCatalog
from feeledger.utils.dates import due_date_from, utcnow

logger = logging.getLogger(__name__)


def apply_service_changes(
    student: Student, requested: Iterable[ServiceChange]
) -> List[ServiceChangeRecord]:
    """Change student.services_opted in place; return before/after records."""
    records = []
    for change in requested:
        name = change.service_name.value
        current = getattr(student.services_opted, name)
        previous = current.model_dump(mode="json")
        data = current.model_dump()

        if change.action == ServiceAction.opted_in:
            data.update(change.new_data)
            data["is_opted"] = True
            data["opted_at"] = utcnow()
        elif change.action == ServiceAction.opted_out:
            data["is_opted"] = False
        elif change.action == ServiceAction.modified:
            data.update(change.new_data)

        updated = type(current).model_validate(data)
        setattr(student.services_opted, name, updated)
        records.append(ServiceChangeRecord(
            service_name=change.service_name,
            action=change.action,
            previous_data=previous,
            new_data=updated.model_dump(mode="json"),
        ))
    return records


def restore_service_changes(student: Student, records: Iterable[ServiceChangeRecord]) -> None:
    for record in records:
        name = record.service_name.value
        if not record.previous_data:
            continue
        model = type(getattr(student.services_opted, name))
        setattr(student.services_opted, name, model.model_validate(record.previous_data))


class SemesterUpgradeCoordinator:

    def __init__(
        self,
        db: FeeDB,
        catalog: TemplateCatalog,
        ledgers: LedgerService,
        activity: ActivityLog,
        notifier: N8nNotifier,
    ):
        self.db = db
        self.catalog = catalog
        self.ledgers = ledgers
        self.activity = activity
        self.notifier = notifier

    # ── Reads ────────────────────────────────────────────────
    def _student(self, student_id: str) -> Student:
        row = self.db.select_one(STUDENTS, student_id)
        if not row:
            raise NotFoundError("Student not found", detail={"student_id": student_id})
        return Student.model_validate(row)

    def _course(self, course_id: Optional[str]) -> Optional[Course]:
        row = self.db.select_one(COURSES, course_id) if course_id else None
        return Course.model_validate(row) if row else None

    def get_log(self, log_id: str) -> SemesterUpgradeLog:
        row = self.db.select_one(UPGRADE_LOGS, log_id)
        if not row:
            raise NotFoundError("Upgrade log not found", detail={"upgrade_log_id": log_id})
        return SemesterUpgradeLog.model_validate(row)

    def eligible_students(
        self,
        course_id: Optional[str] = None,
        semester: Optional[int] = None,
        academic_year: Optional[str] = None,
    ) -> List[Student]:
        eq = {"is_upgrade_eligible": True, "is_active": True,
              "academic_status": AcademicStatus.active}
        if course_id:
            eq["course_id"] = course_id
        if semester:
            eq["current_semester"] = semester
        if academic_year:
            eq["academic_year"] = academic_year

        courses: Dict[str, Optional[Course]] = {}
        eligible = []
        for row in self.db.select(STUDENTS, eq=eq, order_by="current_semester"):
            student = Student.model_validate(row)
            if student.course_id not in courses:
                courses[student.course_id] = self._course(student.course_id)
            course = courses[student.course_id]
            if course and student.current_semester < course.total_semesters:
                eligible.append(student)
        return eligible

    def history(
        self,
        student_id: Optional[str] = None,
        course_id: Optional[str] = None,
        academic_year: Optional[str] = None,
        upgrade_type: Optional[UpgradeType] = None,
    ) -> List[SemesterUpgradeLog]:
        eq = {}
        if student_id:
            eq["student_id"] = student_id
        if course_id:
            eq["course_id"] = course_id
        if academic_year:
            eq["academic_year"] = academic_year
        if upgrade_type:
            eq["upgrade_type"] = upgrade_type
        rows = self.db.select(UPGRADE_LOGS, eq=eq, order_by="upgrade_date", desc=True)
        return [SemesterUpgradeLog.model_validate(r) for r in rows]

    def stats(self, academic_year: Optional[str] = None) -> UpgradeStats:
        logs = self.history(academic_year=academic_year)
        stats = UpgradeStats(academic_year=academic_year, total_upgrades=len(logs))
        for log in logs:
            by_status = stats.by_type.setdefault(log.upgrade_type.value, {})
            by_status[log.status.value] = by_status.get(log.status.value, 0) + 1
        stats.unique_students = len({log.student_id for log in logs})
        return stats

    # ── Upgrade ──────────────────────────────────────────────
    @staticmethod
    def _check_eligible(student: Student, course: Optional[Course]) -> None:
        if course is None:
            raise ValidationError("Student is not enrolled in a known course")
        if not student.is_upgrade_eligible:
            raise ValidationError("Student is not eligible for upgrade")
        if student.academic_status != AcademicStatus.active:
            raise ValidationError(
                f"Student academic status is {student.academic_status.value}, not active"
            )
        if student.current_semester >= course.total_semesters:
            raise ValidationError(
                f"Student is already in the final semester ({course.total_semesters})"
            )

    async def upgrade_one(
        self,
        student_id: str,
        actor: str,
        reason: UpgradeReason = UpgradeReason.manual_promotion,
        service_changes: Optional[List[ServiceChange]] = None,
        notes: Optional[str] = None,
        upgrade_type: UpgradeType = UpgradeType.manual,
    ) -> SemesterUpgradeLog:
        student = self._student(student_id)
        try:
            log, ledger = retry_on_stale(
                lambda: self._upgrade(student_id, actor, reason, service_changes or [],
                                      notes, upgrade_type)
            )
        except FeeLedgerError as e:
            self._write_failed_log(student, actor, reason, upgrade_type, notes, e.message)
            raise
        except Exception as e:
            logger.error(f"Upgrade of student {student_id} crashed: {e}", exc_info=True)
            self._write_failed_log(student, actor, reason, upgrade_type, notes, str(e))
            raise

        logger.info(
            f"Student {student_id} upgraded {log.from_semester} → {log.to_semester} "
            f"(ledger {log.generated_ledger_id})"
        )
        await self.ledgers.announce_created(ledger, actor)
        await self.activity.log_activity(
            action="upgrade.completed", user_id=actor,
            entity_type="semester_upgrade", entity_id=log.id,
            metadata={"student_id": student_id, "from": log.from_semester,
                      "to": log.to_semester, "ledger_id": log.generated_ledger_id},
        )
        await self.notifier.notify(
            student_id, NotificationType.semester_upgrade,
            title="Semester upgraded",
            message=f"You have been promoted to semester {log.to_semester}",
            entity_type="semester_upgrade", entity_id=log.id,
        )
        return log

    def _upgrade(
        self,
        student_id: str,
        actor: str,
        reason: UpgradeReason,
        service_changes: List[ServiceChange],
        notes: Optional[str],
        upgrade_type: UpgradeType,
    ) -> Tuple[SemesterUpgradeLog, StudentFeeLedger]:
        student = self._student(student_id)
        course = self._course(student.course_id)
        self._check_eligible(student, course)
        read_version = student.version
        from_semester = student.current_semester
        to_semester = from_semester + 1

        changes = apply_service_changes(student, service_changes)
        template = self.catalog.require_for_term(course.id, to_semester, student.academic_year)
        student.current_semester = to_semester

        ledger = build_ledger(
            template.clone_for_student(student.id), actor,
            due_date=due_date_from(utcnow(), settings.DEFAULT_DUE_DAYS),
            services_opted=student.services_opted,
        )
        if self.ledgers.find_for_term(student.id, ledger.semester, ledger.academic_year):
            raise ConflictError(
                f"A ledger for semester {to_semester} already exists",
                detail={"student_id": student.id, "academic_year": ledger.academic_year},
            )

        log = SemesterUpgradeLog(
            student_id=student.id,
            course_id=course.id,
            from_semester=from_semester,
            to_semester=to_semester,
            academic_year=student.academic_year or ledger.academic_year,
            upgrade_type=upgrade_type,
            upgrade_reason=reason,
            upgraded_by=actor,
            upgrade_date=utcnow(),
            service_changes=changes,
            fee_template_id=template.id,
            generated_ledger_id=ledger.id,
            fee_amount=money(ledger.net_amount),
            status=UpgradeLogStatus.completed,
            notes=notes,
        )

        uow = UnitOfWork(self.db)
        uow.update(STUDENTS, student.id, student.to_row(), expected_version=read_version)
        uow.insert(LEDGERS, ledger.to_row())
        uow.insert(UPGRADE_LOGS, log.to_row())
        uow.commit()
        return log, ledger

    def _write_failed_log(
        self,
        student: Student,
        actor: str,
        reason: UpgradeReason,
        upgrade_type: UpgradeType,
        notes: Optional[str],
        failure: str,
    ) -> None:
        log = SemesterUpgradeLog(
            student_id=student.id,
            course_id=student.course_id,
            from_semester=student.current_semester,
            to_semester=student.current_semester + 1,
            academic_year=student.academic_year,
            upgrade_type=upgrade_type,
            upgrade_reason=reason,
            upgraded_by=actor,
            upgrade_date=utcnow(),
            status=UpgradeLogStatus.failed,
            notes=notes,
            failure_reason=failure[:500],
        )
        try:
            self.db.insert(UPGRADE_LOGS, log.to_row())
        except Exception as e:
            logger.error(f"Could not write failed upgrade log for {student.id}: {e}")
        logger.warning(f"Upgrade of student {student.id} failed: {failure}")

    async def upgrade_bulk(
        self,
        student_ids: List[str],
        actor: str,
        reason: UpgradeReason = UpgradeReason.bulk_upgrade,
        notes: Optional[str] = None,
        exclude: Iterable[str] = (),
    ) -> BulkUpgradeResult:
        excluded = set(exclude)
        queue = [sid for sid in dict.fromkeys(student_ids) if sid not in excluded]
        result = BulkUpgradeResult(total=len(queue))

        for student_id in queue:
            try:
                log = await self.upgrade_one(
                    student_id, actor, reason, notes=notes, upgrade_type=UpgradeType.bulk,
                )
                student = self._student(student_id)
                result.successful.append(UpgradeSuccess(
                    student_id=student_id,
                    student_name=student.full_name,
                    from_semester=log.from_semester,
                    to_semester=log.to_semester,
                    upgrade_log_id=log.id,
                    ledger_id=log.generated_ledger_id,
                ))
            except FeeLedgerError as e:
                result.failed.append(UpgradeFailure(student_id=student_id, reason=e.message))
            except Exception as e:
                result.failed.append(UpgradeFailure(student_id=student_id, reason=str(e)))

        logger.info(
            f"Bulk upgrade: {len(result.successful)} succeeded, {len(result.failed)} failed"
        )
        await self.activity.log_activity(
            action="upgrade.bulk", user_id=actor, entity_type="semester_upgrade",
            metadata={"total": result.total, "successful": len(result.successful),
                      "failed": len(result.failed)},
        )
        return result

    # ── Rollback ─────────────────────────────────────────────
    def _rollback_warnings(self, ledger_id: str) -> List[str]:
        warnings = []
        payments = self.db.select(PAYMENTS, eq={"ledger_id": ledger_id})
        if payments:
            total = money(sum((money(p["amount"]) for p in payments), ZERO))
            warnings.append(
                f"{len(payments)} payment(s) totalling {total} were recorded against "
                f"the removed ledger {ledger_id}"
            )
        open_subs = [
            s for s in self.db.select(SUBSCRIPTIONS, eq={"ledger_id": ledger_id})
            if SubscriptionStatus(s["status"]) not in TERMINAL_STATUSES
        ]
        if open_subs:
            warnings.append(
                f"{len(open_subs)} open installment plan(s) reference the removed ledger "
                f"{ledger_id}; cancel them at the gateway"
            )
        return warnings

    async def rollback(self, log_id: str, actor: str, reason: str) -> SemesterUpgradeLog:
        def attempt() -> SemesterUpgradeLog:
            log = self.get_log(log_id)
            if log.is_rolled_back:
                raise ConflictError("Upgrade has already been rolled back")
            if log.status != UpgradeLogStatus.completed:
                raise ConflictError(f"A {log.status.value} upgrade cannot be rolled back")

            student = self._student(log.student_id)
            if student.current_semester != log.to_semester:
                raise ConflictError(
                    f"Student is now in semester {student.current_semester}, "
                    f"not {log.to_semester}; roll back later upgrades first"
                )
            log_version, student_version = log.version, student.version

            warnings: List[str] = []
            uow = UnitOfWork(self.db)
            if log.generated_ledger_id:
                if self.db.select_one(LEDGERS, log.generated_ledger_id):
                    warnings = self._rollback_warnings(log.generated_ledger_id)
                    uow.delete(LEDGERS, log.generated_ledger_id)
                else:
                    warnings.append(f"Ledger {log.generated_ledger_id} was already removed")

            restore_service_changes(student, log.service_changes)
            student.current_semester = log.from_semester

            log.status = UpgradeLogStatus.rolled_back
            log.is_rolled_back = True
            log.rolled_back_by = actor
            log.rollback_date = utcnow()
            log.rollback_reason = reason
            log.rollback_warnings = warnings

            uow.update(STUDENTS, student.id, student.to_row(), expected_version=student_version)
            uow.update(UPGRADE_LOGS, log.id, log.to_row(), expected_version=log_version)
            stored = uow.commit()[-1]
            return SemesterUpgradeLog.model_validate(stored)

        log = retry_on_stale(attempt)
        for warning in log.rollback_warnings:
            logger.warning(f"Rollback of upgrade {log.id}: {warning}")
        logger.info(
            f"Upgrade {log.id} rolled back by {actor}: student {log.student_id} "
            f"back to semester {log.from_semester}"
        )
        await self.activity.log_activity(
            action="upgrade.rolled_back", user_id=actor,
            entity_type="semester_upgrade", entity_id=log.id,
            metadata={"reason": reason, "deleted_ledger_id": log.generated_ledger_id,
                      "warnings": log.rollback_warnings},
        )
        await self.notifier.notify(
            log.student_id, NotificationType.semester_upgrade,
            title="Semester upgrade reversed",
            message=f"Your promotion to semester {log.to_semester} was reversed: {reason}",
            entity_type="semester_upgrade", entity_id=log.id,
        )
        return log
