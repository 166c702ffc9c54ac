from decimal import Decimal

import pytest

from feeledger.core.database import LEDGERS, STUDENTS, UPGRADE_LOGS
from feeledger.core.errors import ConflictError, NotFoundError, ValidationError
from feeledger.schemas.ledger import ServiceName
from feeledger.schemas.payments import RecordPaymentRequest
from feeledger.schemas.upgrades import (
    AcademicStatus, ServiceAction, ServiceChange, Student, UpgradeLogStatus, UpgradeReason,
    UpgradeType,
)

pytestmark = pytest.mark.anyio


def _student(db, student_id):
    return Student.model_validate(db.select_one(STUDENTS, student_id))


async def test_upgrade_creates_next_semester_ledger(services, db, make_student, make_template, sent):
    student = make_student(semester=2)
    template = make_template(3)

    log = await services.upgrades.upgrade_one(
        student.id, "admin-1", UpgradeReason.semester_completion,
        service_changes=[ServiceChange(service_name=ServiceName.hostel,
                                       action=ServiceAction.opted_in,
                                       new_data={"room_type": "single"})],
    )

    assert log.status == UpgradeLogStatus.completed
    assert (log.from_semester, log.to_semester) == (2, 3)
    assert log.fee_template_id == template.id
    assert log.service_changes[0].previous_data["is_opted"] is False
    assert log.service_changes[0].new_data["room_type"] == "single"

    upgraded = _student(db, student.id)
    assert upgraded.current_semester == 3
    assert upgraded.services_opted.hostel.is_opted is True

    ledger = services.ledgers.get(log.generated_ledger_id)
    assert ledger.semester == 3
    # Hostel opted in, so the optional hostel line is billed
    assert ledger.net_amount == Decimal("65000")
    assert log.fee_amount == Decimal("65000.00")
    assert {n["type"] for n in sent} >= {"fee_assigned", "semester_upgrade"}


async def test_services_not_opted_are_left_off_the_new_ledger(services, make_student, make_template):
    student = make_student(semester=2)
    make_template(3)
    log = await services.upgrades.upgrade_one(student.id, "admin-1")
    ledger = services.ledgers.get(log.generated_ledger_id)
    assert ledger.net_amount == Decimal("45000")


async def test_missing_template_fails_without_side_effects(services, db, make_student):
    student = make_student(semester=2)

    with pytest.raises(ValidationError):
        await services.upgrades.upgrade_one(student.id, "admin-1")

    assert _student(db, student.id).current_semester == 2
    assert db.count(LEDGERS) == 0
    logs = services.upgrades.history(student_id=student.id)
    assert [l.status for l in logs] == [UpgradeLogStatus.failed]
    assert "template" in logs[0].failure_reason


@pytest.mark.parametrize("overrides", [
    {"semester": 8},
    {"is_upgrade_eligible": False},
    {"academic_status": AcademicStatus.suspended},
])
async def test_ineligible_students_are_refused(services, db, make_student, make_template, overrides):
    student = make_student(**overrides)
    make_template(student.current_semester + 1)
    with pytest.raises(ValidationError):
        await services.upgrades.upgrade_one(student.id, "admin-1")
    assert _student(db, student.id).current_semester == student.current_semester


async def test_unknown_student(services):
    with pytest.raises(NotFoundError):
        await services.upgrades.upgrade_one("nobody", "admin-1")


async def test_partial_write_is_compensated(services, db, make_student, make_template, monkeypatch):
    student = make_student(semester=2)
    make_template(3)
    real_insert = db.insert

    def failing_insert(table, row):
        if table == UPGRADE_LOGS and row["status"] == "completed":
            raise RuntimeError("disk full")
        return real_insert(table, row)

    monkeypatch.setattr(db, "insert", failing_insert)
    with pytest.raises(RuntimeError):
        await services.upgrades.upgrade_one(student.id, "admin-1")

    assert _student(db, student.id).current_semester == 2
    assert db.count(LEDGERS) == 0
    assert [l.status for l in services.upgrades.history(student_id=student.id)] == [
        UpgradeLogStatus.failed
    ]


async def test_existing_next_term_ledger_conflicts(services, db, make_student, make_template, make_ledger):
    student = make_student(semester=2)
    make_template(3)
    make_ledger(student_id=student.id, semester=3)

    with pytest.raises(ConflictError):
        await services.upgrades.upgrade_one(student.id, "admin-1")
    assert _student(db, student.id).current_semester == 2


async def test_bulk_upgrade_isolates_failures(services, db, make_student, make_template):
    make_template(3)
    ok = make_student(semester=2)
    final = make_student(semester=8, first_name="Final")
    skipped = make_student(semester=2, first_name="Skip")

    result = await services.upgrades.upgrade_bulk(
        [ok.id, final.id, ok.id, skipped.id], "admin-1", exclude=[skipped.id],
    )

    assert result.total == 2
    assert [s.student_id for s in result.successful] == [ok.id]
    assert result.successful[0].student_name == "Asha Verma"
    assert [f.student_id for f in result.failed] == [final.id]
    assert "final semester" in result.failed[0].reason
    assert _student(db, skipped.id).current_semester == 2
    assert services.upgrades.history(student_id=ok.id)[0].upgrade_type == UpgradeType.bulk


async def test_rollback_restores_student_and_removes_only_generated_ledger(
    services, db, make_student, make_template, make_ledger,
):
    student = make_student(semester=2)
    make_template(3)
    previous = make_ledger(student_id=student.id, semester=2)
    log = await services.upgrades.upgrade_one(
        student.id, "admin-1",
        service_changes=[ServiceChange(service_name=ServiceName.mess,
                                       action=ServiceAction.opted_in)],
    )

    rolled = await services.upgrades.rollback(log.id, "admin-1", "Promoted by mistake")

    assert rolled.status == UpgradeLogStatus.rolled_back
    assert rolled.is_rolled_back is True
    assert rolled.rolled_back_by == "admin-1"
    assert rolled.rollback_warnings == []
    restored = _student(db, student.id)
    assert restored.current_semester == 2
    assert restored.services_opted.mess.is_opted is False
    assert db.select_one(LEDGERS, log.generated_ledger_id) is None
    assert db.select_one(LEDGERS, previous.id) is not None

    with pytest.raises(ConflictError):
        await services.upgrades.rollback(log.id, "admin-1", "again")


async def test_rollback_flags_money_paid_on_removed_ledger(services, make_student, make_template):
    student = make_student(semester=2)
    make_template(3)
    log = await services.upgrades.upgrade_one(student.id, "admin-1")
    await services.payments.record_manual(
        RecordPaymentRequest(ledger_id=log.generated_ledger_id, amount=Decimal("5000")), "acc",
    )

    rolled = await services.upgrades.rollback(log.id, "admin-1", "Wrong course")

    assert len(rolled.rollback_warnings) == 1
    assert "5000.00" in rolled.rollback_warnings[0]


async def test_rollback_refused_once_student_moved_on(services, make_student, make_template):
    student = make_student(semester=2)
    make_template(3)
    make_template(4)
    first = await services.upgrades.upgrade_one(student.id, "admin-1")
    await services.upgrades.upgrade_one(student.id, "admin-1")

    with pytest.raises(ConflictError):
        await services.upgrades.rollback(first.id, "admin-1", "Too late")


async def test_failed_log_cannot_be_rolled_back(services, make_student):
    student = make_student(semester=2)
    with pytest.raises(ValidationError):
        await services.upgrades.upgrade_one(student.id, "admin-1")
    failed = services.upgrades.history(student_id=student.id)[0]
    with pytest.raises(ConflictError):
        await services.upgrades.rollback(failed.id, "admin-1", "nothing to undo")


async def test_eligible_students_and_stats(services, make_student, make_template):
    make_template(3)
    a = make_student(semester=2)
    make_student(semester=8)
    make_student(semester=2, is_upgrade_eligible=False)

    assert [s.id for s in services.upgrades.eligible_students()] == [a.id]

    await services.upgrades.upgrade_one(a.id, "admin-1")
    stats = services.upgrades.stats("2024-25")
    assert stats.total_upgrades == 1
    assert stats.by_type == {"manual": {"completed": 1}}
    assert stats.unique_students == 1
