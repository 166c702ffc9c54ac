from datetime import timedelta
from decimal import Decimal

import pytest

from feeledger.core.database import LEDGERS
from feeledger.core.errors import ConflictError, NotFoundError, StaleWriteError, ValidationError
from feeledger.schemas.ledger import (
    BareLedgerCreate, CustomFeeCreate, DiscountCreate, DiscountType, FineCreate,
    LedgerFromTemplateCreate, LedgerStatus, ServiceName,
)
from feeledger.schemas.upgrades import AcademicStatus
from feeledger.utils.dates import utcnow

pytestmark = pytest.mark.anyio


async def test_create_from_template_respects_service_opt_in(services, make_student, make_template, sent):
    student = make_student(semester=1)
    make_template(1)

    ledger = await services.ledgers.create_from_template(
        LedgerFromTemplateCreate(student_id=student.id, course_id=student.course_id,
                                 semester=1, academic_year="2024-25"),
        "admin-1",
    )

    hostel = next(i for i in ledger.fee_items if i.name == "Hostel Fee")
    assert hostel.is_included is False
    assert ledger.net_amount == Decimal("45000")
    assert ledger.status == LedgerStatus.unpaid
    assert sent[-1]["type"] == "fee_assigned"
    assert sent[-1]["recipient_id"] == student.id


async def test_second_ledger_for_same_term_conflicts(services, make_student, make_template):
    student = make_student(semester=1)
    template = make_template(1)
    body = LedgerFromTemplateCreate(student_id=student.id, template_id=template.id)

    await services.ledgers.create_from_template(body, "admin-1")
    with pytest.raises(ConflictError):
        await services.ledgers.create_from_template(body, "admin-1")


async def test_missing_template_is_a_validation_error(services, make_student):
    student = make_student(semester=1)
    with pytest.raises(ValidationError):
        await services.ledgers.create_from_template(
            LedgerFromTemplateCreate(student_id=student.id, course_id=student.course_id,
                                     semester=5, academic_year="2024-25"),
            "admin-1",
        )


async def test_bare_ledger_takes_students_year(services, make_student):
    student = make_student(semester=3, academic_year="2025-26")
    ledger = await services.ledgers.create_bare(
        BareLedgerCreate(student_id=student.id, semester=3), "admin-1",
    )
    assert ledger.academic_year == "2025-26"
    assert ledger.fee_items == []
    assert ledger.course_id == student.course_id


async def test_fine_raises_net_amount_and_notifies(services, make_ledger, sent):
    ledger = make_ledger()
    updated = await services.ledgers.add_fine(
        ledger.id, FineCreate(name="Late fee", amount=Decimal("500"), reason="Paid late"),
        "accountant-1",
    )
    assert updated.net_amount == Decimal("15500")
    assert updated.fines[0].imposed_by == "accountant-1"
    assert updated.version == ledger.version + 1
    assert sent[-1]["type"] == "fine_added"


async def test_settling_fine_removes_it_from_total(services, make_ledger):
    ledger = make_ledger()
    ledger = await services.ledgers.add_fine(
        ledger.id, FineCreate(name="Late fee", amount=Decimal("500"), reason="late"), "acc",
    )
    settled = await services.ledgers.settle_fine(ledger.id, ledger.fines[0].id, "acc")
    assert settled.total_fines == Decimal("0")
    with pytest.raises(ConflictError):
        await services.ledgers.settle_fine(ledger.id, ledger.fines[0].id, "acc")


async def test_percentage_discount_resolves_against_total_due(services, make_ledger):
    ledger = make_ledger()
    updated = await services.ledgers.add_discount(
        ledger.id,
        DiscountCreate(name="Merit", amount=Decimal("10"), type=DiscountType.percentage,
                       reason="Top of class"),
        "admin-1",
    )
    assert updated.discounts[0].amount == Decimal("1500.00")
    assert updated.discounts[0].percentage == Decimal("10")
    assert updated.net_amount == Decimal("13500.00")


async def test_discount_larger_than_net_amount_is_rejected(services, make_ledger):
    ledger = make_ledger()
    with pytest.raises(ValidationError):
        await services.ledgers.add_discount(
            ledger.id, DiscountCreate(name="Too much", amount=Decimal("20000"), reason="x"),
            "admin-1",
        )
    assert services.ledgers.get(ledger.id).discounts == []


async def test_custom_fee_and_item_inclusion(services, make_ledger):
    ledger = make_ledger()
    ledger = await services.ledgers.add_custom_fee(
        ledger.id, CustomFeeCreate(name="Sports kit", amount=Decimal("1200"), is_optional=True),
        "acc",
    )
    kit = ledger.fee_items[-1]
    assert ledger.total_due == Decimal("16200")

    ledger = await services.ledgers.set_item_inclusion(ledger.id, kit.id, False, "acc")
    assert ledger.total_due == Decimal("15000")

    with pytest.raises(ValidationError):
        await services.ledgers.set_item_inclusion(ledger.id, ledger.fee_items[0].id, False, "acc")
    with pytest.raises(NotFoundError):
        await services.ledgers.set_item_inclusion(ledger.id, "nope", True, "acc")


async def test_service_sync_follows_opt_in(services, db, make_student, make_template):
    student = make_student(semester=1)
    template = make_template(1)
    ledger = await services.ledgers.create_from_template(
        LedgerFromTemplateCreate(student_id=student.id, template_id=template.id), "admin-1",
    )
    assert ledger.total_due == Decimal("45000")

    synced = await services.ledgers.sync_service_items(student.id, ServiceName.hostel, True, "admin-1")
    assert synced.total_due == Decimal("65000")


async def test_service_sync_without_current_ledger_returns_none(services, make_student):
    student = make_student(semester=1)
    assert await services.ledgers.sync_service_items(
        student.id, ServiceName.mess, True, "admin-1") is None


async def test_overdue_lists_only_unpaid_past_due(services, make_ledger):
    late = make_ledger(student_id="s-late", due_date=utcnow() - timedelta(days=2))
    make_ledger(student_id="s-ok")
    overdue = services.ledgers.overdue()
    assert [l.id for l in overdue] == [late.id]
    assert overdue[0].status == LedgerStatus.overdue


async def test_assign_template_isolates_each_student(services, make_student, make_template):
    template = make_template(1)
    first = make_student(semester=1)
    second = make_student(semester=1, first_name="Ravi")
    make_student(semester=1, first_name="Gone", academic_status=AcademicStatus.dropped)
    await services.ledgers.create_from_template(
        LedgerFromTemplateCreate(student_id=first.id, template_id=template.id), "admin-1",
    )

    result = await services.ledgers.assign_template_to_eligible_students(template.id, "admin-1")

    assert result.skipped == [first.id]
    assert len(result.assigned) == 1
    assert services.ledgers.find_for_term(second.id, 1, "2024-25").id == result.assigned[0]
    assert result.failed == []


async def test_concurrent_writer_is_retried(services, db, make_ledger, monkeypatch):
    ledger = make_ledger()
    real_update = db.update
    raced = []

    def racing_update(table, record_id, row, expected_version=None):
        # Someone else writes the ledger between our read and our write, once.
        if table == LEDGERS and not raced:
            raced.append(True)
            current = db.select_one(LEDGERS, record_id)
            real_update(LEDGERS, record_id, current, expected_version=current["version"])
        return real_update(table, record_id, row, expected_version)

    monkeypatch.setattr(db, "update", racing_update)
    updated = await services.ledgers.add_fine(
        ledger.id, FineCreate(name="Late", amount=Decimal("100"), reason="late"), "acc",
    )
    assert updated.version == ledger.version + 2
    assert len(updated.fines) == 1


async def test_writer_gives_up_after_max_attempts(services, db, make_ledger, monkeypatch):
    ledger = make_ledger()

    def always_stale(table, record_id, row, expected_version=None):
        raise StaleWriteError()

    monkeypatch.setattr(db, "update", always_stale)
    with pytest.raises(StaleWriteError):
        await services.ledgers.add_fine(
            ledger.id, FineCreate(name="Late", amount=Decimal("100"), reason="late"), "acc",
        )
