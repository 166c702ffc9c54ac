from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from feeledger.core.errors import ValidationError
from feeledger.schemas.common import money
from feeledger.schemas.ledger import (
    Discount, FeeItem, FeeItemStatus, Fine, HostelMeta, LedgerSeed, LedgerSeedItem,
    LedgerStatus, LedgerSummary, ServiceName, StudentFeeLedger,
)
from feeledger.schemas.upgrades import ServicesOpted
from feeledger.services.ledger_service import _set_inclusion, build_ledger
from feeledger.services.payment_service import _resolve_targets, allocate

NOW = datetime(2024, 8, 1, tzinfo=timezone.utc)


def _ledger(*items, due_in_days=30):
    ledger = StudentFeeLedger(
        student_id="s1",
        semester=1,
        academic_year="2024-25",
        fee_items=list(items),
        due_date=NOW + timedelta(days=due_in_days),
        generated_by="admin-1",
    )
    return ledger.recompute(NOW)


def _item(name, amount, **kw):
    return FeeItem(name=name, original_amount=Decimal(amount), **kw)


def test_recompute_sums_included_items_only():
    ledger = _ledger(
        _item("Tuition", "10000"),
        _item("Hostel", "5000", is_optional=True, is_included=False),
    )
    assert ledger.total_due == Decimal("10000")
    assert ledger.net_amount == Decimal("10000")
    assert ledger.status == LedgerStatus.unpaid


def test_net_amount_adds_unpaid_fines_and_subtracts_discounts():
    ledger = _ledger(_item("Tuition", "10000"))
    ledger.fines.append(Fine(name="Late", amount=Decimal("500"), reason="late", imposed_by="a"))
    ledger.fines.append(Fine(name="Old", amount=Decimal("300"), reason="x", imposed_by="a",
                             is_paid=True))
    ledger.discounts.append(Discount(name="Merit", amount=Decimal("1000"), reason="merit",
                                     approved_by="a"))
    ledger.recompute(NOW)

    assert ledger.total_fines == Decimal("500")
    assert ledger.total_discounts == Decimal("1000")
    assert ledger.net_amount == Decimal("9500")


def test_recompute_is_idempotent():
    ledger = _ledger(_item("Tuition", "10000", paid=Decimal("2500")), _item("Lab", "5000"))
    first = ledger.recompute(NOW).model_dump()
    second = ledger.recompute(NOW).model_dump()
    assert first == second


def test_status_paid_iff_total_paid_covers_net_amount():
    ledger = _ledger(_item("Tuition", "10000", paid=Decimal("10000")))
    assert ledger.status == LedgerStatus.paid

    ledger.fee_items[0].paid = Decimal("9999.99")
    ledger.recompute(NOW)
    assert ledger.status == LedgerStatus.partial


def test_overdue_when_due_date_passed_and_not_paid():
    ledger = _ledger(_item("Tuition", "10000", paid=Decimal("100")), due_in_days=-1)
    assert ledger.status == LedgerStatus.overdue

    ledger.fee_items[0].paid = Decimal("10000")
    ledger.recompute(NOW)
    assert ledger.status == LedgerStatus.paid


def test_item_cannot_be_paid_beyond_its_amount():
    with pytest.raises(ValueError):
        FeeItem(name="Tuition", original_amount=Decimal("100"), paid=Decimal("101"))


def test_greedy_allocation_in_given_order():
    # 12000 across Tuition=10000, Lab=5000
    ledger = _ledger(_item("Tuition", "10000"), _item("Lab", "5000"))
    tuition, lab = ledger.fee_items

    allocations, remainder = allocate(ledger, [tuition.id, lab.id], Decimal("12000"))
    ledger.recompute(NOW)

    assert remainder == Decimal("0")
    assert [a.amount for a in allocations] == [Decimal("10000"), Decimal("2000")]
    assert tuition.paid == Decimal("10000") and tuition.status == FeeItemStatus.paid
    assert lab.paid == Decimal("2000") and lab.status == FeeItemStatus.partial
    assert ledger.total_paid == Decimal("12000")
    assert ledger.status == LedgerStatus.partial


def test_allocation_never_exceeds_item_balance_and_reports_remainder():
    ledger = _ledger(_item("Tuition", "1000", paid=Decimal("400")), _item("Lab", "500"))
    tuition, lab = ledger.fee_items

    allocations, remainder = allocate(ledger, [tuition.id], Decimal("750"))

    assert allocations[0].amount == Decimal("600")
    assert remainder == Decimal("150")
    assert lab.paid == Decimal("0")


def test_discount_then_full_payment_is_paid():
    ledger = _ledger(_item("Tuition", "10000"), _item("Lab", "5000"))
    tuition, lab = ledger.fee_items
    allocate(ledger, [tuition.id, lab.id], Decimal("12000"))
    ledger.discounts.append(Discount(name="Sibling", amount=Decimal("1000"), reason="sibling",
                                     approved_by="admin-1"))
    ledger.recompute(NOW)
    assert ledger.net_amount == Decimal("14000")

    allocate(ledger, [lab.id], Decimal("2000"))
    ledger.recompute(NOW)
    assert ledger.total_paid == Decimal("14000")
    assert ledger.status == LedgerStatus.paid


def test_resolve_targets_defaults_to_outstanding_items():
    ledger = _ledger(
        _item("Tuition", "1000", paid=Decimal("1000")),
        _item("Lab", "500"),
        _item("Hostel", "900", is_optional=True, is_included=False),
    )
    assert _resolve_targets(ledger, []) == [ledger.fee_items[1].id]


def test_resolve_targets_rejects_unknown_and_excluded_items():
    ledger = _ledger(_item("Lab", "500"), _item("Hostel", "900", is_optional=True,
                                                is_included=False))
    with pytest.raises(ValidationError):
        _resolve_targets(ledger, ["missing"])
    with pytest.raises(ValidationError):
        _resolve_targets(ledger, [ledger.fee_items[1].id])


def test_excluding_paid_or_mandatory_item_is_refused():
    mandatory = _item("Tuition", "1000")
    paid_optional = _item("Mess", "800", is_optional=True, paid=Decimal("100"))
    with pytest.raises(ValidationError):
        _set_inclusion(mandatory, False)
    with pytest.raises(ValidationError):
        _set_inclusion(paid_optional, False)


def test_build_ledger_excludes_services_not_opted():
    seed = LedgerSeed(
        student_id="s1",
        semester=2,
        academic_year="2024-25",
        fee_items=[
            LedgerSeedItem(name="Tuition", original_amount=Decimal("40000")),
            LedgerSeedItem(name="Hostel Fee", original_amount=Decimal("20000"), is_optional=True,
                           meta=HostelMeta(room_type="double")),
        ],
    )
    ledger = build_ledger(seed, "admin-1", services_opted=ServicesOpted(), now=NOW)

    hostel = ledger.fee_items[1]
    assert hostel.service_name() == ServiceName.hostel
    assert hostel.is_included is False
    assert ledger.total_due == Decimal("40000")


def test_summary_balance_uses_net_amount():
    ledger = _ledger(_item("Tuition", "10000", paid=Decimal("4000")))
    ledger.fines.append(Fine(name="Late", amount=Decimal("250"), reason="late", imposed_by="a"))
    ledger.recompute(NOW)

    summary = LedgerSummary.of(ledger)
    assert summary.balance_due == money("6250")
    assert summary.payment_percentage == 39
