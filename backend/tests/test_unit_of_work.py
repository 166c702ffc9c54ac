import pytest

from feeledger.core.database import LEDGERS, PAYMENTS, STUDENTS
from feeledger.core.errors import ConflictError, NotFoundError, StaleWriteError
from feeledger.core.memory import InMemoryFeeDB
from feeledger.core.unit_of_work import UnitOfWork, mutate_with_retry, retry_on_stale
from feeledger.schemas.upgrades import Student


def _student(db, semester=1):
    student = Student(first_name="Asha", last_name="Verma", current_semester=semester)
    db.insert(STUDENTS, student.to_row())
    return student


def test_insert_starts_at_version_zero_and_update_bumps_it():
    db = InMemoryFeeDB()
    student = _student(db)

    row = db.select_one(STUDENTS, student.id)
    assert row["version"] == 0

    row["current_semester"] = 2
    stored = db.update(STUDENTS, student.id, row, expected_version=0)
    assert stored["version"] == 1
    assert db.select_one(STUDENTS, student.id)["current_semester"] == 2


def test_stale_version_is_refused():
    db = InMemoryFeeDB()
    student = _student(db)
    row = db.select_one(STUDENTS, student.id)
    db.update(STUDENTS, student.id, row, expected_version=0)

    with pytest.raises(StaleWriteError):
        db.update(STUDENTS, student.id, row, expected_version=0)


def test_unique_keys_conflict():
    db = InMemoryFeeDB()
    db.insert(PAYMENTS, {"id": "p1", "receipt_number": "2024000001"})
    with pytest.raises(ConflictError):
        db.insert(PAYMENTS, {"id": "p2", "receipt_number": "2024000001"})
    # Missing values never collide
    db.insert(PAYMENTS, {"id": "p3", "gateway_payment_id": None})
    db.insert(PAYMENTS, {"id": "p4", "gateway_payment_id": None})


def test_rows_are_copied_out():
    db = InMemoryFeeDB()
    student = _student(db)
    db.select_one(STUDENTS, student.id)["first_name"] = "Changed"
    assert db.select_one(STUDENTS, student.id)["first_name"] == "Asha"


def test_select_filters_and_orders():
    db = InMemoryFeeDB()
    for i, semester in enumerate([3, 1, 2]):
        db.insert(STUDENTS, {"id": f"s{i}", "current_semester": semester, "status": "active"})

    rows = db.select(STUDENTS, eq={"status": "active"}, lte={"current_semester": 2},
                     order_by="current_semester")
    assert [r["id"] for r in rows] == ["s1", "s2"]


def test_commit_applies_every_write_in_order():
    db = InMemoryFeeDB()
    student = _student(db)
    row = student.to_row()
    row["current_semester"] = 2

    results = (
        UnitOfWork(db)
        .update(STUDENTS, student.id, row, expected_version=0)
        .insert(LEDGERS, {"id": "l1", "student_id": student.id})
        .commit()
    )

    assert results[0]["current_semester"] == 2
    assert results[1]["id"] == "l1"
    assert db.count(LEDGERS) == 1


def test_failed_write_compensates_earlier_ones():
    db = InMemoryFeeDB()
    student = _student(db)
    db.insert(LEDGERS, {"id": "old", "student_id": student.id})
    row = student.to_row()
    row["current_semester"] = 2

    uow = UnitOfWork(db)
    uow.update(STUDENTS, student.id, row, expected_version=0)
    uow.delete(LEDGERS, "old")
    uow.insert(LEDGERS, {"id": "new", "student_id": student.id})
    uow.update(LEDGERS, "missing", {"id": "missing"})

    with pytest.raises(NotFoundError):
        uow.commit()

    assert db.select_one(STUDENTS, student.id)["current_semester"] == 1
    assert db.select_one(LEDGERS, "old") is not None
    assert db.select_one(LEDGERS, "new") is None
    assert uow.committed is False


def test_commit_twice_is_an_error():
    db = InMemoryFeeDB()
    uow = UnitOfWork(db).insert(LEDGERS, {"id": "l1"})
    uow.commit()
    with pytest.raises(RuntimeError):
        uow.commit()


def test_retry_on_stale_retries_then_gives_up():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StaleWriteError()
        return "done"

    assert retry_on_stale(flaky, attempts=3) == "done"

    calls.clear()
    with pytest.raises(StaleWriteError):
        retry_on_stale(flaky, attempts=2)
    assert len(calls) == 2


def test_mutate_with_retry_rereads_after_a_lost_race():
    db = InMemoryFeeDB()
    student = _student(db)
    raced = []

    def promote(s):
        if not raced:
            raced.append(True)
            # another writer gets in first
            other = db.select_one(STUDENTS, student.id)
            other["last_name"] = "Sharma"
            db.update(STUDENTS, student.id, other, expected_version=other["version"])
        s.current_semester += 1
        return s.current_semester

    stored, outcome = mutate_with_retry(db, STUDENTS, student.id, Student, promote)

    assert outcome == 2
    assert stored.current_semester == 2
    assert stored.last_name == "Sharma"
    assert stored.version == 2
