# ============================================================
# feeledger/core/unit_of_work.py
#
# Two tools for writing safely to a store without real
# multi-document transactions:
#
# UnitOfWork
#   Stage inserts / updates / deletes, then commit() them in
#   order. If write N fails, writes 1..N-1 are compensated in
#   reverse order (insert → delete, update → restore previous
#   row, delete → re-insert) and the original error re-raised.
#
# retry_on_stale / mutate_with_retry
#   Optimistic read-modify-write. Re-read and re-apply when the
#   version check is lost, up to LEDGER_WRITE_MAX_ATTEMPTS.
#
# Usage:
#   uow = UnitOfWork(db)
#   uow.update(LEDGERS, ledger.id, ledger.to_row(), expected_version=ledger.version)
#   uow.insert(PAYMENTS, payment.to_row())
#   uow.commit()
# ============================================================

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, Type, TypeVar
import logging

from pydantic import BaseModel

from feeledger.core.config import settings
from feeledger.core.database import FeeDB
from feeledger.core.errors import StaleWriteError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")


@dataclass
class _Op:
    kind: str                       # insert | update | delete
    table: str
    record_id: str
    row: Optional[dict] = None
    expected_version: Optional[int] = None


class UnitOfWork:

    def __init__(self, db: FeeDB):
        self.db = db
        self._ops: List[_Op] = []
        self.committed = False

    def insert(self, table: str, row: dict) -> "UnitOfWork":
        self._ops.append(_Op("insert", table, row["id"], row))
        return self

    def update(
        self, table: str, record_id: str, row: dict, expected_version: Optional[int] = None
    ) -> "UnitOfWork":
        self._ops.append(_Op("update", table, record_id, row, expected_version))
        return self

    def delete(self, table: str, record_id: str) -> "UnitOfWork":
        self._ops.append(_Op("delete", table, record_id))
        return self

    def commit(self) -> List[Optional[dict]]:
        """Apply every staged write. Returns the stored rows, in order."""
        if self.committed:
            raise RuntimeError("UnitOfWork already committed")

        applied: List[Tuple[_Op, Optional[dict], Optional[dict]]] = []
        results: List[Optional[dict]] = []
        with self.db.transaction():
            try:
                for op in self._ops:
                    before, after = self._apply(op)
                    applied.append((op, before, after))
                    results.append(after)
            except Exception:
                self._compensate(applied)
                raise
        self.committed = True
        return results

    def _apply(self, op: _Op):
        if op.kind == "insert":
            return None, self.db.insert(op.table, op.row)
        if op.kind == "update":
            before = self.db.require_one(op.table, op.record_id)
            return before, self.db.update(op.table, op.record_id, op.row, op.expected_version)
        before = self.db.select_one(op.table, op.record_id)
        self.db.delete(op.table, op.record_id)
        return before, None

    def _compensate(self, applied) -> None:
        for op, before, after in reversed(applied):
            try:
                if op.kind == "insert":
                    self.db.delete(op.table, op.record_id)
                elif op.kind == "update":
                    self.db.update(op.table, op.record_id, before, expected_version=after["version"])
                elif before is not None:
                    self.db.insert(op.table, before)
            except Exception as e:
                # The store is now inconsistent; make it loud.
                logger.error(
                    f"Compensation failed for {op.kind} {op.table}/{op.record_id}: {e}",
                    exc_info=True,
                )


def retry_on_stale(fn: Callable[[], R], attempts: Optional[int] = None) -> R:
    """Call fn() again each time it loses an optimistic version check."""
    attempts = attempts or settings.LEDGER_WRITE_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except StaleWriteError:
            if attempt == attempts:
                logger.warning(f"Giving up after {attempts} stale writes")
                raise
            logger.info(f"Stale write, retrying ({attempt}/{attempts})")
    raise StaleWriteError()


def mutate_with_retry(
    db: FeeDB,
    table: str,
    record_id: str,
    model: Type[M],
    fn: Callable[[M], Any],
    attempts: Optional[int] = None,
) -> Tuple[M, Any]:
    """
    Read the document, let fn() change it in place, write it back
    with a version guard. Returns (stored document, fn's result).
    """
    def attempt():
        doc = model.model_validate(db.require_one(table, record_id))
        outcome = fn(doc)
        stored = db.update(table, record_id, doc.to_row(), expected_version=doc.version)
        return model.model_validate(stored), outcome

    return retry_on_stale(attempt, attempts)
