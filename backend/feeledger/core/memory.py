# ============================================================
# feeledger/core/memory.py
#
# Process-local FeeDB. Same contract as SupabaseFeeDB:
#   - unique keys from UNIQUE_KEYS → ConflictError
#   - update(expected_version=...) → StaleWriteError on mismatch
#   - transaction() restores every table if the block raises
#
# Rows are deep-copied on the way in and out so callers can
# never mutate stored state by accident.
# ============================================================

from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import Any, Dict, List, Optional

from feeledger.core.database import FeeDB, UNIQUE_KEYS, plain
from feeledger.core.errors import ConflictError, NotFoundError, StaleWriteError
from feeledger.utils.dates import ensure_aware, utcnow


def _comparable(stored: Any, value: Any):
    """Coerce a stored JSON value so it can be ordered against `value`."""
    if stored is None:
        return None
    if isinstance(value, datetime):
        parsed = stored if isinstance(stored, datetime) else datetime.fromisoformat(stored)
        return ensure_aware(parsed), ensure_aware(value)
    if isinstance(value, (Decimal, int, float)) and not isinstance(value, bool):
        return Decimal(str(stored)), Decimal(str(value))
    return stored, plain(value)


class InMemoryFeeDB(FeeDB):

    def __init__(self):
        self._lock = RLock()
        self._tables: Dict[str, Dict[str, dict]] = {}
        self._sequences: Dict[str, int] = {}

    def _rows(self, table: str) -> Dict[str, dict]:
        return self._tables.setdefault(table, {})

    def _check_unique(self, table: str, row: dict, skip_id: Optional[str] = None) -> None:
        for key in UNIQUE_KEYS.get(table, []):
            values = tuple(row.get(col) for col in key)
            if any(v is None for v in values):
                continue
            for other in self._rows(table).values():
                if other["id"] == skip_id:
                    continue
                if tuple(other.get(col) for col in key) == values:
                    raise ConflictError(
                        f"Duplicate record in {table}",
                        detail=dict(zip(key, values)),
                    )

    # ── Reads ────────────────────────────────────────────────
    def select_one(self, table: str, record_id: str) -> Optional[dict]:
        with self._lock:
            row = self._rows(table).get(record_id)
            return deepcopy(row) if row else None

    def select(
        self,
        table: str,
        *,
        eq=None,
        lte=None,
        lt=None,
        in_=None,
        order_by=None,
        desc=False,
        limit=None,
    ) -> List[dict]:
        with self._lock:
            rows = list(self._rows(table).values())

        def keep(row: dict) -> bool:
            for col, val in (eq or {}).items():
                if row.get(col) != plain(val):
                    return False
            for col, val in (lte or {}).items():
                pair = _comparable(row.get(col), val)
                if pair is None or not pair[0] <= pair[1]:
                    return False
            for col, val in (lt or {}).items():
                pair = _comparable(row.get(col), val)
                if pair is None or not pair[0] < pair[1]:
                    return False
            for col, values in (in_ or {}).items():
                if row.get(col) not in [plain(v) for v in values]:
                    return False
            return True

        matched = [r for r in rows if keep(r)]
        if order_by:
            # None sorts first ascending, last descending
            matched.sort(
                key=lambda r: (r.get(order_by) is not None, r.get(order_by) or ""),
                reverse=desc,
            )
        if limit:
            matched = matched[:limit]
        return deepcopy(matched)

    # ── Writes ───────────────────────────────────────────────
    def insert(self, table: str, row: dict) -> dict:
        with self._lock:
            if row["id"] in self._rows(table):
                raise ConflictError(f"Duplicate id in {table}", detail={"id": row["id"]})
            self._check_unique(table, row)
            stored = deepcopy(row)
            stored.setdefault("version", 0)
            self._rows(table)[row["id"]] = stored
            return deepcopy(stored)

    def update(self, table, record_id, row, expected_version=None) -> dict:
        with self._lock:
            current = self._rows(table).get(record_id)
            if current is None:
                raise NotFoundError(f"Record not found in {table}", detail={"id": record_id})
            if expected_version is not None and current["version"] != expected_version:
                raise StaleWriteError(
                    detail={"table": table, "id": record_id,
                            "expected": expected_version, "found": current["version"]},
                )
            self._check_unique(table, row, skip_id=record_id)
            stored = deepcopy(row)
            stored["id"] = record_id
            stored["version"] = current["version"] + 1
            stored["updated_at"] = utcnow().isoformat()
            self._rows(table)[record_id] = stored
            return deepcopy(stored)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._rows(table).pop(record_id, None) is not None

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._sequences[name] = self._sequences.get(name, 0) + 1
            return self._sequences[name]

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = deepcopy(self._tables)
            try:
                yield self
            except Exception:
                self._tables = snapshot
                raise

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows(table))
