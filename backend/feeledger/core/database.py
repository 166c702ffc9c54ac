# ============================================================
# feeledger/core/database.py
#
# The store every service talks to. One interface, two backends:
#
# SupabaseFeeDB  (SERVICE ROLE key, schema DB_SCHEMA)
# ├── Production store: Postgres through PostgREST
# ├── Unique indexes surface as ConflictError (code 23505)
# └── Sequences come from the next_sequence(p_name) RPC
#
# InMemoryFeeDB  (feeledger/core/memory.py)
# ├── Same contract, process-local, thread-safe
# └── Used by the test-suite and local demos
#
# Every row is a whole document with a `version` column.
# update() with expected_version is a compare-and-set: if
# someone else wrote the row first, StaleWriteError is raised
# and the caller re-reads and tries again (see unit_of_work.py).
#
# LEARNING NOTE: services never import a client directly. They
# receive a FeeDB in their constructor, so tests can hand them
# an InMemoryFeeDB and nothing else changes.
# ============================================================

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

from postgrest.exceptions import APIError
from supabase import create_client, Client
from supabase.lib.client_options import SyncClientOptions

from feeledger.core.config import settings
from feeledger.core.errors import ConflictError, NotFoundError, StaleWriteError
from feeledger.utils.dates import utcnow

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


# ── Table names ──────────────────────────────────────────────
LEDGERS = "student_fee_ledgers"
PAYMENTS = "payments"
SUBSCRIPTIONS = "subscriptions"
UPGRADE_LOGS = "semester_upgrade_logs"
STUDENTS = "students"
COURSES = "courses"
FEE_TEMPLATES = "fee_templates"
ACTIVITY_LOGS = "activity_logs"

# Natural keys enforced by unique indexes.
UNIQUE_KEYS: Dict[str, List[tuple]] = {
    LEDGERS: [("student_id", "semester", "academic_year")],
    PAYMENTS: [("receipt_number",), ("gateway_payment_id",)],
    SUBSCRIPTIONS: [("gateway_subscription_id",)],
}


def plain(value: Any) -> Any:
    """Turn a filter value into what a JSON row holds."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


class FeeDB:
    """
    Contract shared by both backends. Rows go in and come out as
    plain dicts (pydantic `model_dump(mode="json")` shape).
    """

    def select_one(self, table: str, record_id: str) -> Optional[dict]:
        raise NotImplementedError

    def require_one(self, table: str, record_id: str) -> dict:
        row = self.select_one(table, record_id)
        if not row:
            raise NotFoundError(f"Record not found in {table}", detail={"id": record_id})
        return row

    def select(
        self,
        table: str,
        *,
        eq: Optional[Dict[str, Any]] = None,
        lte: Optional[Dict[str, Any]] = None,
        lt: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, Iterable[Any]]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        raise NotImplementedError

    def find_one(self, table: str, **eq: Any) -> Optional[dict]:
        rows = self.select(table, eq=eq, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: dict) -> dict:
        raise NotImplementedError

    def update(
        self,
        table: str,
        record_id: str,
        row: dict,
        expected_version: Optional[int] = None,
    ) -> dict:
        raise NotImplementedError

    def delete(self, table: str, record_id: str) -> bool:
        raise NotImplementedError

    def next_sequence(self, name: str) -> int:
        raise NotImplementedError

    @contextmanager
    def transaction(self) -> Iterator["FeeDB"]:
        yield self

    def ping(self) -> bool:
        return True


# ── Supabase backend ─────────────────────────────────────────
def make_query_client() -> Client:
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_KEY:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
    return create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY,
        options=SyncClientOptions(schema=settings.DB_SCHEMA),
    )


class SupabaseFeeDB(FeeDB):
    """
    PostgREST has no multi-statement transactions, so transaction()
    is a no-op here; UnitOfWork compensates instead.
    """

    def __init__(self, client: Optional[Client] = None):
        self._client: Client = client or make_query_client()

    def _table(self, table: str):
        return self._client.table(table)

    def select_one(self, table: str, record_id: str) -> Optional[dict]:
        result = self._table(table).select("*").eq("id", record_id).execute()
        return result.data[0] if result.data else None

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
        query = self._table(table).select("*")
        for col, val in (eq or {}).items():
            query = query.is_(col, "null") if val is None else query.eq(col, plain(val))
        for col, val in (lte or {}).items():
            query = query.lte(col, plain(val))
        for col, val in (lt or {}).items():
            query = query.lt(col, plain(val))
        for col, values in (in_ or {}).items():
            query = query.in_(col, [plain(v) for v in values])
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit:
            query = query.limit(limit)
        return query.execute().data or []

    def insert(self, table: str, row: dict) -> dict:
        try:
            result = self._table(table).insert(row).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ConflictError(f"Duplicate record in {table}", detail=e.message)
            raise
        return result.data[0] if result.data else row

    def update(self, table, record_id, row, expected_version=None) -> dict:
        payload = dict(row)
        payload.pop("id", None)
        if expected_version is None:
            current = self.require_one(table, record_id)
            expected_version = current["version"]
        payload["version"] = expected_version + 1
        payload["updated_at"] = utcnow().isoformat()

        try:
            result = (
                self._table(table)
                .update(payload)
                .eq("id", record_id)
                .eq("version", expected_version)
                .execute()
            )
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise ConflictError(f"Duplicate record in {table}", detail=e.message)
            raise

        if not result.data:
            if self.select_one(table, record_id) is None:
                raise NotFoundError(f"Record not found in {table}", detail={"id": record_id})
            raise StaleWriteError(detail={"table": table, "id": record_id})
        return result.data[0]

    def delete(self, table: str, record_id: str) -> bool:
        result = self._table(table).delete().eq("id", record_id).execute()
        return bool(result.data)

    def next_sequence(self, name: str) -> int:
        result = self._client.rpc("next_sequence", {"p_name": name}).execute()
        return int(result.data)

    def ping(self) -> bool:
        try:
            self._table(COURSES).select("id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False


def build_db() -> FeeDB:
    """Pick the backend named by STORAGE_BACKEND."""
    if settings.STORAGE_BACKEND == "memory":
        from feeledger.core.memory import InMemoryFeeDB
        logger.warning("Using the in-memory store; data is lost on restart")
        return InMemoryFeeDB()
    return SupabaseFeeDB()
