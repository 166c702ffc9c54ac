# feeledger/utils/idempotency.py
#
# Short-lived replay protection shared by every worker on the host,
# in one small SQLite file:
#
#   orders → cached gateway order per "ledger:amount:actor", so a
#            double-clicked Pay button reuses the first order
#   claims → "event:<id>" / "charge:<payment id>" keys a webhook
#            handler owns while it processes them
#
# A claim is released when processing fails so the gateway's
# redelivery is handled again. This is a fast first line only;
# the durable dedupe for charges is the unique gateway_payment_id
# on payments.

import json
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, Optional

from feeledger.core.config import settings

ORDERS = "order"
CLAIMS = "claim"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS replay_cache (
    kind TEXT NOT NULL,
    cache_key TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    payload TEXT,
    PRIMARY KEY (kind, cache_key)
)
"""


class IdempotencyStore:

    def __init__(self, db_path: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.db_path = db_path or settings.IDEMPOTENCY_DB_PATH
        self.ttl_seconds = settings.IDEMPOTENCY_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    def _connect(self) -> sqlite3.Connection:
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; WAL lets several workers read while one writes.
        conn = sqlite3.connect(str(path), timeout=5, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute(_SCHEMA)
        return conn

    def _expire(self, conn: sqlite3.Connection, kind: str) -> None:
        cutoff = int(time.time()) - int(self.ttl_seconds)
        conn.execute("DELETE FROM replay_cache WHERE kind = ? AND created_at < ?", (kind, cutoff))

    # ── Orders ───────────────────────────────────────────────
    def get_order(self, key: str) -> Optional[Dict[str, Any]]:
        with closing(self._connect()) as conn:
            self._expire(conn, ORDERS)
            row = conn.execute(
                "SELECT payload FROM replay_cache WHERE kind = ? AND cache_key = ?",
                (ORDERS, key),
            ).fetchone()
        return json.loads(row[0]) if row and row[0] else None

    def remember_order(self, key: str, payload: Dict[str, Any]) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO replay_cache (kind, cache_key, created_at, payload)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, cache_key) DO UPDATE SET
                    created_at = excluded.created_at,
                    payload = excluded.payload
                """,
                (ORDERS, key, int(time.time()), json.dumps(payload, default=str)),
            )

    # ── Claims ───────────────────────────────────────────────
    def claim(self, key: str) -> bool:
        """True when the caller now owns `key`; False if someone already does."""
        with closing(self._connect()) as conn:
            self._expire(conn, CLAIMS)
            cur = conn.execute(
                "INSERT OR IGNORE INTO replay_cache (kind, cache_key, created_at) VALUES (?, ?, ?)",
                (CLAIMS, key, int(time.time())),
            )
            return cur.rowcount == 1

    def release(self, key: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "DELETE FROM replay_cache WHERE kind = ? AND cache_key = ?", (CLAIMS, key),
            )
