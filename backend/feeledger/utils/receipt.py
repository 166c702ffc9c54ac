# feeledger/utils/receipt.py
# Receipt numbers: {calendar year}{sequence:06d} → 2024000042
# Printed with the institution prefix: SF-2024000042

from datetime import datetime
from typing import Optional

from feeledger.core.config import settings
from feeledger.core.database import FeeDB
from feeledger.utils.dates import utcnow


def format_receipt_number(receipt_number: str, prefix: Optional[str] = None) -> str:
    return f"{prefix or settings.RECEIPT_PREFIX}-{receipt_number}"


class ReceiptNumberGenerator:
    """
    One counter per calendar year, held by the store, so numbers are
    unique and increase monotonically within a year across workers.
    """

    def __init__(self, db: FeeDB):
        self.db = db

    def next(self, now: Optional[datetime] = None) -> str:
        year = (now or utcnow()).year
        seq = self.db.next_sequence(f"receipt-{year}")
        return f"{year}{seq:06d}"
