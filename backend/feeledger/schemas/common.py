# ============================================================
# feeledger/schemas/common.py
#
# Shared building blocks:
#   - APIResponse / ErrorResponse  → the HTTP envelope
#   - Document                     → base for every stored record
#   - money()                      → Decimal normalisation
#
# Naming convention we follow:
#   SomethingCreate   → body for POST requests (creating)
#   SomethingRequest  → body for POST actions (verify, cancel, ...)
#   Something         → the stored document itself
# ============================================================

from pydantic import BaseModel, Field
from typing import Optional, Generic, TypeVar, List, Any
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
import uuid

from feeledger.utils.dates import utcnow

T = TypeVar("T")

ZERO = Decimal("0")
CENT = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Normalise any numeric input to a 2-dp Decimal (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Standard API response wrapper ────────────────────────────
class APIResponse(BaseModel, Generic[T]):
    """
    Every endpoint returns this shape:
    {
        "success": true,
        "message": "Payment recorded",
        "data": { ... }
    }
    """
    success: bool = True
    message: str = "OK"
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    """Returned when something goes wrong."""
    success: bool = False
    message: str
    detail: Optional[Any] = None


# ── Pagination query params ───────────────────────────────────
class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def slice(self, rows: List[Any]) -> List[Any]:
        return rows[self.offset: self.offset + self.page_size]


# ── Stored documents ─────────────────────────────────────────
class Document(BaseModel):
    """
    One row in the store. `version` is the optimistic-lock counter:
    every successful update bumps it, and an update carrying a stale
    version is rejected by the store.
    """
    id: str = Field(default_factory=new_id)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict:
        return self.model_dump(mode="json")
