# ============================================================
# feeledger/core/errors.py
#
# Domain error taxonomy. Services raise these; main.py turns
# them into the standard {"success": false, ...} JSON shape.
# Nothing here knows about HTTP except the status_code hint.
# ============================================================

from typing import Any, Optional


class FeeLedgerError(Exception):
    """Base class for every error the ledger engine raises on purpose."""

    status_code: int = 400
    default_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, detail: Any = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(FeeLedgerError):
    """Malformed or inconsistent input (bad amounts, installment math, ...)."""

    status_code = 400
    default_message = "Validation failed"


class NotFoundError(FeeLedgerError):
    status_code = 404
    default_message = "Record not found"


class ConflictError(FeeLedgerError):
    """Duplicate ledger for a term, double rollback, illegal state change."""

    status_code = 409
    default_message = "Conflicting state"


class StaleWriteError(ConflictError):
    """Optimistic version check lost; the caller should re-read and retry."""

    default_message = "Record was modified concurrently"


class SignatureInvalidError(FeeLedgerError):
    status_code = 400
    default_message = "Invalid signature"


class GatewayError(FeeLedgerError):
    status_code = 502
    default_message = "Payment gateway request failed"


class HaltedSubscriptionError(FeeLedgerError):
    status_code = 409
    default_message = "Subscription is halted; retries exhausted"
