# billing/errors.py
"""
Error taxonomy for the billing core.

Every error carries a stable ``kind`` string which is what API callers see
in the ``error`` field of a failed operation result.
"""


class BillingError(Exception):
    kind = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Malformed input: non-positive amount, missing required field."""

    kind = "validation_error"


class NotFoundError(BillingError):
    kind = "not_found"


class InvalidStateError(BillingError):
    """Operation not permitted in the entity's current status."""

    kind = "invalid_state"


class OverpaymentError(BillingError):
    kind = "overpayment"


class ConcurrencyError(BillingError):
    """The store reported a lock conflict; the caller may retry."""

    kind = "concurrency_conflict"


class ExternalServiceError(BillingError):
    """Notification or rendering failure. Never fatal to the ledger."""

    kind = "external_service_error"
