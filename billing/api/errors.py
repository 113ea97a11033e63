# billing/api/errors.py

from fastapi import HTTPException

from billing.models.common import OperationResult

STATUS_BY_KIND = {
    "validation_error": 400,
    "not_found": 404,
    "invalid_state": 409,
    "overpayment": 409,
    "concurrency_conflict": 409,
    "external_service_error": 502,
    "internal_error": 500,
}


def unwrap(result: OperationResult):
    """Return the data of a successful result or raise the matching HTTP error."""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=STATUS_BY_KIND.get(result.error, 500),
        detail={"error": result.error, "message": result.message},
    )
