# billing/api/invoices.py

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from billing.api.errors import unwrap
from billing.models.invoices import (
    InvoiceCreate,
    InvoiceDocument,
    InvoiceOut,
    InvoiceUpdate,
    LateFeeIn,
    LateFeeOut,
    PastDueResponse,
    ReminderIn,
    SendInvoiceOut,
)
from billing.models.payments import MarkPaidIn, PaymentCreate, PaymentRecorded
from billing.operations import BillingOperations, get_operations

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/past-due", response_model=PastDueResponse)
def list_past_due_invoices(
    as_of: Optional[date] = Query(
        default=None,
        description="ISO date (YYYY-MM-DD); defaults to today in the billing timezone",
    ),
    client_id: Optional[int] = Query(default=None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    sort: Optional[str] = Query(
        default="due_date.asc",
        description="due_date.asc | due_date.desc | outstanding.desc",
    ),
    ops: BillingOperations = Depends(get_operations),
) -> PastDueResponse:
    """
    Open invoices with a positive balance whose due date is before as_of.
    """
    return unwrap(ops.get_overdue_invoices(as_of, client_id, limit, offset, sort))


@router.post("", response_model=InvoiceOut, status_code=status.HTTP_201_CREATED)
def create_invoice(payload: InvoiceCreate, ops: BillingOperations = Depends(get_operations)) -> InvoiceOut:
    return unwrap(ops.create_invoice(payload))


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(invoice_id: int, ops: BillingOperations = Depends(get_operations)) -> InvoiceOut:
    return unwrap(ops.get_invoice(invoice_id))


@router.get("/{invoice_id}/document", response_model=InvoiceDocument)
def get_invoice_document(invoice_id: int, ops: BillingOperations = Depends(get_operations)) -> InvoiceDocument:
    return unwrap(ops.get_invoice_document(invoice_id))


@router.patch("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    payload: InvoiceUpdate,
    ops: BillingOperations = Depends(get_operations),
) -> InvoiceOut:
    return unwrap(ops.update_invoice(invoice_id, payload))


@router.delete("/{invoice_id}")
def delete_invoice(invoice_id: int, ops: BillingOperations = Depends(get_operations)) -> dict:
    return {"deleted": unwrap(ops.delete_invoice(invoice_id))}


@router.post("/{invoice_id}/send", response_model=SendInvoiceOut)
def send_invoice(invoice_id: int, ops: BillingOperations = Depends(get_operations)) -> SendInvoiceOut:
    return unwrap(ops.send_invoice(invoice_id))


@router.post("/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(invoice_id: int, ops: BillingOperations = Depends(get_operations)) -> InvoiceOut:
    return unwrap(ops.cancel_invoice(invoice_id))


@router.post("/{invoice_id}/payments", response_model=PaymentRecorded, status_code=status.HTTP_201_CREATED)
def record_payment(
    invoice_id: int,
    payload: PaymentCreate,
    ops: BillingOperations = Depends(get_operations),
) -> PaymentRecorded:
    return unwrap(ops.record_payment(invoice_id, payload))


@router.post("/{invoice_id}/mark-paid", response_model=PaymentRecorded)
def mark_as_paid(
    invoice_id: int,
    payload: Optional[MarkPaidIn] = None,
    ops: BillingOperations = Depends(get_operations),
) -> PaymentRecorded:
    return unwrap(ops.mark_as_paid(invoice_id, payload))


@router.post("/{invoice_id}/late-fee", response_model=LateFeeOut)
def apply_late_fee(
    invoice_id: int,
    payload: Optional[LateFeeIn] = None,
    ops: BillingOperations = Depends(get_operations),
) -> LateFeeOut:
    payload = payload or LateFeeIn()
    return unwrap(ops.apply_late_fee(invoice_id, payload.amount, payload.fee_type))


@router.post("/{invoice_id}/reminders")
def send_reminder(
    invoice_id: int,
    payload: ReminderIn,
    ops: BillingOperations = Depends(get_operations),
) -> dict:
    return {"sent": unwrap(ops.send_reminder(invoice_id, payload.level))}
