# billing/api/recurring.py

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from billing.api.errors import unwrap
from billing.models.recurring import GeneratedInvoice, RecurringInvoiceCreate, RecurringInvoiceOut
from billing.operations import BillingOperations, get_operations

router = APIRouter(prefix="/recurring-invoices", tags=["recurring-invoices"])


@router.post("", response_model=RecurringInvoiceOut, status_code=status.HTTP_201_CREATED)
def create_recurring_invoice(
    payload: RecurringInvoiceCreate,
    ops: BillingOperations = Depends(get_operations),
) -> RecurringInvoiceOut:
    return unwrap(ops.create_recurring_invoice(payload))


@router.get("", response_model=List[RecurringInvoiceOut])
def list_recurring_invoices(
    status_filter: Optional[str] = Query(default=None, alias="status", description="active | canceled"),
    client_id: Optional[int] = Query(default=None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ops: BillingOperations = Depends(get_operations),
) -> List[RecurringInvoiceOut]:
    return unwrap(ops.list_recurring_invoices(status_filter, client_id, limit, offset))


@router.get("/{template_id}", response_model=RecurringInvoiceOut)
def get_recurring_invoice(template_id: int, ops: BillingOperations = Depends(get_operations)) -> RecurringInvoiceOut:
    return unwrap(ops.get_recurring_invoice(template_id))


@router.post("/{template_id}/cancel", response_model=RecurringInvoiceOut)
def cancel_recurring_invoice(
    template_id: int,
    ops: BillingOperations = Depends(get_operations),
) -> RecurringInvoiceOut:
    return unwrap(ops.cancel_recurring_invoice(template_id))


@router.post("/{template_id}/reactivate", response_model=RecurringInvoiceOut)
def reactivate_recurring_invoice(
    template_id: int,
    ops: BillingOperations = Depends(get_operations),
) -> RecurringInvoiceOut:
    return unwrap(ops.reactivate_recurring_invoice(template_id))


@router.post("/{template_id}/generate", response_model=GeneratedInvoice)
def generate_recurring_invoice(
    template_id: int,
    ops: BillingOperations = Depends(get_operations),
) -> GeneratedInvoice:
    return unwrap(ops.generate_recurring_invoice(template_id))
