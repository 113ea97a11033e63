# billing/api/payments.py

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query

from billing.api.errors import unwrap
from billing.models.payments import PaymentPage, PaymentStatistics, PaymentVoided
from billing.operations import BillingOperations, get_operations
from billing.services.ledger import PaymentFilters

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=PaymentPage)
def list_payments(
    invoice_id: Optional[int] = Query(default=None),
    client_id: Optional[int] = Query(default=None),
    payment_method: Optional[str] = Query(default=None, description="Case-insensitive method name"),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    min_amount: Optional[Decimal] = Query(default=None, ge=0),
    max_amount: Optional[Decimal] = Query(default=None, ge=0),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ops: BillingOperations = Depends(get_operations),
) -> PaymentPage:
    filters = PaymentFilters(
        invoice_id=invoice_id,
        client_id=client_id,
        payment_method=payment_method,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    return unwrap(ops.get_payments(filters, limit, offset))


@router.get("/statistics", response_model=PaymentStatistics)
def payment_statistics(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    ops: BillingOperations = Depends(get_operations),
) -> PaymentStatistics:
    return unwrap(ops.get_payment_statistics(start_date, end_date))


@router.delete("/{payment_id}", response_model=PaymentVoided)
def void_payment(payment_id: int, ops: BillingOperations = Depends(get_operations)) -> PaymentVoided:
    return unwrap(ops.void_payment(payment_id))
