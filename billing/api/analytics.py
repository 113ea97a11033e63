# billing/api/analytics.py

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from billing.api.errors import unwrap
from billing.models.analytics import (
    ClientPaymentBehavior,
    OverdueAnalytics,
    RevenueForecast,
    RevenueSummary,
    TrendPoint,
)
from billing.operations import BillingOperations, get_operations

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/summary", response_model=RevenueSummary)
def revenue_summary(
    start_date: Optional[date] = Query(default=None, description="Issue date lower bound (inclusive)"),
    end_date: Optional[date] = Query(default=None, description="Issue date upper bound (inclusive)"),
    client_id: Optional[int] = Query(default=None),
    ops: BillingOperations = Depends(get_operations),
) -> RevenueSummary:
    return unwrap(ops.get_revenue_summary(start_date, end_date, client_id))


@router.get("/trends", response_model=List[TrendPoint])
def invoice_trends(
    period: str = Query("month", description="day | week | month | quarter | year"),
    months: int = Query(12, ge=1, le=120),
    client_id: Optional[int] = Query(default=None),
    ops: BillingOperations = Depends(get_operations),
) -> List[TrendPoint]:
    return unwrap(ops.get_invoice_trends(period, months, client_id))


@router.get("/clients", response_model=List[ClientPaymentBehavior])
def client_payment_analytics(
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    limit: int = Query(50, ge=1, le=200),
    ops: BillingOperations = Depends(get_operations),
) -> List[ClientPaymentBehavior]:
    return unwrap(ops.get_client_payment_analytics(start_date, end_date, limit))


@router.get("/forecast", response_model=RevenueForecast)
def revenue_forecast(
    months: int = Query(3, ge=1, le=24),
    include_recurring: bool = Query(True),
    ops: BillingOperations = Depends(get_operations),
) -> RevenueForecast:
    return unwrap(ops.get_revenue_forecast(months, include_recurring))


@router.get("/overdue", response_model=OverdueAnalytics)
def overdue_analytics(
    as_of: Optional[date] = Query(default=None),
    client_id: Optional[int] = Query(default=None),
    ops: BillingOperations = Depends(get_operations),
) -> OverdueAnalytics:
    return unwrap(ops.get_overdue_analytics(as_of, client_id))
