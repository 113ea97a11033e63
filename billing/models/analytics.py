# billing/models/analytics.py

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel


class RevenueSummary(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    client_id: Optional[int] = None
    total_invoices: int
    count_by_status: Dict[str, int]
    total_invoiced: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    amount_overdue: Decimal
    collected_in_period: Decimal
    payment_rate: Decimal
    collection_rate: Decimal
    avg_days_to_payment: Optional[Decimal] = None


class TrendPoint(BaseModel):
    period: str
    invoice_count: int
    total_amount: Decimal
    amount_paid: Decimal
    payment_rate: Decimal
    overdue_rate: Decimal


class ClientPaymentBehavior(BaseModel):
    client_id: int
    client_name: str
    invoice_count: int
    total_amount: Decimal
    amount_paid: Decimal
    amount_outstanding: Decimal
    payment_rate: Decimal
    overdue_rate: Decimal
    avg_days_to_payment: Optional[int] = None


class ForecastMonth(BaseModel):
    month: str
    pending_amount: Decimal
    recurring_amount: Decimal
    total_forecast: Decimal


class RevenueForecast(BaseModel):
    start_date: date
    end_date: date
    months: int
    historical_monthly_average: Decimal
    monthly_forecast: List[ForecastMonth]
    pending_amount: Decimal
    recurring_amount: Decimal
    total_forecast: Decimal


class AgingBucket(BaseModel):
    count: int
    amount: Decimal


class OverdueAnalytics(BaseModel):
    as_of: date
    total_overdue: int
    total_overdue_amount: Decimal
    avg_days_overdue: int
    by_aging: Dict[str, AgingBucket]
