# billing/models/payments.py

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class PaymentCreate(BaseModel):
    amount: Decimal
    payment_method: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_date: Optional[date] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class MarkPaidIn(BaseModel):
    payment_method: Optional[str] = None
    payment_method_id: Optional[int] = None
    payment_date: Optional[date] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    invoice_id: int
    invoice_number: Optional[str] = None
    amount: Decimal
    payment_method: str
    payment_method_id: Optional[int] = None
    payment_date: date
    reference: Optional[str] = None
    notes: Optional[str] = None
    processing_fee: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentRecorded(BaseModel):
    payment: PaymentOut
    invoice_status: str
    invoice_amount_paid: Decimal
    invoice_total_amount: Decimal
    invoice_balance_due: Decimal


class PaymentVoided(BaseModel):
    payment_id: int
    invoice_id: int
    invoice_status: str
    invoice_amount_paid: Decimal


class PaymentPage(BaseModel):
    items: List[PaymentOut]
    total: int
    limit: int
    offset: int


class MethodBreakdown(BaseModel):
    payment_method: str
    count: int
    total_amount: Decimal


class MonthBreakdown(BaseModel):
    month: str
    count: int
    total_amount: Decimal


class PaymentStatistics(BaseModel):
    total_count: int
    total_amount: Decimal
    total_processing_fees: Decimal
    by_payment_method: List[MethodBreakdown]
    by_month: List[MonthBreakdown]
