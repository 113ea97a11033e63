# billing/models/recurring.py

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from billing.models.invoices import LineItemIn


class RecurringInvoiceCreate(BaseModel):
    client_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    frequency: str
    start_date: date
    next_date: Optional[date] = None
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    payment_terms_days: Optional[int] = None
    auto_send: bool = False
    items: List[LineItemIn] = Field(default_factory=list)


class RecurringItemOut(BaseModel):
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal


class RecurringHistoryOut(BaseModel):
    invoice_id: int
    invoice_number: str
    scheduled_date: date
    generated_at: datetime
    status: str
    total_amount: Decimal


class RecurringInvoiceOut(BaseModel):
    id: int
    client_id: int
    title: str
    description: Optional[str] = None
    frequency: str
    start_date: date
    end_date: Optional[date] = None
    max_occurrences: Optional[int] = None
    next_date: date
    occurrences_generated: int
    payment_terms_days: Optional[int] = None
    auto_send: bool
    status: str
    total_amount: Decimal
    last_generated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[RecurringItemOut] = Field(default_factory=list)
    history: List[RecurringHistoryOut] = Field(default_factory=list)


class GeneratedInvoice(BaseModel):
    recurring_invoice_id: int
    invoice_id: int
    invoice_number: str
    scheduled_date: date
    next_date: date
    occurrences_generated: int
