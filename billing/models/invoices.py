# billing/models/invoices.py

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from billing.models.clients import ClientOut
from billing.services.status import LineItem


class LineItemIn(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    tax_rate: Decimal = Decimal("0")

    def to_line_item(self) -> LineItem:
        return LineItem(
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            tax_rate=self.tax_rate,
        )


class InvoiceCreate(BaseModel):
    client_id: Optional[int] = None
    title: str = "Invoice"
    description: Optional[str] = None
    due_date: date
    issue_date: Optional[date] = None
    items: List[LineItemIn] = Field(default_factory=list)


class InvoiceUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[date] = None
    items: Optional[List[LineItemIn]] = None


class LineItemOut(BaseModel):
    id: int
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    amount: Decimal
    is_late_fee: bool

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    client_id: int
    recurring_invoice_id: Optional[int] = None
    title: str
    description: Optional[str] = None
    status: str
    issue_date: date
    due_date: date
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[LineItemOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class InvoiceDocument(BaseModel):
    """Fully resolved invoice handed to the document renderer."""

    invoice: InvoiceOut
    client: ClientOut
    payments: list = Field(default_factory=list)


class SendInvoiceOut(BaseModel):
    invoice: InvoiceOut
    email_sent: bool


class LateFeeIn(BaseModel):
    amount: Optional[Decimal] = None
    fee_type: Optional[str] = None


class ReminderIn(BaseModel):
    level: str = "gentle"


class LateFeeOut(BaseModel):
    invoice_id: int
    fee_amount: Decimal
    previous_total: Decimal
    new_total: Decimal
    status: str


class PastDueInvoiceItem(BaseModel):
    invoice_id: int
    invoice_number: str
    client_id: int
    client_name: str
    issue_date: date
    due_date: date
    total_amount: Decimal
    amount_paid: Decimal
    outstanding: Decimal
    status: str
    days_past_due: int
    aging_bucket: str


class PastDueResponse(BaseModel):
    items: List[PastDueInvoiceItem]
    total: int
    limit: int
    offset: int
