# billing/services/status.py
"""
Invoice state machine.

Pure functions only: totals from line items, status derivation and the
payment transition. Every mutator in the ledger, the overdue detector and
the invoice service routes through ``derive_status`` so the rules live in
one place.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional

from billing.errors import InvalidStateError, OverpaymentError, ValidationError

DRAFT = "draft"
SENT = "sent"
PARTIAL = "partial"
PAID = "paid"
OVERDUE = "overdue"
CANCELED = "canceled"

STATUSES = (DRAFT, SENT, PARTIAL, PAID, OVERDUE, CANCELED)
TERMINAL_STATUSES = (PAID, CANCELED)
OPEN_STATUSES = (SENT, PARTIAL, OVERDUE)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

AGING_BUCKETS = ("0-30", "31-60", "61-90", ">90")


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal = Decimal("0")
    is_late_fee: bool = False

    @property
    def amount(self) -> Decimal:
        return to_money(self.quantity * self.unit_price)

    @property
    def tax(self) -> Decimal:
        return self.quantity * self.unit_price * self.tax_rate


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class LedgerState:
    """The monetary and lifecycle fields of one invoice row."""

    total_amount: Decimal
    amount_paid: Decimal
    status: str
    due_date: date
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


def validate_line_items(items: Iterable[LineItem]) -> List[LineItem]:
    items = list(items)
    if not items:
        raise ValidationError("An invoice needs at least one line item")
    for item in items:
        if not item.description or not item.description.strip():
            raise ValidationError("Line item description is required")
        if item.quantity <= 0:
            raise ValidationError("Line item quantity must be positive")
        if item.unit_price < 0:
            raise ValidationError("Line item unit price must not be negative")
        if item.tax_rate < 0 or item.tax_rate > 1:
            raise ValidationError("Line item tax rate must be between 0 and 1")
    return items


def compute_totals(items: Iterable[LineItem]) -> Totals:
    items = list(items)
    subtotal = sum((item.amount for item in items), ZERO)
    tax_amount = to_money(sum((item.tax for item in items), Decimal("0")))
    subtotal = to_money(subtotal)
    return Totals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=to_money(subtotal + tax_amount),
    )


def derive_status(
    total: Decimal,
    paid: Decimal,
    due_date: date,
    current_status: str,
    today: date,
    was_sent: bool = True,
) -> str:
    """
    Status implied by the money on an invoice.

    ``was_sent`` separates an unpaid draft from an unpaid sent invoice, so a
    voided payment on a never-sent invoice falls back to ``draft``.
    """
    if current_status == CANCELED:
        return CANCELED
    if paid >= total:
        return PAID
    past_due = due_date < today
    if paid > 0:
        return OVERDUE if past_due else PARTIAL
    if not was_sent:
        return DRAFT
    return OVERDUE if past_due else SENT


def transition_on_payment(
    state: LedgerState,
    amount_paid_delta: Decimal,
    today: date,
    now: datetime,
) -> LedgerState:
    """
    Apply a ledger movement to an invoice.

    A positive delta is a payment, a negative delta is a voided payment.
    """
    if state.status == CANCELED:
        raise InvalidStateError("Payments cannot be applied to a canceled invoice")

    new_paid = to_money(state.amount_paid + amount_paid_delta)
    if new_paid > state.total_amount:
        raise OverpaymentError(
            f"Payment would bring amount paid to {new_paid}, "
            f"above the invoice total of {state.total_amount}"
        )
    if new_paid < ZERO:
        new_paid = ZERO

    status = derive_status(
        state.total_amount,
        new_paid,
        state.due_date,
        state.status,
        today,
        was_sent=state.sent_at is not None,
    )

    paid_at = state.paid_at
    if status == PAID and state.status != PAID:
        paid_at = now
    elif status != PAID:
        paid_at = None

    return replace(state, amount_paid=new_paid, status=status, paid_at=paid_at)


def ensure_cancellable(status: str, payment_count: int) -> None:
    if status in TERMINAL_STATUSES:
        raise InvalidStateError(f"A {status} invoice cannot be canceled")
    if payment_count > 0:
        raise InvalidStateError("An invoice with recorded payments cannot be canceled")


def ensure_deletable(status: str) -> None:
    if status != DRAFT:
        raise InvalidStateError("Only draft invoices can be deleted")


def days_overdue(due_date: date, today: date) -> int:
    return max((today - due_date).days, 0)


def aging_bucket(due_date: date, today: date) -> str:
    days = days_overdue(due_date, today)
    if days <= 30:
        return "0-30"
    if days <= 60:
        return "31-60"
    if days <= 90:
        return "61-90"
    return ">90"
