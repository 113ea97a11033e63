# billing/services/ledger.py
"""
Payment ledger.

The only writer of ``amount_paid`` and of the status changes that money
movements cause. Each mutation runs in one ``unit_of_work`` that holds the
invoice row lock, inserts or deletes the payment row and rewrites the
invoice, so a failure anywhere leaves both tables untouched.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, delete, func, select, true, update
from sqlalchemy.engine import Connection, Engine

from billing.clock import local_now
from billing.db.engine import unit_of_work
from billing.db.schema import (
    invoice_events,
    invoice_items,
    invoice_payments,
    invoices,
    payment_methods,
)
from billing.errors import InvalidStateError, NotFoundError, ValidationError
from billing.models.payments import (
    MethodBreakdown,
    MonthBreakdown,
    PaymentOut,
    PaymentPage,
    PaymentRecorded,
    PaymentStatistics,
    PaymentVoided,
)
from billing.services import status as sm
from billing.services.invoices import ledger_state, lock_invoice

logger = logging.getLogger(__name__)

DEFAULT_METHOD_NAME = "Other"


@dataclass(frozen=True)
class PaymentFilters:
    invoice_id: Optional[int] = None
    client_id: Optional[int] = None
    payment_method: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


def _payment_columns():
    return [
        invoice_payments.c.id,
        invoice_payments.c.invoice_id,
        invoices.c.invoice_number,
        invoice_payments.c.amount,
        invoice_payments.c.payment_method,
        invoice_payments.c.payment_method_id,
        invoice_payments.c.payment_date,
        invoice_payments.c.reference,
        invoice_payments.c.notes,
        invoice_payments.c.processing_fee,
        invoice_payments.c.created_at,
    ]


def _fetch_payment(conn: Connection, payment_id: int) -> PaymentOut:
    row = conn.execute(
        select(*_payment_columns())
        .select_from(invoice_payments.join(invoices))
        .where(invoice_payments.c.id == payment_id)
    ).mappings().first()
    return PaymentOut.model_validate(dict(row))


def payments_for_invoice(conn: Connection, invoice_id: int) -> List[PaymentOut]:
    rows = conn.execute(
        select(*_payment_columns())
        .select_from(invoice_payments.join(invoices))
        .where(invoice_payments.c.invoice_id == invoice_id)
        .order_by(invoice_payments.c.payment_date, invoice_payments.c.id)
    ).mappings().all()
    return [PaymentOut.model_validate(dict(row)) for row in rows]


def _validate_amount(amount) -> Decimal:
    if amount is None:
        raise ValidationError("Payment amount is required")
    try:
        value = sm.to_money(amount)
    except ArithmeticError:
        raise ValidationError("Payment amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Payment amount must be a positive number")
    return value


def _resolve_method(conn: Connection, method_id: Optional[int], method_name: Optional[str]):
    if method_id is None and not method_name:
        return None
    stmt = select(payment_methods)
    if method_id is not None:
        stmt = stmt.where(payment_methods.c.id == method_id)
    else:
        stmt = stmt.where(func.lower(payment_methods.c.name) == method_name.strip().lower())
    method = conn.execute(stmt).mappings().first()
    if method is None:
        raise ValidationError(f"Unknown payment method: {method_id or method_name}")
    if not method["is_active"]:
        raise ValidationError(f"Payment method {method['name']} is not active")
    return method


def _processing_fee(method, amount: Decimal) -> Decimal:
    if method is None:
        return sm.ZERO
    percentage = method["processing_fee_percentage"] or Decimal("0")
    fixed = method["processing_fee_fixed"] or Decimal("0")
    if not percentage and not fixed:
        return sm.ZERO
    return sm.to_money(amount * percentage / Decimal("100") + fixed)


def _write_state(conn: Connection, invoice_id: int, state: sm.LedgerState, now: datetime) -> None:
    conn.execute(
        update(invoices)
        .where(invoices.c.id == invoice_id)
        .values(
            amount_paid=state.amount_paid,
            status=state.status,
            paid_at=state.paid_at,
            total_amount=state.total_amount,
            updated_at=now,
        )
    )


def _record(
    conn: Connection,
    row,
    amount: Decimal,
    *,
    payment_method: Optional[str],
    payment_method_id: Optional[int],
    payment_date: Optional[date],
    reference: Optional[str],
    notes: Optional[str],
    today: date,
    now: datetime,
) -> PaymentRecorded:
    if row["status"] == sm.CANCELED:
        raise InvalidStateError("Cannot record a payment against a canceled invoice")

    new_state = sm.transition_on_payment(ledger_state(row), amount, today, now)
    method = _resolve_method(conn, payment_method_id, payment_method)

    payment_id = conn.execute(
        invoice_payments.insert().values(
            invoice_id=row["id"],
            amount=amount,
            payment_method_id=method["id"] if method is not None else None,
            payment_method=method["name"] if method is not None else DEFAULT_METHOD_NAME,
            payment_date=payment_date or today,
            reference=reference,
            notes=notes,
            processing_fee=_processing_fee(method, amount),
            created_at=now,
        )
    ).inserted_primary_key[0]
    _write_state(conn, row["id"], new_state, now)

    logger.info(
        "Recorded payment %s of %s on invoice %s (%s -> %s)",
        payment_id, amount, row["invoice_number"], row["status"], new_state.status,
    )
    return PaymentRecorded(
        payment=_fetch_payment(conn, payment_id),
        invoice_status=new_state.status,
        invoice_amount_paid=new_state.amount_paid,
        invoice_total_amount=new_state.total_amount,
        invoice_balance_due=sm.to_money(new_state.total_amount - new_state.amount_paid),
    )


def record_payment(
    engine: Engine,
    invoice_id: int,
    amount,
    payment_method: Optional[str] = None,
    payment_method_id: Optional[int] = None,
    payment_date: Optional[date] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> PaymentRecorded:
    now = now or local_now()
    today = today or now.date()
    amount = _validate_amount(amount)

    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        return _record(
            conn,
            row,
            amount,
            payment_method=payment_method,
            payment_method_id=payment_method_id,
            payment_date=payment_date,
            reference=reference,
            notes=notes,
            today=today,
            now=now,
        )


def settle_balance(
    engine: Engine,
    invoice_id: int,
    payment_method: Optional[str] = None,
    payment_method_id: Optional[int] = None,
    payment_date: Optional[date] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> PaymentRecorded:
    """Record a payment for whatever balance is left on the invoice."""
    now = now or local_now()
    today = today or now.date()

    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        if row["status"] == sm.PAID:
            raise InvalidStateError("Invoice is already paid")
        balance = sm.to_money(row["total_amount"] - row["amount_paid"])
        return _record(
            conn,
            row,
            balance,
            payment_method=payment_method,
            payment_method_id=payment_method_id,
            payment_date=payment_date,
            reference=reference,
            notes=notes,
            today=today,
            now=now,
        )


def void_payment(
    engine: Engine,
    payment_id: int,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> PaymentVoided:
    now = now or local_now()
    today = today or now.date()

    with unit_of_work(engine) as conn:
        payment = conn.execute(
            select(invoice_payments).where(invoice_payments.c.id == payment_id).with_for_update()
        ).mappings().first()
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        row = lock_invoice(conn, payment["invoice_id"])
        new_state = sm.transition_on_payment(ledger_state(row), -payment["amount"], today, now)

        conn.execute(delete(invoice_payments).where(invoice_payments.c.id == payment_id))
        _write_state(conn, row["id"], new_state, now)

    logger.info(
        "Voided payment %s of %s on invoice %s (%s -> %s)",
        payment_id, payment["amount"], row["invoice_number"], row["status"], new_state.status,
    )
    return PaymentVoided(
        payment_id=payment_id,
        invoice_id=row["id"],
        invoice_status=new_state.status,
        invoice_amount_paid=new_state.amount_paid,
    )


def adjust_total(
    conn: Connection,
    row,
    amount: Decimal,
    *,
    description: str,
    event_type: str,
    today: date,
    now: datetime,
    details: Optional[str] = None,
):
    """
    Add a charge line to an invoice already locked by the caller's
    transaction, raise its totals and write an audit event.

    Returns ``(previous_total, new_state)``.
    """
    amount = sm.to_money(amount)
    if amount <= 0:
        raise ValidationError("Charge amount must be positive")
    if row["status"] in sm.TERMINAL_STATUSES:
        raise InvalidStateError(f"Cannot add charges to a {row['status']} invoice")

    next_position = conn.execute(
        select(func.coalesce(func.max(invoice_items.c.position), -1) + 1)
        .where(invoice_items.c.invoice_id == row["id"])
    ).scalar_one()
    conn.execute(
        invoice_items.insert().values(
            invoice_id=row["id"],
            position=next_position,
            description=description,
            quantity=Decimal("1"),
            unit_price=amount,
            tax_rate=Decimal("0"),
            amount=amount,
            is_late_fee=event_type == "late_fee",
            created_at=now,
        )
    )

    previous_total = row["total_amount"]
    new_total = sm.to_money(previous_total + amount)
    state = ledger_state(row)
    new_status = sm.derive_status(
        new_total, state.amount_paid, state.due_date, state.status, today,
        was_sent=state.sent_at is not None,
    )
    new_state = sm.LedgerState(
        total_amount=new_total,
        amount_paid=state.amount_paid,
        status=new_status,
        due_date=state.due_date,
        sent_at=state.sent_at,
        paid_at=state.paid_at if new_status == sm.PAID else None,
    )
    conn.execute(
        update(invoices)
        .where(invoices.c.id == row["id"])
        .values(
            subtotal=sm.to_money(row["subtotal"] + amount),
            total_amount=new_total,
            status=new_status,
            paid_at=new_state.paid_at,
            updated_at=now,
        )
    )
    conn.execute(
        invoice_events.insert().values(
            invoice_id=row["id"],
            event_type=event_type,
            amount=amount,
            previous_total=previous_total,
            new_total=new_total,
            details=details,
            created_at=now,
        )
    )
    return previous_total, new_state


def get_payments(
    engine: Engine,
    filters: Optional[PaymentFilters] = None,
    limit: int = 50,
    offset: int = 0,
) -> PaymentPage:
    filters = filters or PaymentFilters()
    conditions = []
    if filters.invoice_id is not None:
        conditions.append(invoice_payments.c.invoice_id == filters.invoice_id)
    if filters.client_id is not None:
        conditions.append(invoices.c.client_id == filters.client_id)
    if filters.payment_method:
        conditions.append(
            func.lower(invoice_payments.c.payment_method) == filters.payment_method.lower()
        )
    if filters.start_date is not None:
        conditions.append(invoice_payments.c.payment_date >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(invoice_payments.c.payment_date <= filters.end_date)
    if filters.min_amount is not None:
        conditions.append(invoice_payments.c.amount >= filters.min_amount)
    if filters.max_amount is not None:
        conditions.append(invoice_payments.c.amount <= filters.max_amount)
    where = and_(true(), *conditions)

    with engine.connect() as conn:
        total = conn.execute(
            select(func.count())
            .select_from(invoice_payments.join(invoices))
            .where(where)
        ).scalar_one()
        rows = conn.execute(
            select(*_payment_columns())
            .select_from(invoice_payments.join(invoices))
            .where(where)
            .order_by(invoice_payments.c.payment_date.desc(), invoice_payments.c.id.desc())
            .limit(limit)
            .offset(offset)
        ).mappings().all()

    return PaymentPage(
        items=[PaymentOut.model_validate(dict(row)) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


def get_payment_statistics(
    engine: Engine,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> PaymentStatistics:
    conditions = []
    if start_date is not None:
        conditions.append(invoice_payments.c.payment_date >= start_date)
    if end_date is not None:
        conditions.append(invoice_payments.c.payment_date <= end_date)
    where = and_(true(), *conditions)

    with engine.connect() as conn:
        totals = conn.execute(
            select(
                func.count().label("payment_count"),
                func.coalesce(func.sum(invoice_payments.c.amount), 0).label("total_amount"),
                func.coalesce(func.sum(invoice_payments.c.processing_fee), 0).label("total_fees"),
            )
            .select_from(invoice_payments)
            .where(where)
        ).mappings().first()
        by_method = conn.execute(
            select(
                invoice_payments.c.payment_method,
                func.count().label("count"),
                func.sum(invoice_payments.c.amount).label("total_amount"),
            )
            .where(where)
            .group_by(invoice_payments.c.payment_method)
            .order_by(func.sum(invoice_payments.c.amount).desc())
        ).mappings().all()
        dated = conn.execute(
            select(invoice_payments.c.payment_date, invoice_payments.c.amount).where(where)
        ).all()

    months = defaultdict(lambda: [0, sm.ZERO])
    for payment_date, amount in dated:
        bucket = months[payment_date.strftime("%Y-%m")]
        bucket[0] += 1
        bucket[1] += amount

    return PaymentStatistics(
        total_count=totals["payment_count"] or 0,
        total_amount=sm.to_money(totals["total_amount"]),
        total_processing_fees=sm.to_money(totals["total_fees"]),
        by_payment_method=[
            MethodBreakdown(
                payment_method=row["payment_method"],
                count=row["count"],
                total_amount=sm.to_money(row["total_amount"]),
            )
            for row in by_method
        ],
        by_month=[
            MonthBreakdown(month=month, count=count, total_amount=sm.to_money(amount))
            for month, (count, amount) in sorted(months.items(), reverse=True)[:12]
        ],
    )
