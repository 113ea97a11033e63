# billing/services/invoices.py

import logging
from datetime import date, datetime
from typing import List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Connection, Engine

from billing.clock import local_now
from billing.config import settings
from billing.db.engine import unit_of_work
from billing.db.schema import (
    invoice_items,
    invoice_payments,
    invoice_sequences,
    invoices,
    recurring_invoice_history,
)
from billing.errors import InvalidStateError, NotFoundError, ValidationError
from billing.models.invoices import (
    InvoiceCreate,
    InvoiceDocument,
    InvoiceOut,
    InvoiceUpdate,
    LineItemOut,
)
from billing.services import status as sm
from billing.services.clients import require_client
from billing.services.status import LineItem

logger = logging.getLogger(__name__)


def _row_to_invoice(row, items: Sequence) -> InvoiceOut:
    return InvoiceOut(
        id=row["id"],
        invoice_number=row["invoice_number"],
        client_id=row["client_id"],
        recurring_invoice_id=row["recurring_invoice_id"],
        title=row["title"],
        description=row["description"],
        status=row["status"],
        issue_date=row["issue_date"],
        due_date=row["due_date"],
        subtotal=row["subtotal"],
        tax_amount=row["tax_amount"],
        total_amount=row["total_amount"],
        amount_paid=row["amount_paid"],
        balance_due=sm.to_money(row["total_amount"] - row["amount_paid"]),
        sent_at=row["sent_at"],
        paid_at=row["paid_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        items=[LineItemOut.model_validate(dict(item)) for item in items],
    )


def next_invoice_number(conn: Connection, issue_date: date, prefix: Optional[str] = None) -> str:
    """
    Allocate the next ``PREFIX-YYYYMM-NNNN`` number.

    Runs inside the caller's transaction so the number is only consumed when
    the invoice row commits.
    """
    prefix = prefix or settings.invoice_number_prefix
    year, month = issue_date.year, issue_date.month
    period = (
        (invoice_sequences.c.prefix == prefix)
        & (invoice_sequences.c.year == year)
        & (invoice_sequences.c.month == month)
    )
    current = conn.execute(
        select(invoice_sequences.c.sequence).where(period).with_for_update()
    ).scalar_one_or_none()

    if current is None:
        sequence = 1
        conn.execute(
            invoice_sequences.insert().values(
                prefix=prefix, year=year, month=month, sequence=sequence
            )
        )
    else:
        sequence = current + 1
        conn.execute(
            update(invoice_sequences).where(period).values(sequence=sequence)
        )

    return f"{prefix}-{year}{month:02d}-{sequence:04d}"


def load_items(conn: Connection, invoice_id: int):
    return conn.execute(
        select(invoice_items)
        .where(invoice_items.c.invoice_id == invoice_id)
        .order_by(invoice_items.c.position, invoice_items.c.id)
    ).mappings().all()


def lock_invoice(conn: Connection, invoice_id: int):
    """Fetch an invoice row holding the row lock for the rest of the transaction."""
    row = conn.execute(
        select(invoices).where(invoices.c.id == invoice_id).with_for_update()
    ).mappings().first()
    if row is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return row


def fetch_invoice(conn: Connection, invoice_id: int) -> InvoiceOut:
    row = conn.execute(
        select(invoices).where(invoices.c.id == invoice_id)
    ).mappings().first()
    if row is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return _row_to_invoice(row, load_items(conn, invoice_id))


def ledger_state(row) -> sm.LedgerState:
    return sm.LedgerState(
        total_amount=row["total_amount"],
        amount_paid=row["amount_paid"],
        status=row["status"],
        due_date=row["due_date"],
        sent_at=row["sent_at"],
        paid_at=row["paid_at"],
    )


def _insert_items(conn: Connection, invoice_id: int, items: List[LineItem], now: datetime, start: int = 0) -> None:
    conn.execute(
        invoice_items.insert(),
        [
            {
                "invoice_id": invoice_id,
                "position": start + index,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "tax_rate": item.tax_rate,
                "amount": item.amount,
                "is_late_fee": item.is_late_fee,
                "created_at": now,
            }
            for index, item in enumerate(items)
        ],
    )


def insert_invoice(
    conn: Connection,
    *,
    client_id: Optional[int],
    title: str,
    description: Optional[str],
    items: Sequence[LineItem],
    issue_date: date,
    due_date: Optional[date],
    now: datetime,
    recurring_invoice_id: Optional[int] = None,
) -> int:
    """Insert a draft invoice with its line items; returns the new id."""
    require_client(conn, client_id)
    if due_date is None:
        raise ValidationError("due_date is required")
    if due_date < issue_date:
        raise ValidationError("due_date cannot be before the issue date")
    items = sm.validate_line_items(items)
    totals = sm.compute_totals(items)
    if totals.total_amount <= 0:
        raise ValidationError("Invoice total must be greater than zero")

    number = next_invoice_number(conn, issue_date)
    invoice_id = conn.execute(
        invoices.insert().values(
            invoice_number=number,
            client_id=client_id,
            recurring_invoice_id=recurring_invoice_id,
            title=title or "Invoice",
            description=description,
            status=sm.DRAFT,
            issue_date=issue_date,
            due_date=due_date,
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total_amount=totals.total_amount,
            amount_paid=sm.ZERO,
            created_at=now,
            updated_at=now,
        )
    ).inserted_primary_key[0]
    _insert_items(conn, invoice_id, items, now)

    logger.info("Created draft invoice %s (%s) for client %s", invoice_id, number, client_id)
    return invoice_id


def create_invoice(
    engine: Engine,
    data: InvoiceCreate,
    now: Optional[datetime] = None,
) -> InvoiceOut:
    now = now or local_now()
    with unit_of_work(engine) as conn:
        invoice_id = insert_invoice(
            conn,
            client_id=data.client_id,
            title=data.title,
            description=data.description,
            items=[item.to_line_item() for item in data.items],
            issue_date=data.issue_date or now.date(),
            due_date=data.due_date,
            now=now,
        )
        return fetch_invoice(conn, invoice_id)


def get_invoice(engine: Engine, invoice_id: int) -> InvoiceOut:
    with engine.connect() as conn:
        return fetch_invoice(conn, invoice_id)


def update_invoice(
    engine: Engine,
    invoice_id: int,
    data: InvoiceUpdate,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> InvoiceOut:
    """
    Edit an invoice. Line items can only change while the invoice is a
    draft; the due date can change on any open invoice and re-derives the
    status.
    """
    now = now or local_now()
    today = today or now.date()

    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        if row["status"] in sm.TERMINAL_STATUSES:
            raise InvalidStateError(f"A {row['status']} invoice cannot be edited")

        values = {"updated_at": now}
        if data.title is not None:
            if not data.title.strip():
                raise ValidationError("title cannot be blank")
            values["title"] = data.title
        if data.description is not None:
            values["description"] = data.description

        total_amount = row["total_amount"]
        if data.items is not None:
            if row["status"] != sm.DRAFT:
                raise InvalidStateError("Line items can only be changed while the invoice is a draft")
            items = sm.validate_line_items(item.to_line_item() for item in data.items)
            totals = sm.compute_totals(items)
            if totals.total_amount <= 0:
                raise ValidationError("Invoice total must be greater than zero")
            conn.execute(delete(invoice_items).where(invoice_items.c.invoice_id == invoice_id))
            _insert_items(conn, invoice_id, items, now)
            values.update(
                subtotal=totals.subtotal,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
            )
            total_amount = totals.total_amount

        due_date = row["due_date"]
        if data.due_date is not None:
            if data.due_date < row["issue_date"]:
                raise ValidationError("due_date cannot be before the issue date")
            due_date = data.due_date
            values["due_date"] = due_date

        values["status"] = sm.derive_status(
            total_amount,
            row["amount_paid"],
            due_date,
            row["status"],
            today,
            was_sent=row["sent_at"] is not None,
        )
        conn.execute(update(invoices).where(invoices.c.id == invoice_id).values(**values))
        return fetch_invoice(conn, invoice_id)


def delete_invoice(engine: Engine, invoice_id: int) -> int:
    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        sm.ensure_deletable(row["status"])
        conn.execute(
            delete(recurring_invoice_history).where(
                recurring_invoice_history.c.invoice_id == invoice_id
            )
        )
        conn.execute(delete(invoice_items).where(invoice_items.c.invoice_id == invoice_id))
        conn.execute(delete(invoices).where(invoices.c.id == invoice_id))

    logger.info("Deleted draft invoice %s (%s)", invoice_id, row["invoice_number"])
    return invoice_id


def mark_sent(
    engine: Engine,
    invoice_id: int,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> InvoiceOut:
    """
    Record that the invoice went out to the client. Sending a second time
    is allowed (a resend) and leaves the status alone.
    """
    now = now or local_now()
    today = today or now.date()

    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        if row["status"] == sm.CANCELED:
            raise InvalidStateError("A canceled invoice cannot be sent")
        if row["sent_at"] is None:
            new_status = sm.derive_status(
                row["total_amount"],
                row["amount_paid"],
                row["due_date"],
                row["status"],
                today,
                was_sent=True,
            )
            conn.execute(
                update(invoices)
                .where(invoices.c.id == invoice_id)
                .values(status=new_status, sent_at=now, updated_at=now)
            )
            logger.info("Invoice %s marked as sent (%s)", row["invoice_number"], new_status)
        return fetch_invoice(conn, invoice_id)


def cancel_invoice(engine: Engine, invoice_id: int, now: Optional[datetime] = None) -> InvoiceOut:
    now = now or local_now()
    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        payment_count = conn.execute(
            select(func.count())
            .select_from(invoice_payments)
            .where(invoice_payments.c.invoice_id == invoice_id)
        ).scalar_one()
        sm.ensure_cancellable(row["status"], payment_count)
        conn.execute(
            update(invoices)
            .where(invoices.c.id == invoice_id)
            .values(status=sm.CANCELED, updated_at=now)
        )
        logger.info("Canceled invoice %s", row["invoice_number"])
        return fetch_invoice(conn, invoice_id)


def get_invoice_document(engine: Engine, invoice_id: int) -> InvoiceDocument:
    """Everything a renderer needs: invoice, client and payments, resolved."""
    from billing.services.ledger import payments_for_invoice

    with engine.connect() as conn:
        invoice = fetch_invoice(conn, invoice_id)
        client = require_client(conn, invoice.client_id)
        payments = payments_for_invoice(conn, invoice_id)
    return InvoiceDocument(invoice=invoice, client=client, payments=payments)
