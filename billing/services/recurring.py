# billing/services/recurring.py
"""
Recurring invoice templates and the generation run.

Each due template is materialized in its own transaction: the draft
invoice, the history row and the advanced template commit together, and a
failure on one template is recorded without touching the others.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, select, true, update
from sqlalchemy.engine import Connection, Engine

from billing.clock import local_now
from billing.config import settings
from billing.db.engine import unit_of_work
from billing.db.schema import (
    clients,
    invoices,
    recurring_invoice_history,
    recurring_invoice_items,
    recurring_invoices,
)
from billing.errors import InvalidStateError, NotFoundError, ValidationError
from billing.models.common import JobResult
from billing.models.recurring import (
    GeneratedInvoice,
    RecurringHistoryOut,
    RecurringInvoiceCreate,
    RecurringInvoiceOut,
    RecurringItemOut,
)
from billing.scheduler import ItemRunner
from billing.services import status as sm
from billing.services.clients import require_client
from billing.services.invoices import insert_invoice
from billing.services.status import LineItem

logger = logging.getLogger(__name__)

ACTIVE = "active"
CANCELED = "canceled"

WEEKLY = "weekly"
FREQUENCIES = (WEEKLY, "monthly", "quarterly", "yearly")
_MONTHS_PER_PERIOD = {"monthly": 1, "quarterly": 3, "yearly": 12}


def advance_date(current: date, frequency: str, anchor_day: Optional[int] = None) -> date:
    """
    Move ``current`` forward one frequency unit.

    Month based frequencies keep ``anchor_day`` (the template's start day)
    and clamp it to the length of the target month, so a schedule anchored
    on the 31st runs 02-29, 03-31, 04-30.
    """
    if frequency == WEEKLY:
        return current + timedelta(days=7)
    months = _MONTHS_PER_PERIOD.get(frequency)
    if months is None:
        raise ValidationError(f"Unsupported frequency: {frequency}")
    return current + relativedelta(months=months, day=anchor_day or current.day)


def _template_items(conn: Connection, template_id: int):
    return conn.execute(
        select(recurring_invoice_items)
        .where(recurring_invoice_items.c.recurring_invoice_id == template_id)
        .order_by(recurring_invoice_items.c.position, recurring_invoice_items.c.id)
    ).mappings().all()


def _as_line_items(rows) -> List[LineItem]:
    return [
        LineItem(
            description=row["description"],
            quantity=row["quantity"],
            unit_price=row["unit_price"],
            tax_rate=row["tax_rate"],
        )
        for row in rows
    ]


def _history(conn: Connection, template_id: int) -> List[RecurringHistoryOut]:
    rows = conn.execute(
        select(
            recurring_invoice_history.c.invoice_id,
            invoices.c.invoice_number,
            recurring_invoice_history.c.scheduled_date,
            recurring_invoice_history.c.generated_at,
            invoices.c.status,
            invoices.c.total_amount,
        )
        .select_from(recurring_invoice_history.join(invoices))
        .where(recurring_invoice_history.c.recurring_invoice_id == template_id)
        .order_by(recurring_invoice_history.c.scheduled_date.desc())
    ).mappings().all()
    return [RecurringHistoryOut.model_validate(dict(row)) for row in rows]


def _to_out(conn: Connection, row, with_history: bool = False) -> RecurringInvoiceOut:
    item_rows = _template_items(conn, row["id"])
    totals = sm.compute_totals(_as_line_items(item_rows))
    return RecurringInvoiceOut(
        id=row["id"],
        client_id=row["client_id"],
        title=row["title"],
        description=row["description"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        max_occurrences=row["max_occurrences"],
        next_date=row["next_date"],
        occurrences_generated=row["occurrences_generated"],
        payment_terms_days=row["payment_terms_days"],
        auto_send=row["auto_send"],
        status=row["status"],
        total_amount=totals.total_amount,
        last_generated_at=row["last_generated_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        items=[
            RecurringItemOut(
                position=item["position"],
                description=item["description"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
                tax_rate=item["tax_rate"],
            )
            for item in item_rows
        ],
        history=_history(conn, row["id"]) if with_history else [],
    )


def _lock_template(conn: Connection, template_id: int):
    row = conn.execute(
        select(recurring_invoices)
        .where(recurring_invoices.c.id == template_id)
        .with_for_update()
    ).mappings().first()
    if row is None:
        raise NotFoundError(f"Recurring invoice {template_id} not found")
    return row


def _limit_reached(row) -> bool:
    if row["max_occurrences"] is not None and row["occurrences_generated"] >= row["max_occurrences"]:
        return True
    if row["end_date"] is not None and row["next_date"] > row["end_date"]:
        return True
    return False


def create_recurring_invoice(
    engine: Engine,
    data: RecurringInvoiceCreate,
    now: Optional[datetime] = None,
) -> RecurringInvoiceOut:
    now = now or local_now()
    frequency = (data.frequency or "").lower()
    if frequency not in FREQUENCIES:
        raise ValidationError(f"frequency must be one of {', '.join(FREQUENCIES)}")
    if not data.title or not data.title.strip():
        raise ValidationError("title is required")
    if data.end_date is not None and data.end_date < data.start_date:
        raise ValidationError("end_date cannot be before start_date")
    if data.max_occurrences is not None and data.max_occurrences <= 0:
        raise ValidationError("max_occurrences must be positive")
    if data.payment_terms_days is not None and data.payment_terms_days < 0:
        raise ValidationError("payment_terms_days must not be negative")

    items = sm.validate_line_items(item.to_line_item() for item in data.items)
    if sm.compute_totals(items).total_amount <= 0:
        raise ValidationError("Recurring invoice total must be greater than zero")

    next_date = data.next_date or advance_date(data.start_date, frequency, data.start_date.day)
    if next_date < data.start_date:
        raise ValidationError("next_date cannot be before start_date")

    with unit_of_work(engine) as conn:
        require_client(conn, data.client_id)
        template_id = conn.execute(
            recurring_invoices.insert().values(
                client_id=data.client_id,
                title=data.title,
                description=data.description,
                frequency=frequency,
                start_date=data.start_date,
                end_date=data.end_date,
                max_occurrences=data.max_occurrences,
                next_date=next_date,
                occurrences_generated=0,
                payment_terms_days=data.payment_terms_days,
                auto_send=data.auto_send,
                status=ACTIVE,
                created_at=now,
                updated_at=now,
            )
        ).inserted_primary_key[0]
        conn.execute(
            recurring_invoice_items.insert(),
            [
                {
                    "recurring_invoice_id": template_id,
                    "position": index,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "tax_rate": item.tax_rate,
                }
                for index, item in enumerate(items)
            ],
        )
        logger.info(
            "Created %s recurring invoice %s for client %s, first run %s",
            frequency, template_id, data.client_id, next_date,
        )
        row = _lock_template(conn, template_id)
        return _to_out(conn, row)


def get_recurring_invoice(engine: Engine, template_id: int) -> RecurringInvoiceOut:
    with engine.connect() as conn:
        row = conn.execute(
            select(recurring_invoices).where(recurring_invoices.c.id == template_id)
        ).mappings().first()
        if row is None:
            raise NotFoundError(f"Recurring invoice {template_id} not found")
        return _to_out(conn, row, with_history=True)


def list_recurring_invoices(
    engine: Engine,
    status: Optional[str] = None,
    client_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[RecurringInvoiceOut]:
    conditions = []
    if status:
        conditions.append(recurring_invoices.c.status == status)
    if client_id is not None:
        conditions.append(recurring_invoices.c.client_id == client_id)

    with engine.connect() as conn:
        rows = conn.execute(
            select(recurring_invoices)
            .where(and_(true(), *conditions))
            .order_by(recurring_invoices.c.next_date, recurring_invoices.c.id)
            .limit(limit)
            .offset(offset)
        ).mappings().all()
        return [_to_out(conn, row) for row in rows]


def cancel_recurring_invoice(
    engine: Engine,
    template_id: int,
    now: Optional[datetime] = None,
) -> RecurringInvoiceOut:
    """Stop future generation. Invoices already generated are untouched."""
    now = now or local_now()
    with unit_of_work(engine) as conn:
        row = _lock_template(conn, template_id)
        if row["status"] == CANCELED:
            raise InvalidStateError("Recurring invoice is already canceled")
        conn.execute(
            update(recurring_invoices)
            .where(recurring_invoices.c.id == template_id)
            .values(status=CANCELED, updated_at=now)
        )
        logger.info("Canceled recurring invoice %s", template_id)
        return _to_out(conn, _lock_template(conn, template_id))


def reactivate_recurring_invoice(
    engine: Engine,
    template_id: int,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> RecurringInvoiceOut:
    now = now or local_now()
    today = today or now.date()
    with unit_of_work(engine) as conn:
        row = _lock_template(conn, template_id)
        if row["status"] == ACTIVE:
            raise InvalidStateError("Recurring invoice is already active")
        if row["end_date"] is not None and row["end_date"] < today:
            raise InvalidStateError("Recurring invoice end date has passed")
        if row["max_occurrences"] is not None and row["occurrences_generated"] >= row["max_occurrences"]:
            raise InvalidStateError("Recurring invoice has generated all its occurrences")

        next_date = max(row["next_date"], today)
        conn.execute(
            update(recurring_invoices)
            .where(recurring_invoices.c.id == template_id)
            .values(status=ACTIVE, next_date=next_date, updated_at=now)
        )
        logger.info("Reactivated recurring invoice %s, next run %s", template_id, next_date)
        return _to_out(conn, _lock_template(conn, template_id))


def _payment_terms(conn: Connection, row) -> int:
    if row["payment_terms_days"] is not None:
        return row["payment_terms_days"]
    client_terms = conn.execute(
        select(clients.c.payment_terms_days).where(clients.c.id == row["client_id"])
    ).scalar_one_or_none()
    if client_terms is not None:
        return client_terms
    return settings.default_payment_terms_days


def generate_from_template(conn: Connection, row, now: datetime) -> GeneratedInvoice:
    """
    Materialize the occurrence scheduled on ``row["next_date"]`` and advance
    the template. ``row`` must be locked by the caller's transaction.
    """
    scheduled = row["next_date"]
    invoice_id = insert_invoice(
        conn,
        client_id=row["client_id"],
        title=row["title"],
        description=row["description"],
        items=_as_line_items(_template_items(conn, row["id"])),
        issue_date=scheduled,
        due_date=scheduled + timedelta(days=_payment_terms(conn, row)),
        now=now,
        recurring_invoice_id=row["id"],
    )
    conn.execute(
        recurring_invoice_history.insert().values(
            recurring_invoice_id=row["id"],
            invoice_id=invoice_id,
            scheduled_date=scheduled,
            generated_at=now,
        )
    )

    next_date = advance_date(scheduled, row["frequency"], row["start_date"].day)
    occurrences = row["occurrences_generated"] + 1
    conn.execute(
        update(recurring_invoices)
        .where(recurring_invoices.c.id == row["id"])
        .values(
            next_date=next_date,
            occurrences_generated=occurrences,
            last_generated_at=now,
            updated_at=now,
        )
    )
    number = conn.execute(
        select(invoices.c.invoice_number).where(invoices.c.id == invoice_id)
    ).scalar_one()

    return GeneratedInvoice(
        recurring_invoice_id=row["id"],
        invoice_id=invoice_id,
        invoice_number=number,
        scheduled_date=scheduled,
        next_date=next_date,
        occurrences_generated=occurrences,
    )


def generate_now(
    engine: Engine,
    template_id: int,
    now: Optional[datetime] = None,
) -> GeneratedInvoice:
    """Generate the next occurrence immediately, whatever its scheduled date."""
    now = now or local_now()
    with unit_of_work(engine) as conn:
        row = _lock_template(conn, template_id)
        if row["status"] != ACTIVE:
            raise InvalidStateError("Only active recurring invoices can generate invoices")
        if _limit_reached(row):
            raise InvalidStateError("Recurring invoice has reached its end date or occurrence limit")
        generated = generate_from_template(conn, row, now)

    logger.info(
        "Manually generated invoice %s from recurring invoice %s",
        generated.invoice_number, template_id,
    )
    return generated


def _process_template(engine: Engine, template_id: int, today: date, now: datetime):
    with unit_of_work(engine) as conn:
        row = _lock_template(conn, template_id)
        # another run may have handled it since the candidate query
        if row["status"] != ACTIVE or row["next_date"] > today:
            return None
        if _limit_reached(row):
            conn.execute(
                update(recurring_invoices)
                .where(recurring_invoices.c.id == template_id)
                .values(status=CANCELED, updated_at=now)
            )
            logger.info("Recurring invoice %s reached its limit and was canceled", template_id)
            return CANCELED
        return generate_from_template(conn, row, now)


def process_due_recurring_invoices(
    engine: Engine,
    now: Optional[datetime] = None,
    item_timeout: Optional[float] = None,
    on_generated: Optional[Callable[[GeneratedInvoice], None]] = None,
) -> JobResult:
    """
    Daily generation run.

    ``on_generated`` is called after commit for templates with ``auto_send``
    and its failures are only logged.
    """
    now = now or local_now()
    today = now.date()

    with engine.connect() as conn:
        due = conn.execute(
            select(recurring_invoices.c.id, recurring_invoices.c.auto_send)
            .where(
                recurring_invoices.c.status == ACTIVE,
                recurring_invoices.c.next_date <= today,
            )
            .order_by(recurring_invoices.c.next_date, recurring_invoices.c.id)
        ).all()

    result = JobResult(job="recurring_invoices")
    generated: List[GeneratedInvoice] = []
    canceled = 0

    runner = ItemRunner(item_timeout)
    for template_id, auto_send in due:
        result.processed += 1
        try:
            outcome = runner.run(_process_template, engine, template_id, today, now)
        except Exception as exc:
            logger.exception("Failed to generate invoice for recurring invoice %s", template_id)
            result.errors.append({"recurring_invoice_id": template_id, "error": str(exc)})
            continue

        if outcome == CANCELED:
            canceled += 1
        elif outcome is not None:
            generated.append(outcome)
            if auto_send and on_generated is not None:
                try:
                    on_generated(outcome)
                except Exception as exc:
                    logger.warning(
                        "Auto-send of invoice %s failed: %s", outcome.invoice_number, exc
                    )

    result.succeeded = len(generated)
    result.generated = len(generated)
    result.details = {
        "generated": len(generated),
        "canceled": canceled,
        "invoices": [item.invoice_number for item in generated],
    }
    logger.info(
        "Recurring run for %s: %d processed, %d generated, %d errors",
        today, result.processed, len(generated), len(result.errors),
    )
    return result
