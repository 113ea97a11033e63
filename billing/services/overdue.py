# billing/services/overdue.py
"""
Overdue detection, late fees and payment reminders.

Detection only relabels ``sent``/``partial`` invoices whose due date has
passed, so running it twice changes nothing the second time. Late fees go
through ``ledger.adjust_total`` like every other change to an invoice total.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.engine import Connection, Engine

from billing.clock import local_now
from billing.config import Settings, settings
from billing.db.engine import unit_of_work
from billing.db.schema import clients, invoice_events, invoice_reminders, invoices
from billing.errors import InvalidStateError, NotFoundError, ValidationError
from billing.models.common import JobResult
from billing.models.invoices import LateFeeOut, PastDueInvoiceItem, PastDueResponse
from billing.scheduler import ItemRunner
from billing.services import status as sm
from billing.services.invoices import lock_invoice
from billing.services.ledger import adjust_total
from billing.services.notifications import EmailSender, deliver

logger = logging.getLogger(__name__)

LATE_FEE_EVENT = "late_fee"
LATE_FEE_DESCRIPTION = "Late Payment Fee"

GENTLE = "gentle"
FIRM = "firm"
URGENT = "urgent"
REMINDER_LEVELS = (GENTLE, FIRM, URGENT)

REMINDER_TEMPLATES = {
    GENTLE: (
        "Friendly Reminder: Invoice #{invoice_number} is Past Due",
        "Dear {client_name},\n\n"
        "This is a gentle reminder that invoice #{invoice_number} for {total_amount} "
        "was due on {due_date}. If you have already made the payment, please "
        "disregard this message.\n\n"
        "Balance due: {balance_due}\n\n"
        "Thank you for your business.\n\n"
        "Regards,\n{company_name}",
    ),
    FIRM: (
        "Second Notice: Invoice #{invoice_number} is Overdue",
        "Dear {client_name},\n\n"
        "This is our second notice regarding invoice #{invoice_number} for "
        "{total_amount} which was due on {due_date}. Your account is now "
        "{days_overdue} days past due.\n\n"
        "Balance due: {balance_due}\n\n"
        "Please arrange for payment as soon as possible. If you are experiencing "
        "difficulties with payment, please contact us to discuss possible "
        "arrangements.\n\n"
        "Regards,\n{company_name}",
    ),
    URGENT: (
        "URGENT: Final Notice for Invoice #{invoice_number}",
        "Dear {client_name},\n\n"
        "This is an urgent notice regarding invoice #{invoice_number} for "
        "{total_amount} which was due on {due_date}. Your account is now "
        "{days_overdue} days past due.\n\n"
        "Balance due: {balance_due}\n"
        "Late fees of {late_fee_amount} may be applied to your account. Please "
        "make payment immediately to avoid further action.\n\n"
        "Regards,\n{company_name}",
    ),
}


def _money(value: Decimal) -> str:
    return f"${sm.to_money(value):,.2f}"


def detect_overdue(
    engine: Engine,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> JobResult:
    """Mark open invoices past their due date as ``overdue``."""
    now = now or local_now()
    today = today or now.date()
    with unit_of_work(engine) as conn:
        marked = conn.execute(
            update(invoices)
            .where(
                invoices.c.status.in_((sm.SENT, sm.PARTIAL)),
                invoices.c.due_date < today,
            )
            .values(status=sm.OVERDUE, updated_at=now)
        ).rowcount

    if marked:
        logger.info("Marked %d invoices overdue as of %s", marked, today)
    return JobResult(job="overdue_detection", processed=marked, succeeded=marked)


def get_overdue_invoices(
    engine: Engine,
    as_of: Optional[date] = None,
    client_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    sort: Optional[str] = "due_date.asc",
) -> PastDueResponse:
    """
    Open invoices with a positive balance whose due date is before ``as_of``.
    """
    as_of = as_of or local_now().date()

    if sort == "due_date.desc":
        order_clause = invoices.c.due_date.desc()
    elif sort == "outstanding.desc":
        order_clause = (invoices.c.total_amount - invoices.c.amount_paid).desc()
    else:
        order_clause = invoices.c.due_date.asc()

    outstanding_expr = invoices.c.total_amount - invoices.c.amount_paid
    base_where = and_(
        invoices.c.status.in_(sm.OPEN_STATUSES),
        outstanding_expr > 0,
        invoices.c.due_date < as_of,
    )
    if client_id is not None:
        base_where = and_(base_where, invoices.c.client_id == client_id)

    with engine.connect() as conn:
        total = conn.execute(
            select(func.count()).select_from(invoices).where(base_where)
        ).scalar_one()

        rows = conn.execute(
            select(
                invoices.c.id,
                invoices.c.invoice_number,
                invoices.c.client_id,
                clients.c.name.label("client_name"),
                invoices.c.issue_date,
                invoices.c.due_date,
                invoices.c.total_amount,
                invoices.c.amount_paid,
                invoices.c.status,
            )
            .select_from(invoices.join(clients))
            .where(base_where)
            .order_by(order_clause, invoices.c.id)
            .limit(limit)
            .offset(offset)
        ).mappings().all()

    items: List[PastDueInvoiceItem] = []
    for row in rows:
        outstanding = sm.to_money(row["total_amount"] - row["amount_paid"])
        items.append(
            PastDueInvoiceItem(
                invoice_id=row["id"],
                invoice_number=row["invoice_number"],
                client_id=row["client_id"],
                client_name=row["client_name"],
                issue_date=row["issue_date"],
                due_date=row["due_date"],
                total_amount=row["total_amount"],
                amount_paid=row["amount_paid"],
                outstanding=outstanding,
                status=row["status"],
                days_past_due=sm.days_overdue(row["due_date"], as_of),
                aging_bucket=sm.aging_bucket(row["due_date"], as_of),
            )
        )

    return PastDueResponse(items=items, total=total, limit=limit, offset=offset)


def compute_late_fee(total: Decimal, fee_type: str, amount: Decimal) -> Decimal:
    """``percentage`` is a percent of the current total, ``fixed`` a flat amount."""
    amount = Decimal(str(amount))
    if amount <= 0:
        raise ValidationError("Late fee amount must be positive")
    if fee_type == "percentage":
        return sm.to_money(total * amount / Decimal("100"))
    if fee_type == "fixed":
        return sm.to_money(amount)
    raise ValidationError(f"Unknown late fee type: {fee_type}")


def _charge_late_fee(conn: Connection, row, fee_type: str, amount: Decimal, today: date, now: datetime) -> LateFeeOut:
    if row["status"] != sm.OVERDUE:
        raise InvalidStateError("Late fees can only be applied to overdue invoices")
    fee = compute_late_fee(row["total_amount"], fee_type, amount)
    if fee <= 0:
        raise ValidationError("Computed late fee is zero")

    previous_total, state = adjust_total(
        conn,
        row,
        fee,
        description=LATE_FEE_DESCRIPTION,
        event_type=LATE_FEE_EVENT,
        today=today,
        now=now,
        details=f"{fee_type}:{amount}",
    )
    logger.info(
        "Applied late fee of %s to invoice %s (%s -> %s)",
        fee, row["invoice_number"], previous_total, state.total_amount,
    )
    return LateFeeOut(
        invoice_id=row["id"],
        fee_amount=fee,
        previous_total=previous_total,
        new_total=state.total_amount,
        status=state.status,
    )


def apply_late_fee(
    engine: Engine,
    invoice_id: int,
    amount: Optional[Decimal] = None,
    fee_type: Optional[str] = None,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    config: Settings = settings,
) -> LateFeeOut:
    now = now or local_now()
    today = today or now.date()
    fee_type = fee_type or config.late_fee_type
    amount = amount if amount is not None else config.late_fee_amount

    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        return _charge_late_fee(conn, row, fee_type, amount, today, now)


def _last_late_fee_at(conn: Connection, invoice_id: int) -> Optional[datetime]:
    return conn.execute(
        select(func.max(invoice_events.c.created_at)).where(
            invoice_events.c.invoice_id == invoice_id,
            invoice_events.c.event_type == LATE_FEE_EVENT,
        )
    ).scalar_one_or_none()


def _scheduled_late_fee(engine: Engine, invoice_id: int, today: date, now: datetime, config: Settings):
    with unit_of_work(engine) as conn:
        row = lock_invoice(conn, invoice_id)
        if row["status"] != sm.OVERDUE:
            return None
        if sm.days_overdue(row["due_date"], today) <= config.late_fee_grace_days:
            return None
        last_fee = _last_late_fee_at(conn, invoice_id)
        if last_fee is not None and (now - last_fee).days < config.late_fee_repeat_days:
            return None
        return _charge_late_fee(conn, row, config.late_fee_type, config.late_fee_amount, today, now)


def apply_late_fees(
    engine: Engine,
    now: Optional[datetime] = None,
    item_timeout: Optional[float] = None,
    config: Settings = settings,
) -> JobResult:
    """
    Weekly run: charge the configured fee on overdue invoices past the grace
    period that have not had a fee within ``late_fee_repeat_days``.
    """
    now = now or local_now()
    today = now.date()
    result = JobResult(job="late_fees")
    if not config.auto_late_fee:
        logger.info("Automatic late fees are disabled; skipping")
        result.details = {"skipped": True}
        return result

    with engine.connect() as conn:
        candidates = conn.execute(
            select(invoices.c.id)
            .where(invoices.c.status == sm.OVERDUE)
            .order_by(invoices.c.due_date, invoices.c.id)
        ).scalars().all()

    runner = ItemRunner(item_timeout)
    fees_total = sm.ZERO
    for invoice_id in candidates:
        result.processed += 1
        try:
            applied = runner.run(_scheduled_late_fee, engine, invoice_id, today, now, config)
        except Exception as exc:
            logger.exception("Failed to apply late fee to invoice %s", invoice_id)
            result.errors.append({"invoice_id": invoice_id, "error": str(exc)})
            continue
        if applied is not None:
            result.succeeded += 1
            fees_total += applied.fee_amount

    result.details = {"fees_applied": result.succeeded, "fees_total": str(fees_total)}
    return result


def should_send_reminder(
    days_overdue: int,
    history: Sequence,
    today: date,
    config: Settings = settings,
) -> Optional[str]:
    """
    Level of the next reminder to send, or ``None``.

    ``history`` holds earlier attempts (``reminder_level``, ``sent_at``),
    newest first. Reminders start after the grace period, escalate one level
    per attempt and stop after ``max_reminders``.
    """
    if not history:
        return GENTLE if days_overdue > config.late_fee_grace_days else None
    if len(history) >= config.max_reminders:
        return None

    last = history[0]
    if (today - last["sent_at"].date()).days < config.reminder_frequency_days:
        return None

    index = REMINDER_LEVELS.index(last["reminder_level"]) if last["reminder_level"] in REMINDER_LEVELS else -1
    return REMINDER_LEVELS[min(index + 1, len(REMINDER_LEVELS) - 1)]


def render_reminder(level: str, row, today: date, config: Settings = settings):
    subject, body = REMINDER_TEMPLATES[level]
    total = row["total_amount"]
    values = {
        "client_name": row["client_name"],
        "invoice_number": row["invoice_number"],
        "total_amount": _money(total),
        "balance_due": _money(total - row["amount_paid"]),
        "due_date": row["due_date"].isoformat(),
        "days_overdue": sm.days_overdue(row["due_date"], today),
        "late_fee_amount": _money(compute_late_fee(total, config.late_fee_type, config.late_fee_amount)),
        "company_name": config.company_name,
    }
    return subject.format(**values), body.format(**values)


def _reminder_history(conn: Connection, invoice_id: int):
    return conn.execute(
        select(invoice_reminders.c.reminder_level, invoice_reminders.c.sent_at)
        .where(invoice_reminders.c.invoice_id == invoice_id)
        .order_by(invoice_reminders.c.sent_at.desc(), invoice_reminders.c.id.desc())
    ).mappings().all()


def _invoice_with_client(conn: Connection, invoice_id: int):
    return conn.execute(
        select(
            invoices.c.id,
            invoices.c.invoice_number,
            invoices.c.status,
            invoices.c.due_date,
            invoices.c.total_amount,
            invoices.c.amount_paid,
            clients.c.name.label("client_name"),
            clients.c.email.label("client_email"),
        )
        .select_from(invoices.join(clients))
        .where(invoices.c.id == invoice_id)
    ).mappings().first()


def send_reminder(
    engine: Engine,
    invoice_id: int,
    level: str,
    sender: Optional[EmailSender],
    today: Optional[date] = None,
    now: Optional[datetime] = None,
    config: Settings = settings,
) -> bool:
    """Send one reminder and log the attempt. A failed send is logged, not raised."""
    now = now or local_now()
    today = today or now.date()
    if level not in REMINDER_TEMPLATES:
        raise ValidationError(f"Unknown reminder level: {level}")

    with engine.connect() as conn:
        row = _invoice_with_client(conn, invoice_id)
    if row is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")

    subject, body = render_reminder(level, row, today, config)
    ok, error = deliver(sender, row["client_email"], subject, body)

    with unit_of_work(engine) as conn:
        conn.execute(
            invoice_reminders.insert().values(
                invoice_id=invoice_id,
                reminder_level=level,
                sent_at=now,
                success=ok,
                error_message=error,
            )
        )

    if ok:
        logger.info("Sent %s reminder for invoice %s", level, row["invoice_number"])
    else:
        logger.warning("%s reminder for invoice %s failed: %s", level, row["invoice_number"], error)
    return ok


def _remind(engine: Engine, invoice_id: int, sender, today: date, now: datetime, config: Settings):
    with engine.connect() as conn:
        row = _invoice_with_client(conn, invoice_id)
        history = _reminder_history(conn, invoice_id)
    if row is None or row["status"] != sm.OVERDUE:
        return None
    level = should_send_reminder(sm.days_overdue(row["due_date"], today), history, today, config)
    if level is None:
        return None
    return level, send_reminder(engine, invoice_id, level, sender, today, now, config)


def process_overdue_invoices(
    engine: Engine,
    sender: Optional[EmailSender],
    now: Optional[datetime] = None,
    item_timeout: Optional[float] = None,
    config: Settings = settings,
) -> JobResult:
    """Daily run: detect newly overdue invoices, then send due reminders."""
    now = now or local_now()
    today = now.date()
    detected = detect_overdue(engine, today=today, now=now)

    with engine.connect() as conn:
        overdue_ids = conn.execute(
            select(invoices.c.id)
            .where(invoices.c.status == sm.OVERDUE)
            .order_by(invoices.c.due_date, invoices.c.id)
        ).scalars().all()

    result = JobResult(job="overdue_invoices")
    runner = ItemRunner(item_timeout)
    sent = 0
    for invoice_id in overdue_ids:
        result.processed += 1
        try:
            outcome = runner.run(_remind, engine, invoice_id, sender, today, now, config)
        except Exception as exc:
            logger.exception("Failed to process overdue invoice %s", invoice_id)
            result.errors.append({"invoice_id": invoice_id, "error": str(exc)})
            continue
        result.succeeded += 1
        if outcome is None:
            continue
        level, ok = outcome
        if ok:
            sent += 1
        else:
            result.errors.append({"invoice_id": invoice_id, "error": f"{level} reminder not delivered"})

    result.details = {"marked_overdue": detected.processed, "reminders_sent": sent}
    logger.info(
        "Overdue run for %s: %d newly overdue, %d open overdue, %d reminders sent",
        today, detected.processed, result.processed, sent,
    )
    return result
