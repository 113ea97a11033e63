from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select

from billing import jobs
from billing.config import settings
from billing.db.schema import invoices
from billing.models.invoices import LineItemIn
from billing.models.recurring import RecurringInvoiceCreate
from billing.services import invoices as invoice_service
from billing.services import ledger
from billing.services import status as sm

from tests.conftest import NOW, TODAY


def test_build_scheduler_registers_billing_jobs(ops):
    scheduler = jobs.build_scheduler(ops)
    assert scheduler.jobs == ["recurring_invoices", "overdue_invoices", "late_fees", "monthly_report"]

    # June 3rd 2024 is a Monday, so only the monthly report is not due at 04:00
    due = [job.name for job in scheduler.due_jobs(datetime(2024, 6, 3, 4, 0))]
    assert due == ["recurring_invoices", "overdue_invoices", "late_fees"]
    due = [job.name for job in scheduler.due_jobs(datetime(2024, 7, 1, 4, 0))]
    assert "monthly_report" in due


def test_recurring_job_auto_sends(ops, sender, client_id):
    ops.create_recurring_invoice(
        RecurringInvoiceCreate(
            client_id=client_id,
            title="Retainer",
            frequency="weekly",
            start_date=date(2024, 5, 27),
            auto_send=True,
            items=[LineItemIn(description="Retainer", unit_price=Decimal("300"))],
        ),
        now=NOW,
    )
    scheduler = jobs.build_scheduler(ops, replace(settings, item_timeout_seconds=None))
    result = scheduler.run_job("recurring_invoices", datetime(2024, 6, 3, 1, 0))

    assert result.succeeded == 1
    assert result.generated == 1
    with ops.engine.connect() as conn:
        status = conn.execute(
            select(invoices.c.status).where(invoices.c.invoice_number == result.details["invoices"][0])
        ).scalar_one()
    assert status == sm.SENT
    assert len(sender.sent) == 1


def test_late_fee_job_follows_config(ops, make_invoice):
    invoice = make_invoice(issue_date=date(2024, 5, 1), due_date=date(2024, 5, 20), now=datetime(2024, 5, 2))
    jobs.process_overdue_invoices(ops, NOW)

    disabled = jobs.apply_late_fees(ops, NOW, replace(settings, auto_late_fee=False, item_timeout_seconds=None))
    assert disabled.details == {"skipped": True}

    enabled = jobs.apply_late_fees(ops, NOW, replace(settings, auto_late_fee=True, item_timeout_seconds=None))
    assert enabled.succeeded == 1
    assert invoice_service.get_invoice(ops.engine, invoice.id).total_amount == Decimal("1050.00")


def test_monthly_report_covers_previous_month(ops, make_invoice):
    may = make_invoice(issue_date=date(2024, 5, 10), due_date=date(2024, 6, 10), now=datetime(2024, 5, 10))
    ledger.record_payment(ops.engine, may.id, "400.00", payment_date=date(2024, 5, 20), today=TODAY, now=NOW)
    make_invoice()

    result = jobs.monthly_report(ops, datetime(2024, 6, 1, 4, 0))

    assert result.succeeded == 1
    assert result.details["start_date"] == "2024-05-01"
    assert result.details["end_date"] == "2024-05-31"
    assert result.details["total_invoices"] == 1
    assert Decimal(result.details["collected_in_period"]) == Decimal("400.00")
