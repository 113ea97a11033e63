# billing/jobs.py
"""Scheduled billing jobs and their wiring into a ``Scheduler``."""

import logging
from datetime import datetime, timedelta

from billing.config import Settings, settings
from billing.models.common import JobResult
from billing.operations import BillingOperations
from billing.scheduler import Scheduler
from billing.services import overdue, recurring

logger = logging.getLogger(__name__)

MONDAY = 0


def generate_recurring_invoices(ops: BillingOperations, now: datetime, config: Settings = settings) -> JobResult:
    def send(generated):
        result = ops.send_invoice(generated.invoice_id, now=now)
        if not result.success:
            logger.warning("Auto-send of %s failed: %s", generated.invoice_number, result.message)

    result = recurring.process_due_recurring_invoices(
        ops.engine, now, item_timeout=config.item_timeout_seconds, on_generated=send
    )
    ops.analytics.invalidate()
    return result


def process_overdue_invoices(ops: BillingOperations, now: datetime, config: Settings = settings) -> JobResult:
    result = overdue.process_overdue_invoices(
        ops.engine, ops.sender, now, item_timeout=config.item_timeout_seconds, config=config
    )
    ops.analytics.invalidate()
    return result


def apply_late_fees(ops: BillingOperations, now: datetime, config: Settings = settings) -> JobResult:
    result = overdue.apply_late_fees(ops.engine, now, item_timeout=config.item_timeout_seconds, config=config)
    ops.analytics.invalidate()
    return result


def monthly_report(ops: BillingOperations, now: datetime) -> JobResult:
    """Summarize the month that just ended."""
    end = now.date().replace(day=1) - timedelta(days=1)
    start = end.replace(day=1)
    ops.analytics.invalidate()
    outcome = ops.get_revenue_summary(start_date=start, end_date=end)
    if not outcome.success:
        return JobResult(job="monthly_report", processed=1, errors=[{"error": outcome.message}])

    summary = outcome.data
    logger.info(
        "Monthly report %s: %d invoices, %s invoiced, %s collected, %s outstanding",
        start.strftime("%Y-%m"),
        summary.total_invoices,
        summary.total_invoiced,
        summary.collected_in_period,
        summary.amount_outstanding,
    )
    return JobResult(
        job="monthly_report",
        processed=1,
        succeeded=1,
        details=summary.model_dump(mode="json"),
    )


def build_scheduler(ops: BillingOperations, config: Settings = settings) -> Scheduler:
    scheduler = Scheduler()
    scheduler.register_daily_job(
        "recurring_invoices", lambda now: generate_recurring_invoices(ops, now, config), hour=1
    )
    scheduler.register_daily_job(
        "overdue_invoices", lambda now: process_overdue_invoices(ops, now, config), hour=2
    )
    scheduler.register_weekly_job(
        "late_fees", lambda now: apply_late_fees(ops, now, config), weekday=MONDAY, hour=3
    )
    scheduler.register_monthly_job("monthly_report", lambda now: monthly_report(ops, now), day=1, hour=4)
    return scheduler
