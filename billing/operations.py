# billing/operations.py
"""
Caller-facing billing operations.

Every method returns an ``OperationResult``: ``data`` on success, otherwise
the error ``kind`` and a message. Storage errors are logged with their
traceback and reported as ``internal_error`` without details.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from billing.clock import local_now
from billing.config import Settings, settings
from billing.db.engine import get_engine, is_lock_conflict
from billing.errors import BillingError, ConcurrencyError
from billing.models.common import OperationResult
from billing.models.invoices import InvoiceCreate, InvoiceUpdate, SendInvoiceOut
from billing.models.payments import MarkPaidIn, PaymentCreate
from billing.models.recurring import RecurringInvoiceCreate
from billing.services import invoices as invoice_service
from billing.services import ledger, overdue, recurring
from billing.services.analytics import FinancialAggregator
from billing.services.cache import Cache, InMemoryCache
from billing.services.notifications import EmailSender, default_sender, deliver, invoice_email

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred while processing the request"
CONFLICT_MESSAGE = "The invoice is being modified by another operation; retry the request"


class BillingOperations:
    def __init__(
        self,
        engine: Engine,
        cache: Optional[Cache] = None,
        sender: Optional[EmailSender] = None,
        config: Settings = settings,
    ):
        self.engine = engine
        self.config = config
        self.sender = sender if sender is not None else default_sender(config)
        self.analytics = FinancialAggregator(engine, cache, config.analytics_cache_ttl_seconds)

    def _run(self, action: str, fn: Callable, *args, mutates: bool = False, **kwargs) -> OperationResult:
        try:
            data = fn(*args, **kwargs)
        except BillingError as exc:
            logger.info("%s rejected (%s): %s", action, exc.kind, exc.message)
            return OperationResult(success=False, error=exc.kind, message=exc.message)
        except OperationalError as exc:
            if not is_lock_conflict(exc):
                logger.exception("%s failed with a storage error", action)
                return OperationResult(success=False, error="internal_error", message=INTERNAL_ERROR_MESSAGE)
            logger.info("%s hit a lock conflict: %s", action, exc.orig)
            return OperationResult(success=False, error=ConcurrencyError.kind, message=CONFLICT_MESSAGE)
        except SQLAlchemyError:
            logger.exception("%s failed with a storage error", action)
            return OperationResult(success=False, error="internal_error", message=INTERNAL_ERROR_MESSAGE)

        if mutates:
            self.analytics.invalidate()
        return OperationResult(success=True, data=data)

    # invoices

    def create_invoice(self, data: InvoiceCreate, now: Optional[datetime] = None) -> OperationResult:
        return self._run("create_invoice", invoice_service.create_invoice, self.engine, data, now, mutates=True)

    def get_invoice(self, invoice_id: int) -> OperationResult:
        return self._run("get_invoice", invoice_service.get_invoice, self.engine, invoice_id)

    def get_invoice_document(self, invoice_id: int) -> OperationResult:
        return self._run("get_invoice_document", invoice_service.get_invoice_document, self.engine, invoice_id)

    def update_invoice(
        self,
        invoice_id: int,
        data: InvoiceUpdate,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run(
            "update_invoice", invoice_service.update_invoice, self.engine, invoice_id, data, today, now,
            mutates=True,
        )

    def delete_invoice(self, invoice_id: int) -> OperationResult:
        result = self._run("delete_invoice", invoice_service.delete_invoice, self.engine, invoice_id, mutates=True)
        if result.success:
            result.message = f"Invoice {invoice_id} deleted"
        return result

    def send_invoice(
        self,
        invoice_id: int,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Mark the invoice sent, then email it. The email outcome never undoes the send."""
        result = self._run("send_invoice", invoice_service.mark_sent, self.engine, invoice_id, today, now, mutates=True)
        if not result.success:
            return result

        invoice = result.data
        email_sent = self._email_invoice(invoice_id)
        result.data = SendInvoiceOut(invoice=invoice, email_sent=email_sent)
        if not email_sent:
            result.message = "Invoice marked as sent but the email could not be delivered"
        return result

    def _email_invoice(self, invoice_id: int) -> bool:
        try:
            document = invoice_service.get_invoice_document(self.engine, invoice_id)
        except (BillingError, SQLAlchemyError) as exc:
            logger.warning("Could not load invoice %s for email: %s", invoice_id, exc)
            return False
        subject, body = invoice_email(document.invoice, document.client, self.config.company_name)
        ok, _ = deliver(self.sender, document.client.email, subject, body)
        return ok

    def cancel_invoice(self, invoice_id: int, now: Optional[datetime] = None) -> OperationResult:
        return self._run("cancel_invoice", invoice_service.cancel_invoice, self.engine, invoice_id, now, mutates=True)

    # payments

    def record_payment(
        self,
        invoice_id: int,
        data: PaymentCreate,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run(
            "record_payment",
            ledger.record_payment,
            self.engine,
            invoice_id,
            data.amount,
            payment_method=data.payment_method,
            payment_method_id=data.payment_method_id,
            payment_date=data.payment_date,
            reference=data.reference,
            notes=data.notes,
            today=today,
            now=now,
            mutates=True,
        )

    def mark_as_paid(
        self,
        invoice_id: int,
        data: Optional[MarkPaidIn] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        data = data or MarkPaidIn()
        return self._run(
            "mark_as_paid",
            ledger.settle_balance,
            self.engine,
            invoice_id,
            payment_method=data.payment_method,
            payment_method_id=data.payment_method_id,
            payment_date=data.payment_date,
            reference=data.reference,
            notes=data.notes,
            today=today,
            now=now,
            mutates=True,
        )

    def void_payment(
        self,
        payment_id: int,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run("void_payment", ledger.void_payment, self.engine, payment_id, today, now, mutates=True)

    def get_payments(self, filters: Optional[ledger.PaymentFilters] = None, limit: int = 50, offset: int = 0) -> OperationResult:
        return self._run("get_payments", ledger.get_payments, self.engine, filters, limit, offset)

    def get_payment_statistics(self, start_date: Optional[date] = None, end_date: Optional[date] = None) -> OperationResult:
        return self._run("get_payment_statistics", ledger.get_payment_statistics, self.engine, start_date, end_date)

    # recurring templates

    def create_recurring_invoice(self, data: RecurringInvoiceCreate, now: Optional[datetime] = None) -> OperationResult:
        return self._run(
            "create_recurring_invoice", recurring.create_recurring_invoice, self.engine, data, now, mutates=True
        )

    def get_recurring_invoice(self, template_id: int) -> OperationResult:
        return self._run("get_recurring_invoice", recurring.get_recurring_invoice, self.engine, template_id)

    def list_recurring_invoices(
        self,
        status: Optional[str] = None,
        client_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> OperationResult:
        return self._run(
            "list_recurring_invoices", recurring.list_recurring_invoices, self.engine, status, client_id, limit, offset
        )

    def cancel_recurring_invoice(self, template_id: int, now: Optional[datetime] = None) -> OperationResult:
        return self._run(
            "cancel_recurring_invoice", recurring.cancel_recurring_invoice, self.engine, template_id, now, mutates=True
        )

    def reactivate_recurring_invoice(
        self,
        template_id: int,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run(
            "reactivate_recurring_invoice",
            recurring.reactivate_recurring_invoice,
            self.engine,
            template_id,
            today,
            now,
            mutates=True,
        )

    def generate_recurring_invoice(self, template_id: int, now: Optional[datetime] = None) -> OperationResult:
        result = self._run("generate_recurring_invoice", recurring.generate_now, self.engine, template_id, now, mutates=True)
        if result.success:
            self._auto_send(result.data, now)
        return result

    def _auto_send(self, generated, now: Optional[datetime] = None) -> None:
        try:
            template = recurring.get_recurring_invoice(self.engine, generated.recurring_invoice_id)
        except (BillingError, SQLAlchemyError) as exc:
            logger.warning("Could not load recurring invoice %s: %s", generated.recurring_invoice_id, exc)
            return
        if template.auto_send:
            self.send_invoice(generated.invoice_id, now=now)

    # overdue and late fees

    def apply_late_fee(
        self,
        invoice_id: int,
        amount: Optional[Decimal] = None,
        fee_type: Optional[str] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        return self._run(
            "apply_late_fee",
            overdue.apply_late_fee,
            self.engine,
            invoice_id,
            amount,
            fee_type,
            today,
            now,
            self.config,
            mutates=True,
        )

    def get_overdue_invoices(
        self,
        as_of: Optional[date] = None,
        client_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
        sort: Optional[str] = "due_date.asc",
    ) -> OperationResult:
        return self._run(
            "get_overdue_invoices", overdue.get_overdue_invoices, self.engine, as_of, client_id, limit, offset, sort
        )

    def send_reminder(self, invoice_id: int, level: str, now: Optional[datetime] = None) -> OperationResult:
        now = now or local_now()
        return self._run(
            "send_reminder", overdue.send_reminder, self.engine, invoice_id, level, self.sender,
            now.date(), now, self.config,
        )

    # analytics

    def get_revenue_summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        client_id: Optional[int] = None,
    ) -> OperationResult:
        return self._run("get_revenue_summary", self.analytics.get_revenue_summary, start_date, end_date, client_id)

    def get_invoice_trends(
        self,
        period: str = "month",
        months: int = 12,
        client_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> OperationResult:
        return self._run("get_invoice_trends", self.analytics.get_invoice_trends, period, months, client_id, today)

    def get_client_payment_analytics(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 50,
    ) -> OperationResult:
        return self._run(
            "get_client_payment_analytics", self.analytics.get_client_payment_analytics, start_date, end_date, limit
        )

    def get_revenue_forecast(
        self,
        months: int = 3,
        include_recurring: bool = True,
        today: Optional[date] = None,
    ) -> OperationResult:
        return self._run(
            "get_revenue_forecast", self.analytics.get_revenue_forecast, months, include_recurring, today
        )

    def get_overdue_analytics(self, as_of: Optional[date] = None, client_id: Optional[int] = None) -> OperationResult:
        return self._run("get_overdue_analytics", self.analytics.get_overdue_analytics, as_of, client_id)


_operations: Optional[BillingOperations] = None


def get_operations() -> BillingOperations:
    """Process-wide operations bound to the configured database."""
    global _operations
    if _operations is None:
        _operations = BillingOperations(get_engine(), cache=InMemoryCache())
    return _operations
