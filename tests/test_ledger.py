import threading
import time
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from billing.db.engine import unit_of_work
from billing.db.schema import invoice_events, invoice_items, invoice_payments
from billing.errors import InvalidStateError, NotFoundError, OverpaymentError, ValidationError
from billing.services import invoices as invoice_service
from billing.services import ledger
from billing.services import overdue
from billing.services import status as sm
from billing.services.ledger import PaymentFilters

from tests.conftest import NOW, TODAY


def _payment_count(engine, invoice_id):
    with engine.connect() as conn:
        return conn.execute(
            select(func.count()).select_from(invoice_payments).where(invoice_payments.c.invoice_id == invoice_id)
        ).scalar_one()


def test_partial_then_full_payment(engine, make_invoice):
    invoice = make_invoice()

    first = ledger.record_payment(engine, invoice.id, Decimal("400.00"), payment_method="Bank Transfer", today=TODAY, now=NOW)
    assert first.invoice_status == sm.PARTIAL
    assert first.invoice_balance_due == Decimal("600.00")

    second = ledger.record_payment(engine, invoice.id, Decimal("600.00"), today=TODAY, now=NOW)
    assert second.invoice_status == sm.PAID
    assert second.payment.payment_method == ledger.DEFAULT_METHOD_NAME

    stored = invoice_service.get_invoice(engine, invoice.id)
    assert stored.amount_paid == stored.total_amount
    assert stored.paid_at == NOW


@pytest.mark.parametrize("amount", [None, "0", "-5", "abc", "NaN"])
def test_invalid_amounts_are_rejected(engine, make_invoice, amount):
    invoice = make_invoice()
    with pytest.raises(ValidationError):
        ledger.record_payment(engine, invoice.id, amount, today=TODAY, now=NOW)


def test_overpayment_leaves_state_unchanged(engine, make_invoice):
    invoice = make_invoice()
    ledger.record_payment(engine, invoice.id, "700.00", today=TODAY, now=NOW)

    with pytest.raises(OverpaymentError):
        ledger.record_payment(engine, invoice.id, "300.01", today=TODAY, now=NOW)

    stored = invoice_service.get_invoice(engine, invoice.id)
    assert stored.amount_paid == Decimal("700.00")
    assert stored.status == sm.PARTIAL
    assert _payment_count(engine, invoice.id) == 1


def test_payment_on_canceled_invoice(engine, make_invoice):
    invoice = make_invoice()
    invoice_service.cancel_invoice(engine, invoice.id, now=NOW)
    with pytest.raises(InvalidStateError):
        ledger.record_payment(engine, invoice.id, "10.00", today=TODAY, now=NOW)
    assert _payment_count(engine, invoice.id) == 0


def test_unknown_invoice_and_method(engine, make_invoice):
    with pytest.raises(NotFoundError):
        ledger.record_payment(engine, 12345, "10.00", today=TODAY, now=NOW)

    invoice = make_invoice()
    with pytest.raises(ValidationError):
        ledger.record_payment(engine, invoice.id, "10.00", payment_method="Barter", today=TODAY, now=NOW)
    assert _payment_count(engine, invoice.id) == 0


def test_processing_fee_from_method(engine, make_invoice):
    invoice = make_invoice()
    recorded = ledger.record_payment(engine, invoice.id, "100.00", payment_method="credit card", today=TODAY, now=NOW)
    assert recorded.payment.payment_method == "Credit Card"
    assert recorded.payment.processing_fee == Decimal("3.20")


@pytest.mark.parametrize("sent", [True, False])
def test_record_then_void_restores_invoice(engine, make_invoice, sent):
    invoice = make_invoice(sent=sent)
    before = invoice_service.get_invoice(engine, invoice.id)

    recorded = ledger.record_payment(engine, invoice.id, "1000.00", today=TODAY, now=NOW)
    assert recorded.invoice_status == sm.PAID

    voided = ledger.void_payment(engine, recorded.payment.id, today=TODAY, now=NOW)
    after = invoice_service.get_invoice(engine, invoice.id)

    assert voided.invoice_status == before.status
    assert after.amount_paid == before.amount_paid
    assert after.status == before.status
    assert after.paid_at is None
    assert _payment_count(engine, invoice.id) == 0


def test_void_unknown_payment(engine):
    with pytest.raises(NotFoundError):
        ledger.void_payment(engine, 999, today=TODAY, now=NOW)


def test_amount_bounds_hold_across_sequences(engine, make_invoice):
    invoice = make_invoice(total="300.00")
    payments = [ledger.record_payment(engine, invoice.id, "100.00", today=TODAY, now=NOW) for _ in range(3)]
    with pytest.raises(OverpaymentError):
        ledger.record_payment(engine, invoice.id, "0.01", today=TODAY, now=NOW)

    ledger.void_payment(engine, payments[1].payment.id, today=TODAY, now=NOW)
    ledger.record_payment(engine, invoice.id, "50.00", today=TODAY, now=NOW)

    stored = invoice_service.get_invoice(engine, invoice.id)
    assert Decimal("0") <= stored.amount_paid <= stored.total_amount
    assert stored.amount_paid == Decimal("250.00")
    assert (stored.status == sm.PAID) == (stored.amount_paid == stored.total_amount)


def test_overdue_invoice_paid_in_full(engine, make_invoice):
    invoice = make_invoice(issue_date=date(2024, 5, 1), due_date=date(2024, 6, 2), now=datetime(2024, 6, 1, 9, 0))
    assert invoice.status == sm.SENT

    overdue.detect_overdue(engine, today=TODAY, now=NOW)
    assert invoice_service.get_invoice(engine, invoice.id).status == sm.OVERDUE

    paid_at = datetime(2024, 6, 3, 15, 30)
    recorded = ledger.record_payment(engine, invoice.id, "1000.00", today=TODAY, now=paid_at)
    assert recorded.invoice_status == sm.PAID
    assert invoice_service.get_invoice(engine, invoice.id).paid_at == paid_at


def test_settle_balance_pays_remainder(engine, make_invoice):
    invoice = make_invoice()
    ledger.record_payment(engine, invoice.id, "125.50", today=TODAY, now=NOW)
    settled = ledger.settle_balance(engine, invoice.id, payment_method="Cash", today=TODAY, now=NOW)
    assert settled.payment.amount == Decimal("874.50")
    assert settled.invoice_status == sm.PAID

    with pytest.raises(InvalidStateError):
        ledger.settle_balance(engine, invoice.id, today=TODAY, now=NOW)


def test_adjust_total_writes_event(engine, make_invoice):
    invoice = make_invoice(due_date=date(2024, 6, 2))
    with unit_of_work(engine) as conn:
        row = invoice_service.lock_invoice(conn, invoice.id)
        previous, state = ledger.adjust_total(
            conn, row, Decimal("25"), description="Courier", event_type="adjustment", today=TODAY, now=NOW
        )
    assert previous == Decimal("1000.00")
    assert state.total_amount == Decimal("1025.00")

    with engine.connect() as conn:
        event = conn.execute(select(invoice_events)).mappings().one()
    assert event["event_type"] == "adjustment"
    assert event["new_total"] == Decimal("1025.00")


def test_get_payments_filters(engine, make_invoice, other_client_id):
    acme = make_invoice()
    globex = make_invoice(customer=other_client_id)
    ledger.record_payment(engine, acme.id, "100.00", payment_method="Check", payment_date=date(2024, 5, 20), today=TODAY, now=NOW)
    ledger.record_payment(engine, acme.id, "300.00", payment_method="Cash", payment_date=date(2024, 6, 1), today=TODAY, now=NOW)
    ledger.record_payment(engine, globex.id, "50.00", payment_method="Check", payment_date=date(2024, 6, 2), today=TODAY, now=NOW)

    assert ledger.get_payments(engine).total == 3
    assert ledger.get_payments(engine, PaymentFilters(client_id=other_client_id)).total == 1
    assert ledger.get_payments(engine, PaymentFilters(payment_method="check")).total == 2
    assert ledger.get_payments(engine, PaymentFilters(start_date=date(2024, 6, 1))).total == 2
    assert ledger.get_payments(engine, PaymentFilters(min_amount=Decimal("60"), max_amount=Decimal("200"))).total == 1

    page = ledger.get_payments(engine, limit=2)
    assert len(page.items) == 2
    assert page.items[0].payment_date == date(2024, 6, 2)


def test_payment_statistics(engine, make_invoice):
    invoice = make_invoice()
    ledger.record_payment(engine, invoice.id, "100.00", payment_method="Credit Card", payment_date=date(2024, 5, 20), today=TODAY, now=NOW)
    ledger.record_payment(engine, invoice.id, "200.00", payment_method="Check", payment_date=date(2024, 6, 1), today=TODAY, now=NOW)

    stats = ledger.get_payment_statistics(engine)
    assert stats.total_count == 2
    assert stats.total_amount == Decimal("300.00")
    assert stats.total_processing_fees == Decimal("3.20")
    assert [m.payment_method for m in stats.by_payment_method] == ["Check", "Credit Card"]
    assert [m.month for m in stats.by_month] == ["2024-06", "2024-05"]


def test_payment_statistics_empty(engine):
    stats = ledger.get_payment_statistics(engine)
    assert stats.total_count == 0
    assert stats.total_amount == Decimal("0.00")
    assert stats.by_month == []


def test_failed_state_write_rolls_back_payment(engine, make_invoice, monkeypatch):
    invoice = make_invoice()

    def broken(conn, invoice_id, state, now):
        raise RuntimeError("write failed")

    monkeypatch.setattr(ledger, "_write_state", broken)
    with pytest.raises(RuntimeError):
        ledger.record_payment(engine, invoice.id, "400.00", today=TODAY, now=NOW)

    assert _payment_count(engine, invoice.id) == 0
    stored = invoice_service.get_invoice(engine, invoice.id)
    assert stored.amount_paid == Decimal("0.00")
    assert stored.status == sm.SENT


def test_late_fee_and_payment_serialize(engine, make_invoice):
    invoice = make_invoice(issue_date=date(2024, 5, 1), due_date=date(2024, 5, 20), now=datetime(2024, 5, 2))
    overdue.detect_overdue(engine, today=TODAY, now=NOW)
    barrier = threading.Barrier(2)
    outcomes = {}

    def charge():
        barrier.wait(5)
        try:
            outcomes["fee"] = overdue.apply_late_fee(engine, invoice.id, today=TODAY, now=NOW)
        except InvalidStateError as exc:
            outcomes["fee"] = exc

    def pay():
        barrier.wait(5)
        outcomes["payment"] = ledger.record_payment(engine, invoice.id, "1000.00", today=TODAY, now=NOW)

    workers = [threading.Thread(target=charge), threading.Thread(target=pay)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(30)

    stored = invoice_service.get_invoice(engine, invoice.id)
    if isinstance(outcomes["fee"], InvalidStateError):
        # payment won: the invoice was already paid when the fee was tried
        assert stored.total_amount == Decimal("1000.00")
        assert stored.status == sm.PAID
    else:
        assert stored.total_amount == Decimal("1050.00")
        assert stored.status == sm.OVERDUE
    assert outcomes["payment"].payment.amount == Decimal("1000.00")

    with engine.connect() as conn:
        paid = conn.execute(
            select(func.coalesce(func.sum(invoice_payments.c.amount), 0)).where(invoice_payments.c.invoice_id == invoice.id)
        ).scalar_one()
        items_total = conn.execute(
            select(func.sum(invoice_items.c.amount)).where(invoice_items.c.invoice_id == invoice.id)
        ).scalar_one()
    assert stored.amount_paid == Decimal(paid)
    assert stored.total_amount == Decimal(items_total)


def test_read_is_not_blocked_by_open_write(engine, make_invoice):
    invoice = make_invoice()

    with unit_of_work(engine) as conn:
        invoice_service.lock_invoice(conn, invoice.id)
        started = time.monotonic()
        stored = invoice_service.get_invoice(engine, invoice.id)
        elapsed = time.monotonic() - started

    assert stored.id == invoice.id
    assert elapsed < 5
