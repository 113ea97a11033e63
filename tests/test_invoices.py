from datetime import date
from decimal import Decimal

import pytest

from billing.errors import InvalidStateError, NotFoundError, ValidationError
from billing.models.invoices import InvoiceCreate, InvoiceUpdate, LineItemIn
from billing.services import invoices as invoice_service
from billing.services import ledger
from billing.services import status as sm

from tests.conftest import NOW, TODAY


def test_create_invoice_is_draft_with_totals(engine, client_id):
    invoice = invoice_service.create_invoice(
        engine,
        InvoiceCreate(
            client_id=client_id,
            issue_date=date(2024, 6, 1),
            due_date=date(2024, 7, 1),
            items=[
                LineItemIn(description="Design", quantity=2, unit_price=Decimal("150"), tax_rate=Decimal("0.1")),
                LineItemIn(description="Hosting", unit_price=Decimal("20")),
            ],
        ),
        now=NOW,
    )
    assert invoice.status == sm.DRAFT
    assert invoice.subtotal == Decimal("320.00")
    assert invoice.tax_amount == Decimal("30.00")
    assert invoice.total_amount == Decimal("350.00")
    assert invoice.amount_paid == Decimal("0.00")
    assert [item.position for item in invoice.items] == [0, 1]


def test_invoice_numbers_are_sequential_per_month(make_invoice):
    first = make_invoice(sent=False)
    second = make_invoice(sent=False)
    july = make_invoice(sent=False, issue_date=date(2024, 7, 1), due_date=date(2024, 7, 31))
    assert first.invoice_number == "INV-202406-0001"
    assert second.invoice_number == "INV-202406-0002"
    assert july.invoice_number == "INV-202407-0001"


def test_create_invoice_requires_client(engine):
    with pytest.raises(ValidationError):
        invoice_service.create_invoice(
            engine,
            InvoiceCreate(due_date=date(2024, 7, 1), items=[LineItemIn(description="x", unit_price=1)]),
            now=NOW,
        )


def test_create_invoice_unknown_client(engine):
    with pytest.raises(NotFoundError):
        invoice_service.create_invoice(
            engine,
            InvoiceCreate(client_id=999, due_date=date(2024, 7, 1), items=[LineItemIn(description="x", unit_price=1)]),
            now=NOW,
        )


def test_create_invoice_requires_items(engine, client_id):
    with pytest.raises(ValidationError):
        invoice_service.create_invoice(
            engine, InvoiceCreate(client_id=client_id, due_date=date(2024, 7, 1), items=[]), now=NOW
        )


def test_send_moves_draft_to_sent_once(engine, make_invoice):
    invoice = make_invoice(sent=False)
    sent = invoice_service.mark_sent(engine, invoice.id, today=TODAY, now=NOW)
    assert sent.status == sm.SENT
    assert sent.sent_at == NOW

    again = invoice_service.mark_sent(engine, invoice.id, today=date(2024, 6, 10))
    assert again.sent_at == NOW


def test_send_past_due_draft_goes_straight_to_overdue(engine, make_invoice):
    invoice = make_invoice(sent=False, due_date=date(2024, 6, 2))
    sent = invoice_service.mark_sent(engine, invoice.id, today=TODAY, now=NOW)
    assert sent.status == sm.OVERDUE


def test_update_items_only_in_draft(engine, make_invoice):
    draft = make_invoice(sent=False)
    updated = invoice_service.update_invoice(
        engine,
        draft.id,
        InvoiceUpdate(items=[LineItemIn(description="Revised", unit_price=Decimal("500"))]),
        today=TODAY,
        now=NOW,
    )
    assert updated.total_amount == Decimal("500.00")
    assert [item.description for item in updated.items] == ["Revised"]

    sent = make_invoice()
    with pytest.raises(InvalidStateError):
        invoice_service.update_invoice(
            engine,
            sent.id,
            InvoiceUpdate(items=[LineItemIn(description="Revised", unit_price=Decimal("500"))]),
            today=TODAY,
            now=NOW,
        )


def test_moving_due_date_rederives_status(engine, make_invoice):
    invoice = make_invoice()
    updated = invoice_service.update_invoice(
        engine, invoice.id, InvoiceUpdate(due_date=date(2024, 6, 2)), today=TODAY, now=NOW
    )
    assert updated.status == sm.OVERDUE


def test_delete_only_drafts(engine, make_invoice):
    draft = make_invoice(sent=False)
    invoice_service.delete_invoice(engine, draft.id)
    with pytest.raises(NotFoundError):
        invoice_service.get_invoice(engine, draft.id)

    sent = make_invoice()
    with pytest.raises(InvalidStateError):
        invoice_service.delete_invoice(engine, sent.id)


def test_cancel_without_payments(engine, make_invoice):
    invoice = make_invoice()
    canceled = invoice_service.cancel_invoice(engine, invoice.id, now=NOW)
    assert canceled.status == sm.CANCELED

    with pytest.raises(InvalidStateError):
        invoice_service.cancel_invoice(engine, invoice.id, now=NOW)


def test_cancel_rejected_once_paid_partially(engine, make_invoice):
    invoice = make_invoice()
    ledger.record_payment(engine, invoice.id, "100.00", today=TODAY, now=NOW)
    with pytest.raises(InvalidStateError):
        invoice_service.cancel_invoice(engine, invoice.id, now=NOW)
    assert invoice_service.get_invoice(engine, invoice.id).status == sm.PARTIAL


def test_invoice_document_resolves_client_and_payments(engine, make_invoice):
    invoice = make_invoice()
    ledger.record_payment(engine, invoice.id, "250.00", payment_method="Check", today=TODAY, now=NOW)
    document = invoice_service.get_invoice_document(engine, invoice.id)
    assert document.client.name == "Acme Corp"
    assert document.invoice.balance_due == Decimal("750.00")
    assert [payment.amount for payment in document.payments] == [Decimal("250.00")]
