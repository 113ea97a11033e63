import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("BILLING_TIMEZONE", "UTC")
os.environ.setdefault("BILLING_ITEM_TIMEOUT_SECONDS", "")

from datetime import date, datetime  # noqa: E402
from decimal import Decimal  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402

from billing.db.engine import create_billing_engine, unit_of_work  # noqa: E402
from billing.db.schema import clients, metadata  # noqa: E402
from billing.db.seed import seed_payment_methods  # noqa: E402
from billing.main import app  # noqa: E402
from billing.models.invoices import InvoiceCreate, LineItemIn  # noqa: E402
from billing.operations import BillingOperations, get_operations  # noqa: E402
from billing.services import invoices as invoice_service  # noqa: E402
from billing.services.cache import InMemoryCache  # noqa: E402

NOW = datetime(2024, 6, 3, 9, 0)
TODAY = NOW.date()


@pytest.fixture()
def engine(tmp_path):
    engine = create_billing_engine(f"sqlite:///{tmp_path / 'billing.sqlite'}")
    metadata.create_all(engine)
    with unit_of_work(engine) as conn:
        seed_payment_methods(conn)
    yield engine
    engine.dispose()


@pytest.fixture()
def client_id(engine) -> int:
    with unit_of_work(engine) as conn:
        return conn.execute(
            clients.insert().values(
                name="Acme Corp",
                email="accounts@acme.com",
                address="1 Main St",
                payment_terms_days=15,
            )
        ).inserted_primary_key[0]


@pytest.fixture()
def other_client_id(engine) -> int:
    with unit_of_work(engine) as conn:
        return conn.execute(
            clients.insert().values(name="Globex", email="ap@globex.com")
        ).inserted_primary_key[0]


@pytest.fixture()
def make_invoice(engine, client_id):
    """Create an invoice with one line; ``sent=True`` also marks it sent."""

    def _make(
        total="1000.00",
        due_date=date(2024, 6, 30),
        issue_date=date(2024, 6, 1),
        sent=True,
        customer=None,
        now=NOW,
    ):
        invoice = invoice_service.create_invoice(
            engine,
            InvoiceCreate(
                client_id=customer or client_id,
                title="Consulting",
                issue_date=issue_date,
                due_date=due_date,
                items=[LineItemIn(description="Services", quantity=1, unit_price=Decimal(total))],
            ),
            now=now,
        )
        if sent:
            invoice = invoice_service.mark_sent(engine, invoice.id, today=now.date(), now=now)
        return invoice

    return _make


class RecordingEmailSender:
    """Keeps every mail in memory so tests can inspect what was sent."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))
        return True


@pytest.fixture()
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture()
def ops(engine, sender) -> BillingOperations:
    return BillingOperations(engine, cache=InMemoryCache(), sender=sender)


@pytest.fixture()
def api(ops) -> TestClient:
    app.dependency_overrides[get_operations] = lambda: ops
    yield TestClient(app)
    app.dependency_overrides.clear()
