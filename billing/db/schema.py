# billing/db/schema.py

from sqlalchemy import (
    MetaData, Table, Column, Integer, String, Boolean,
    Numeric, Date, DateTime, ForeignKey, CheckConstraint, Text,
    UniqueConstraint,
)

metadata = MetaData()

clients = Table(
    "clients",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String, nullable=False),
    Column("email", String, nullable=True),
    Column("address", Text, nullable=True),
    Column("phone", String, nullable=True),
    Column("payment_terms_days", Integer, nullable=True),
)

payment_methods = Table(
    "payment_methods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String, nullable=False, unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("processing_fee_percentage", Numeric(6, 3), nullable=False, default=0),
    Column("processing_fee_fixed", Numeric(18, 2), nullable=False, default=0),
)

recurring_invoices = Table(
    "recurring_invoices",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("client_id", Integer, ForeignKey("clients.id"), nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("frequency", String(16), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("max_occurrences", Integer),
    Column("next_date", Date, nullable=False),
    Column("occurrences_generated", Integer, nullable=False, default=0),
    Column("payment_terms_days", Integer),
    Column("auto_send", Boolean, nullable=False, default=False),
    Column("status", String(16), nullable=False, default="active"),
    Column("last_generated_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint(
        "frequency IN ('weekly', 'monthly', 'quarterly', 'yearly')",
        name="ck_recurring_frequency",
    ),
    CheckConstraint("status IN ('active', 'canceled')", name="ck_recurring_status"),
    CheckConstraint("occurrences_generated >= 0", name="ck_recurring_occurrences_nonneg"),
)

recurring_invoice_items = Table(
    "recurring_invoice_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "recurring_invoice_id",
        Integer,
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("position", Integer, nullable=False),
    Column("description", Text, nullable=False),
    Column("quantity", Numeric(18, 4), nullable=False),
    Column("unit_price", Numeric(18, 2), nullable=False),
    Column("tax_rate", Numeric(6, 4), nullable=False, default=0),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_number", Text, unique=True, nullable=False),
    Column("client_id", Integer, ForeignKey("clients.id"), nullable=False),
    Column("recurring_invoice_id", Integer, ForeignKey("recurring_invoices.id")),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("status", String(16), nullable=False, default="draft"),
    Column("issue_date", Date, nullable=False),
    Column("due_date", Date, nullable=False),
    Column("subtotal", Numeric(18, 2), nullable=False),
    Column("tax_amount", Numeric(18, 2), nullable=False),
    Column("total_amount", Numeric(18, 2), nullable=False),
    Column("amount_paid", Numeric(18, 2), nullable=False, default=0),
    Column("sent_at", DateTime),
    Column("paid_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    CheckConstraint("total_amount >= 0", name="ck_invoices_total_nonneg"),
    CheckConstraint("amount_paid >= 0", name="ck_invoices_paid_nonneg"),
    CheckConstraint("amount_paid <= total_amount", name="ck_invoices_paid_le_total"),
    CheckConstraint(
        "status IN ('draft', 'sent', 'partial', 'paid', 'overdue', 'canceled')",
        name="ck_invoices_status",
    ),
)

invoice_items = Table(
    "invoice_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("description", Text, nullable=False),
    Column("quantity", Numeric(18, 4), nullable=False),
    Column("unit_price", Numeric(18, 2), nullable=False),
    Column("tax_rate", Numeric(6, 4), nullable=False, default=0),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("is_late_fee", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
)

invoice_payments = Table(
    "invoice_payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id")),
    Column("payment_method", String, nullable=False),
    Column("payment_date", Date, nullable=False),
    Column("reference", Text),
    Column("notes", Text),
    Column("processing_fee", Numeric(18, 2), nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
)

# Audit trail for changes to an invoice total that are not payments.
invoice_events = Table(
    "invoice_events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
    Column("event_type", String(32), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("previous_total", Numeric(18, 2), nullable=False),
    Column("new_total", Numeric(18, 2), nullable=False),
    Column("details", Text),
    Column("created_at", DateTime, nullable=False),
)

invoice_sequences = Table(
    "invoice_sequences",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("prefix", String, nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("sequence", Integer, nullable=False),
    UniqueConstraint("prefix", "year", "month", name="uq_invoice_sequences_period"),
)

invoice_reminders = Table(
    "invoice_reminders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False),
    Column("reminder_level", String(16), nullable=False),
    Column("sent_at", DateTime, nullable=False),
    Column("success", Boolean, nullable=False),
    Column("error_message", Text),
)

recurring_invoice_history = Table(
    "recurring_invoice_history",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "recurring_invoice_id",
        Integer,
        ForeignKey("recurring_invoices.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False),
    Column("scheduled_date", Date, nullable=False),
    Column("generated_at", DateTime, nullable=False),
    UniqueConstraint(
        "recurring_invoice_id", "scheduled_date", name="uq_recurring_history_occurrence"
    ),
)
