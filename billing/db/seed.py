# billing/db/seed.py

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.engine import Connection

from billing.db.schema import payment_methods

DEFAULT_PAYMENT_METHODS = [
    {"name": "Credit Card", "processing_fee_percentage": Decimal("2.9"), "processing_fee_fixed": Decimal("0.30")},
    {"name": "Bank Transfer", "processing_fee_percentage": Decimal("0"), "processing_fee_fixed": Decimal("0")},
    {"name": "Check", "processing_fee_percentage": Decimal("0"), "processing_fee_fixed": Decimal("0")},
    {"name": "Cash", "processing_fee_percentage": Decimal("0"), "processing_fee_fixed": Decimal("0")},
    {"name": "PayPal", "processing_fee_percentage": Decimal("2.9"), "processing_fee_fixed": Decimal("0.30")},
]


def seed_payment_methods(conn: Connection) -> int:
    """Insert the default payment methods that are not present yet."""
    existing = set(conn.execute(select(payment_methods.c.name)).scalars())
    missing = [
        {**method, "is_active": True}
        for method in DEFAULT_PAYMENT_METHODS
        if method["name"] not in existing
    ]
    if missing:
        conn.execute(payment_methods.insert(), missing)
    return len(missing)
