# billing/config.py

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import os


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str
    timezone: str
    company_name: str
    invoice_number_prefix: str
    default_payment_terms_days: int
    late_fee_type: str
    late_fee_amount: Decimal
    late_fee_grace_days: int
    late_fee_repeat_days: int
    auto_late_fee: bool
    reminder_frequency_days: int
    max_reminders: int
    analytics_cache_ttl_seconds: int
    item_timeout_seconds: float | None
    smtp_host: str | None
    smtp_port: int
    smtp_username: str | None
    smtp_password: str | None
    smtp_sender: str


def load_settings() -> Settings:
    late_fee_type = os.getenv("LATE_FEE_TYPE", "percentage").strip().lower()
    if late_fee_type not in {"percentage", "fixed"}:
        raise ValueError("LATE_FEE_TYPE must be 'percentage' or 'fixed'")
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///db.sqlite"),
        log_level=os.getenv("BILLING_LOG_LEVEL", "INFO").upper(),
        timezone=os.getenv("BILLING_TIMEZONE", "America/New_York"),
        company_name=os.getenv("COMPANY_NAME", "Your Company"),
        invoice_number_prefix=os.getenv("INVOICE_NUMBER_PREFIX", "INV"),
        default_payment_terms_days=int(os.getenv("DEFAULT_PAYMENT_TERMS_DAYS", "30")),
        late_fee_type=late_fee_type,
        late_fee_amount=Decimal(os.getenv("LATE_FEE_AMOUNT", "5")),
        late_fee_grace_days=int(os.getenv("LATE_FEE_GRACE_DAYS", "3")),
        late_fee_repeat_days=int(os.getenv("LATE_FEE_REPEAT_DAYS", "30")),
        auto_late_fee=_parse_bool(os.getenv("AUTO_LATE_FEE"), False),
        reminder_frequency_days=int(os.getenv("REMINDER_FREQUENCY_DAYS", "7")),
        max_reminders=int(os.getenv("MAX_REMINDERS", "3")),
        analytics_cache_ttl_seconds=int(os.getenv("ANALYTICS_CACHE_TTL_SECONDS", "300")),
        item_timeout_seconds=_parse_optional_float(
            os.getenv("BILLING_ITEM_TIMEOUT_SECONDS", "30")
        ),
        smtp_host=os.getenv("SMTP_HOST") or None,
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_username=os.getenv("SMTP_USERNAME") or None,
        smtp_password=os.getenv("SMTP_PASSWORD") or None,
        smtp_sender=os.getenv("SMTP_SENDER", "billing@localhost"),
    )


settings = load_settings()
