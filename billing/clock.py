# billing/clock.py

from datetime import date, datetime
from zoneinfo import ZoneInfo

from billing.config import settings


def local_now() -> datetime:
    """Wall-clock time in the billing timezone, as a naive datetime for storage."""
    return datetime.now(ZoneInfo(settings.timezone)).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()
