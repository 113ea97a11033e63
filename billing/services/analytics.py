# billing/services/analytics.py
"""
Read-only financial aggregation over invoices, payments and recurring
templates.

Results are the same with or without a cache; the cache only saves work,
and a cache that raises is logged and bypassed.
"""

import logging
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, case, func, select, true
from sqlalchemy.engine import Engine

from billing.clock import local_today
from billing.config import settings
from billing.db.schema import (
    clients,
    invoice_payments,
    invoices,
    recurring_invoice_items,
    recurring_invoices,
)
from billing.errors import ValidationError
from billing.models.analytics import (
    AgingBucket,
    ClientPaymentBehavior,
    ForecastMonth,
    OverdueAnalytics,
    RevenueForecast,
    RevenueSummary,
    TrendPoint,
)
from billing.services import status as sm
from billing.services.cache import Cache
from billing.services.recurring import advance_date
from billing.services.status import LineItem

logger = logging.getLogger(__name__)

CACHE_PREFIX = "analytics:"
TREND_PERIODS = ("day", "week", "month", "quarter", "year")
HISTORY_MONTHS = 6


def _rate(part, whole) -> Decimal:
    if not whole:
        return sm.ZERO
    return sm.to_money(Decimal(part) / Decimal(whole) * 100)


def _period_key(value: date, period: str) -> str:
    if period == "day":
        return value.isoformat()
    if period == "week":
        year, week, _ = value.isocalendar()
        return f"{year}-W{week:02d}"
    if period == "quarter":
        return f"{value.year}-Q{(value.month - 1) // 3 + 1}"
    if period == "year":
        return str(value.year)
    return value.strftime("%Y-%m")


def _days_to_payment(rows) -> List[int]:
    return [
        (row["paid_at"].date() - row["issue_date"]).days
        for row in rows
        if row["paid_at"] is not None
    ]


class FinancialAggregator:
    def __init__(self, engine: Engine, cache: Optional[Cache] = None, ttl_seconds: Optional[int] = None):
        self.engine = engine
        self.cache = cache
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.analytics_cache_ttl_seconds

    def _cached(self, key: str, compute: Callable):
        key = CACHE_PREFIX + key
        if self.cache is not None:
            try:
                hit = self.cache.get(key)
            except Exception as exc:
                logger.warning("Analytics cache read failed for %s: %s", key, exc)
                hit = None
            if hit is not None:
                return hit

        value = compute()

        if self.cache is not None:
            try:
                self.cache.set(key, value, self.ttl_seconds)
            except Exception as exc:
                logger.warning("Analytics cache write failed for %s: %s", key, exc)
        return value

    def invalidate(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.clear_pattern(CACHE_PREFIX + "*")
        except Exception as exc:
            logger.warning("Analytics cache invalidation failed: %s", exc)

    def get_revenue_summary(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        client_id: Optional[int] = None,
    ) -> RevenueSummary:
        key = f"summary:{start_date}:{end_date}:{client_id}"
        return self._cached(key, lambda: self._revenue_summary(start_date, end_date, client_id))

    def _revenue_summary(self, start_date, end_date, client_id) -> RevenueSummary:
        conditions = []
        payment_conditions = []
        if start_date is not None:
            conditions.append(invoices.c.issue_date >= start_date)
            payment_conditions.append(invoice_payments.c.payment_date >= start_date)
        if end_date is not None:
            conditions.append(invoices.c.issue_date <= end_date)
            payment_conditions.append(invoice_payments.c.payment_date <= end_date)
        if client_id is not None:
            conditions.append(invoices.c.client_id == client_id)
            payment_conditions.append(invoices.c.client_id == client_id)
        where = and_(true(), *conditions)

        with self.engine.connect() as conn:
            by_status = conn.execute(
                select(
                    invoices.c.status,
                    func.count().label("invoice_count"),
                    func.coalesce(func.sum(invoices.c.total_amount), 0).label("total_amount"),
                    func.coalesce(func.sum(invoices.c.amount_paid), 0).label("amount_paid"),
                )
                .where(where)
                .group_by(invoices.c.status)
            ).mappings().all()
            paid_rows = conn.execute(
                select(invoices.c.issue_date, invoices.c.paid_at)
                .where(where, invoices.c.status == sm.PAID)
            ).mappings().all()
            collected = conn.execute(
                select(func.coalesce(func.sum(invoice_payments.c.amount), 0))
                .select_from(invoice_payments.join(invoices))
                .where(and_(true(), *payment_conditions))
            ).scalar_one()

        count_by_status = {status: 0 for status in sm.STATUSES}
        total_invoiced = amount_paid = amount_overdue = sm.ZERO
        for row in by_status:
            count_by_status[row["status"]] = row["invoice_count"]
            if row["status"] == sm.CANCELED:
                continue
            total_invoiced += sm.to_money(row["total_amount"])
            amount_paid += sm.to_money(row["amount_paid"])
            if row["status"] == sm.OVERDUE:
                amount_overdue += sm.to_money(row["total_amount"] - row["amount_paid"])

        billable = sum(count for status, count in count_by_status.items() if status != sm.CANCELED)
        days = _days_to_payment(paid_rows)

        return RevenueSummary(
            start_date=start_date,
            end_date=end_date,
            client_id=client_id,
            total_invoices=sum(count_by_status.values()),
            count_by_status=count_by_status,
            total_invoiced=total_invoiced,
            amount_paid=amount_paid,
            amount_outstanding=sm.to_money(total_invoiced - amount_paid),
            amount_overdue=amount_overdue,
            collected_in_period=sm.to_money(collected),
            payment_rate=_rate(count_by_status[sm.PAID], billable),
            collection_rate=_rate(amount_paid, total_invoiced),
            avg_days_to_payment=sm.to_money(Decimal(sum(days)) / len(days)) if days else None,
        )

    def get_invoice_trends(
        self,
        period: str = "month",
        months: int = 12,
        client_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[TrendPoint]:
        if period not in TREND_PERIODS:
            raise ValidationError(f"period must be one of {', '.join(TREND_PERIODS)}")
        if months <= 0:
            raise ValidationError("months must be positive")
        today = today or local_today()
        key = f"trends:{period}:{months}:{client_id}:{today}"
        return self._cached(key, lambda: self._invoice_trends(period, months, client_id, today))

    def _invoice_trends(self, period, months, client_id, today) -> List[TrendPoint]:
        since = today - relativedelta(months=months)
        conditions = [invoices.c.issue_date >= since, invoices.c.status != sm.CANCELED]
        if client_id is not None:
            conditions.append(invoices.c.client_id == client_id)

        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    invoices.c.issue_date,
                    invoices.c.status,
                    invoices.c.total_amount,
                    invoices.c.amount_paid,
                ).where(*conditions)
            ).mappings().all()

        buckets: Dict[str, dict] = defaultdict(
            lambda: {"count": 0, "total": sm.ZERO, "paid": sm.ZERO, "paid_count": 0, "overdue_count": 0}
        )
        for row in rows:
            bucket = buckets[_period_key(row["issue_date"], period)]
            bucket["count"] += 1
            bucket["total"] += row["total_amount"]
            bucket["paid"] += row["amount_paid"]
            bucket["paid_count"] += row["status"] == sm.PAID
            bucket["overdue_count"] += row["status"] == sm.OVERDUE

        return [
            TrendPoint(
                period=key,
                invoice_count=bucket["count"],
                total_amount=sm.to_money(bucket["total"]),
                amount_paid=sm.to_money(bucket["paid"]),
                payment_rate=_rate(bucket["paid_count"], bucket["count"]),
                overdue_rate=_rate(bucket["overdue_count"], bucket["count"]),
            )
            for key, bucket in sorted(buckets.items())
        ]

    def get_client_payment_analytics(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 50,
    ) -> List[ClientPaymentBehavior]:
        key = f"clients:{start_date}:{end_date}:{limit}"
        return self._cached(key, lambda: self._client_payment_analytics(start_date, end_date, limit))

    def _client_payment_analytics(self, start_date, end_date, limit) -> List[ClientPaymentBehavior]:
        conditions = [invoices.c.status != sm.CANCELED]
        if start_date is not None:
            conditions.append(invoices.c.issue_date >= start_date)
        if end_date is not None:
            conditions.append(invoices.c.issue_date <= end_date)

        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    clients.c.id.label("client_id"),
                    clients.c.name.label("client_name"),
                    func.count(invoices.c.id).label("invoice_count"),
                    func.sum(invoices.c.total_amount).label("total_amount"),
                    func.sum(invoices.c.amount_paid).label("amount_paid"),
                    func.sum(case((invoices.c.status == sm.PAID, 1), else_=0)).label("paid_count"),
                    func.sum(case((invoices.c.status == sm.OVERDUE, 1), else_=0)).label("overdue_count"),
                )
                .select_from(invoices.join(clients))
                .where(*conditions)
                .group_by(clients.c.id, clients.c.name)
                .order_by(func.sum(invoices.c.total_amount).desc())
                .limit(limit)
            ).mappings().all()
            paid_rows = conn.execute(
                select(invoices.c.client_id, invoices.c.issue_date, invoices.c.paid_at)
                .where(*conditions, invoices.c.status == sm.PAID)
            ).mappings().all()

        days_by_client = defaultdict(list)
        for row in paid_rows:
            days_by_client[row["client_id"]].extend(_days_to_payment([row]))

        result = []
        for row in rows:
            total = sm.to_money(row["total_amount"])
            paid = sm.to_money(row["amount_paid"])
            days = days_by_client.get(row["client_id"])
            result.append(
                ClientPaymentBehavior(
                    client_id=row["client_id"],
                    client_name=row["client_name"],
                    invoice_count=row["invoice_count"],
                    total_amount=total,
                    amount_paid=paid,
                    amount_outstanding=sm.to_money(total - paid),
                    payment_rate=_rate(row["paid_count"], row["invoice_count"]),
                    overdue_rate=_rate(row["overdue_count"], row["invoice_count"]),
                    avg_days_to_payment=round(sum(days) / len(days)) if days else None,
                )
            )
        return result

    def get_revenue_forecast(
        self,
        months: int = 3,
        include_recurring: bool = True,
        today: Optional[date] = None,
    ) -> RevenueForecast:
        if months <= 0:
            raise ValidationError("months must be positive")
        today = today or local_today()
        key = f"forecast:{months}:{include_recurring}:{today}"
        return self._cached(key, lambda: self._revenue_forecast(months, include_recurring, today))

    def _revenue_forecast(self, months, include_recurring, today) -> RevenueForecast:
        start = today.replace(day=1)
        end = start + relativedelta(months=months)
        history_start = start - relativedelta(months=HISTORY_MONTHS)

        month_keys = [(start + relativedelta(months=offset)).strftime("%Y-%m") for offset in range(months)]
        pending = {key: sm.ZERO for key in month_keys}
        recurring = {key: sm.ZERO for key in month_keys}

        with self.engine.connect() as conn:
            open_rows = conn.execute(
                select(invoices.c.due_date, invoices.c.total_amount, invoices.c.amount_paid)
                .where(
                    invoices.c.status.in_(sm.OPEN_STATUSES),
                    invoices.c.due_date < end,
                )
            ).mappings().all()
            collected = conn.execute(
                select(func.coalesce(func.sum(invoice_payments.c.amount), 0)).where(
                    invoice_payments.c.payment_date >= history_start,
                    invoice_payments.c.payment_date < start,
                )
            ).scalar_one()

            templates = []
            if include_recurring:
                template_rows = conn.execute(
                    select(recurring_invoices).where(recurring_invoices.c.status == "active")
                ).mappings().all()
                for row in template_rows:
                    items = conn.execute(
                        select(recurring_invoice_items).where(
                            recurring_invoice_items.c.recurring_invoice_id == row["id"]
                        )
                    ).mappings().all()
                    total = sm.compute_totals(
                        LineItem(item["description"], item["quantity"], item["unit_price"], item["tax_rate"])
                        for item in items
                    ).total_amount
                    templates.append((row, total))

        # anything already past due is expected in the first forecast month
        for row in open_rows:
            key = max(row["due_date"], start).strftime("%Y-%m")
            pending[key] += sm.to_money(row["total_amount"] - row["amount_paid"])

        for row, total in templates:
            remaining = None
            if row["max_occurrences"] is not None:
                remaining = row["max_occurrences"] - row["occurrences_generated"]
            occurrence = row["next_date"]
            while occurrence < end and (remaining is None or remaining > 0):
                if row["end_date"] is not None and occurrence > row["end_date"]:
                    break
                if occurrence >= start:
                    recurring[occurrence.strftime("%Y-%m")] += total
                if remaining is not None:
                    remaining -= 1
                occurrence = advance_date(occurrence, row["frequency"], row["start_date"].day)

        monthly = [
            ForecastMonth(
                month=key,
                pending_amount=sm.to_money(pending[key]),
                recurring_amount=sm.to_money(recurring[key]),
                total_forecast=sm.to_money(pending[key] + recurring[key]),
            )
            for key in month_keys
        ]
        pending_total = sum((month.pending_amount for month in monthly), sm.ZERO)
        recurring_total = sum((month.recurring_amount for month in monthly), sm.ZERO)

        return RevenueForecast(
            start_date=start,
            end_date=end - timedelta(days=1),
            months=months,
            historical_monthly_average=sm.to_money(Decimal(collected) / HISTORY_MONTHS),
            monthly_forecast=monthly,
            pending_amount=pending_total,
            recurring_amount=recurring_total,
            total_forecast=sm.to_money(pending_total + recurring_total),
        )

    def get_overdue_analytics(
        self,
        as_of: Optional[date] = None,
        client_id: Optional[int] = None,
    ) -> OverdueAnalytics:
        as_of = as_of or local_today()
        key = f"overdue:{as_of}:{client_id}"
        return self._cached(key, lambda: self._overdue_analytics(as_of, client_id))

    def _overdue_analytics(self, as_of, client_id) -> OverdueAnalytics:
        conditions = [
            invoices.c.status.in_(sm.OPEN_STATUSES),
            invoices.c.due_date < as_of,
            invoices.c.total_amount > invoices.c.amount_paid,
        ]
        if client_id is not None:
            conditions.append(invoices.c.client_id == client_id)

        with self.engine.connect() as conn:
            rows = conn.execute(
                select(invoices.c.due_date, invoices.c.total_amount, invoices.c.amount_paid)
                .where(*conditions)
            ).mappings().all()

        by_aging = {bucket: {"count": 0, "amount": sm.ZERO} for bucket in sm.AGING_BUCKETS}
        total_amount = sm.ZERO
        total_days = 0
        for row in rows:
            balance = sm.to_money(row["total_amount"] - row["amount_paid"])
            bucket = by_aging[sm.aging_bucket(row["due_date"], as_of)]
            bucket["count"] += 1
            bucket["amount"] += balance
            total_amount += balance
            total_days += sm.days_overdue(row["due_date"], as_of)

        return OverdueAnalytics(
            as_of=as_of,
            total_overdue=len(rows),
            total_overdue_amount=total_amount,
            avg_days_overdue=round(total_days / len(rows)) if rows else 0,
            by_aging={
                name: AgingBucket(count=bucket["count"], amount=bucket["amount"])
                for name, bucket in by_aging.items()
            },
        )
