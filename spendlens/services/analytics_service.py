"""
Spending breakdowns, trends and period summaries.

Every function takes the transactions and window explicitly and returns
fresh results; nothing is cached between calls. Rows flagged `is_excluded`
(transfers by default) are left out unless the caller asks otherwise.

Usage:
    rows = category_breakdown(transactions, snapshot.categories, date_from, date_to)
    top = merchant_breakdown(transactions, date_from, date_to, merchants=snapshot.merchants)
"""
import os
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from spendlens.schemas import Category, Merchant, TransactionRecord
from spendlens.services.merchant_normalizer import ChainRules, chain_key, normalize_merchant

logger = logging.getLogger(__name__)


MERCHANT_BREAKDOWN_LIMIT = int(os.getenv("MERCHANT_BREAKDOWN_LIMIT", "20"))

UNCATEGORIZED = "Uncategorized"
GRANULARITIES = ("day", "week", "month")

ZERO = Decimal("0")


@dataclass
class CategoryBreakdown:
    category_id: Optional[str]
    category_name: str
    total: Decimal
    count: int
    percentage: float


@dataclass
class MerchantBreakdown:
    key: str
    total: Decimal
    count: int
    average: Decimal
    percentage: float
    previous_total: Decimal
    trend: float  # percent change vs the preceding window
    trend_basis_valid: bool  # False when there was no previous spend to compare with


@dataclass
class PeriodSummary:
    date_from: Optional[date]
    date_to: Optional[date]
    total_income: Decimal = ZERO
    total_expenses: Decimal = ZERO
    net: Decimal = ZERO
    transaction_count: int = 0
    booked_count: int = 0
    booked_amount: Decimal = ZERO
    pending_count: int = 0
    pending_amount: Decimal = ZERO
    average_transaction: Decimal = ZERO


@dataclass
class MetricChange:
    current: Decimal
    previous: Decimal
    change: Decimal
    change_percentage: float


@dataclass
class PeriodComparison:
    current: PeriodSummary
    previous: PeriodSummary
    changes: Dict[str, MetricChange] = field(default_factory=dict)


@dataclass
class TimeSeriesPoint:
    period_start: date
    income: Decimal = ZERO
    expenses: Decimal = ZERO
    net: Decimal = ZERO
    count: int = 0


def _in_window(txn: TransactionRecord, date_from: Optional[date], date_to: Optional[date]) -> bool:
    if date_from is not None and txn.date < date_from:
        return False
    if date_to is not None and txn.date > date_to:
        return False
    return True


def _is_expense(txn: TransactionRecord, include_excluded: bool) -> bool:
    if txn.amount >= 0:
        return False
    return include_excluded or not txn.is_excluded


def _percentage(part: Decimal, whole: Decimal) -> float:
    if whole <= 0:
        return 0.0
    return round(float(part / whole * 100), 2)


def _percent_change(current: Decimal, previous: Decimal) -> float:
    # 0 rather than infinity when there is nothing to compare with
    if previous <= 0:
        return 0.0
    return round(float((current - previous) / previous * 100), 2)


def previous_window(date_from: date, date_to: date) -> Tuple[date, date]:
    """The equal-length window ending the day before `date_from`."""
    prev_to = date_from - timedelta(days=1)
    prev_from = prev_to - (date_to - date_from)
    return prev_from, prev_to


def category_breakdown(
    transactions: Iterable[TransactionRecord],
    categories: Dict[str, Category],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    include_excluded: bool = False,
) -> List[CategoryBreakdown]:
    """
    Sum absolute expense amounts per category.

    Split transactions contribute each split to its own category (falling
    back to the parent's category), so the grand total is the same whether
    splits exist or not.

    Returns:
        Rows sorted by total, largest first
    """
    totals: Dict[Optional[str], Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[Optional[str], int] = defaultdict(int)

    for txn in transactions:
        if not _in_window(txn, date_from, date_to) or not _is_expense(txn, include_excluded):
            continue

        if txn.splits:
            for split in txn.splits:
                category_id = split.category_id or txn.category_id
                totals[category_id] += abs(split.amount)
                counts[category_id] += 1
        else:
            totals[txn.category_id] += txn.abs_amount
            counts[txn.category_id] += 1

    grand_total = sum(totals.values(), ZERO)

    rows = []
    for category_id, total in totals.items():
        category = categories.get(category_id) if category_id else None
        rows.append(CategoryBreakdown(
            category_id=category_id,
            category_name=category.name if category else UNCATEGORIZED,
            total=total,
            count=counts[category_id],
            percentage=_percentage(total, grand_total),
        ))

    rows.sort(key=lambda r: (-r.total, r.category_name))
    return rows


def merchant_display_name(
    txn: TransactionRecord,
    merchants: Optional[Dict[str, Merchant]] = None,
) -> str:
    """Best human-readable merchant text for a transaction."""
    if txn.merchant_id and merchants and txn.merchant_id in merchants:
        return merchants[txn.merchant_id].canonical_name

    if txn.merchant_raw:
        name = normalize_merchant(txn.merchant_raw)
        if name.kind == "name":
            return name.display

    return (txn.description or "").strip()


def _merchant_totals(
    transactions: Iterable[TransactionRecord],
    date_from: date,
    date_to: date,
    merchants: Optional[Dict[str, Merchant]],
    include_excluded: bool,
    rules: Optional[ChainRules],
) -> Tuple[Dict[str, Decimal], Dict[str, int]]:
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[str, int] = defaultdict(int)

    for txn in transactions:
        if not _in_window(txn, date_from, date_to) or not _is_expense(txn, include_excluded):
            continue
        key = chain_key(txn.merchant_id, merchant_display_name(txn, merchants), rules)
        if not key:
            continue
        totals[key] += txn.abs_amount
        counts[key] += 1

    return totals, counts


def merchant_breakdown(
    transactions: Iterable[TransactionRecord],
    date_from: date,
    date_to: date,
    merchants: Optional[Dict[str, Merchant]] = None,
    limit: int = MERCHANT_BREAKDOWN_LIMIT,
    include_excluded: bool = False,
    rules: Optional[ChainRules] = None,
) -> List[MerchantBreakdown]:
    """
    Top merchants by spend with trend against the preceding window.

    Store variants are merged through the chain key before the list is cut
    to `limit`, so a chain's total is never split across entries.

    Args:
        transactions: Rows covering both the window and the preceding window
        date_from: Inclusive window start
        date_to: Inclusive window end
        merchants: Canonical merchant catalog for display names
        limit: Number of entries returned

    Returns:
        Entries sorted by total spend, largest first
    """
    transactions = list(transactions)
    prev_from, prev_to = previous_window(date_from, date_to)

    totals, counts = _merchant_totals(transactions, date_from, date_to, merchants, include_excluded, rules)
    prev_totals, _ = _merchant_totals(transactions, prev_from, prev_to, merchants, include_excluded, rules)

    window_total = sum(totals.values(), ZERO)

    rows = []
    for key, total in totals.items():
        previous = prev_totals.get(key, ZERO)
        rows.append(MerchantBreakdown(
            key=key,
            total=total,
            count=counts[key],
            average=(total / counts[key]).quantize(Decimal("0.01")),
            percentage=_percentage(total, window_total),
            previous_total=previous,
            trend=_percent_change(total, previous),
            trend_basis_valid=previous > 0,
        ))

    rows.sort(key=lambda r: (-r.total, r.key))

    logger.debug(
        f"[ANALYTICS] {len(rows)} merchant groups between {date_from} and {date_to}, "
        f"returning {min(limit, len(rows))}"
    )
    return rows[:limit]


def summarize(
    transactions: Iterable[TransactionRecord],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    categories: Optional[Dict[str, Category]] = None,
) -> PeriodSummary:
    """Income, expenses and status counts for a window."""
    categories = categories or {}
    summary = PeriodSummary(date_from=date_from, date_to=date_to)
    abs_total = ZERO

    for txn in transactions:
        if not _in_window(txn, date_from, date_to) or txn.is_excluded:
            continue

        summary.transaction_count += 1
        abs_total += txn.abs_amount

        if txn.status == "pending":
            summary.pending_count += 1
            summary.pending_amount += txn.amount
        else:
            summary.booked_count += 1
            summary.booked_amount += txn.amount

        category = categories.get(txn.category_id) if txn.category_id else None
        if txn.is_transfer or (category and category.is_transfer):
            continue

        if txn.amount > 0:
            summary.total_income += txn.amount
        elif txn.amount < 0:
            summary.total_expenses += abs(txn.amount)

    summary.net = summary.total_income - summary.total_expenses
    if summary.transaction_count:
        summary.average_transaction = (abs_total / summary.transaction_count).quantize(Decimal("0.01"))

    return summary


def _metric_change(current: Decimal, previous: Decimal) -> MetricChange:
    if previous == 0:
        change_percentage = 0.0
    else:
        change_percentage = round(float((current - previous) / abs(previous) * 100), 2)
    return MetricChange(
        current=current,
        previous=previous,
        change=current - previous,
        change_percentage=change_percentage,
    )


def compare_periods(
    transactions: Iterable[TransactionRecord],
    current_from: date,
    current_to: date,
    previous_from: Optional[date] = None,
    previous_to: Optional[date] = None,
    categories: Optional[Dict[str, Category]] = None,
) -> PeriodComparison:
    """Summaries of two windows with absolute and percent changes."""
    transactions = list(transactions)
    if previous_from is None or previous_to is None:
        previous_from, previous_to = previous_window(current_from, current_to)

    current = summarize(transactions, current_from, current_to, categories)
    previous = summarize(transactions, previous_from, previous_to, categories)

    return PeriodComparison(
        current=current,
        previous=previous,
        changes={
            "income": _metric_change(current.total_income, previous.total_income),
            "expenses": _metric_change(current.total_expenses, previous.total_expenses),
            "net": _metric_change(current.net, previous.net),
        },
    )


def _bucket_start(value: date, granularity: str) -> date:
    if granularity == "day":
        return value
    if granularity == "week":
        return value - timedelta(days=value.weekday())
    return value.replace(day=1)


def time_series(
    transactions: Iterable[TransactionRecord],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    granularity: str = "day",
) -> List[TimeSeriesPoint]:
    """
    Income and expenses bucketed by day, ISO week (Monday start) or month.

    Raises:
        ValueError: If granularity is not one of day, week, month
    """
    if granularity not in GRANULARITIES:
        raise ValueError(f"Unsupported granularity '{granularity}', expected one of {GRANULARITIES}")

    buckets: Dict[date, TimeSeriesPoint] = {}
    for txn in transactions:
        if not _in_window(txn, date_from, date_to) or txn.is_excluded or txn.is_transfer:
            continue

        start = _bucket_start(txn.date, granularity)
        point = buckets.get(start)
        if point is None:
            point = buckets[start] = TimeSeriesPoint(period_start=start)

        point.count += 1
        if txn.amount > 0:
            point.income += txn.amount
        else:
            point.expenses += abs(txn.amount)
        point.net = point.income - point.expenses

    return [buckets[key] for key in sorted(buckets)]
