"""
Subscription pattern detection for recurring expenses.

Core approach: group expense transactions in a lookback window by merchant
(or description when no merchant is linked), keep groups whose amounts are
stable, and infer the cadence from the average gap between occurrences.

Results are always recomputed from the window; nothing is persisted.

Usage:
    detector = SubscriptionDetector(merchants=snapshot.merchants)
    candidates = detector.detect_patterns(transactions, as_of=date.today())
"""
import os
import calendar
import logging
from typing import Optional, List, Dict, Tuple
from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass, field
from datetime import date, timedelta
from collections import defaultdict

from spendlens.schemas import Merchant, TransactionRecord

logger = logging.getLogger(__name__)


# Configuration
LOOKBACK_MONTHS = int(os.getenv("SUBSCRIPTION_LOOKBACK_MONTHS", "6"))
MIN_OCCURRENCES = int(os.getenv("SUBSCRIPTION_MIN_OCCURRENCES", "3"))
MIN_CONFIDENCE = float(os.getenv("SUBSCRIPTION_MIN_CONFIDENCE", "0.6"))
MAX_RESULTS = int(os.getenv("SUBSCRIPTION_MAX_RESULTS", "50"))

# Max-min spread allowed, as a fraction of the average amount
AMOUNT_SPREAD = float(os.getenv("SUBSCRIPTION_AMOUNT_SPREAD", "0.2"))

# Gap used when a group has a single occurrence
DEFAULT_GAP_DAYS = 30.0


@dataclass
class SubscriptionCandidate:
    """A detected recurring payment pattern."""
    merchant_key: str
    average_amount: Decimal
    occurrence_count: int
    cadence: str
    confidence: float  # 0-1
    first_date: date
    last_date: date
    next_expected_date: date
    transaction_ids: List[str] = field(default_factory=list)
    merchant_id: Optional[str] = None
    average_gap_days: float = 0.0


def add_months(value: date, months: int) -> date:
    """Advance by calendar months, clamping to the end of shorter months."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class SubscriptionDetector:
    """
    Detects recurring payment patterns from transactions.

    Core Algorithm:
    1. Take expense transactions (not transfers, not excluded) inside the lookback window
    2. Group by merchant reference, falling back to the description
    3. Keep groups with enough occurrences and a tight amount spread
    4. Label the cadence from the average gap and score it per band
    """

    # Cadence bands (inclusive day ranges) with their fixed confidence.
    # Checked in order; the first band containing the gap wins.
    CADENCE_BANDS = {
        'monthly': ((25, 35), 0.9),
        'quarterly': ((85, 100), 0.8),
        'yearly': ((350, 380), 0.7),
        'weekly': ((6, 8), 0.8),
        'biweekly': ((12, 16), 0.7),
    }

    # Out-of-band gaps still form a group, as a low-confidence monthly
    FALLBACK_CADENCE = ('monthly', 0.4)

    def __init__(
        self,
        merchants: Optional[Dict[str, Merchant]] = None,
        lookback_months: int = LOOKBACK_MONTHS,
        min_occurrences: int = MIN_OCCURRENCES,
        min_confidence: float = MIN_CONFIDENCE,
        max_results: int = MAX_RESULTS,
        amount_spread: float = AMOUNT_SPREAD,
    ):
        """Initialize the SubscriptionDetector."""
        self.merchants = merchants or {}
        self.amount_spread = Decimal(str(amount_spread))
        self.lookback_months = lookback_months
        self.min_occurrences = min_occurrences
        self.min_confidence = min_confidence
        self.max_results = max_results

    def _group_key(self, txn: TransactionRecord) -> Tuple[str, Optional[str]]:
        """Grouping key and merchant id for a transaction."""
        if txn.merchant_id:
            merchant = self.merchants.get(txn.merchant_id)
            return (merchant.canonical_name if merchant else txn.merchant_id), txn.merchant_id
        return (txn.description or "").strip(), None

    def _get_cadence(self, avg_days: float) -> Tuple[str, float]:
        """Map an average gap in days to (cadence, confidence)."""
        for label, ((min_days, max_days), confidence) in self.CADENCE_BANDS.items():
            if min_days <= avg_days <= max_days:
                return label, confidence
        return self.FALLBACK_CADENCE

    @staticmethod
    def _next_expected_date(last_date: date, cadence: str) -> date:
        if cadence == 'weekly':
            return last_date + timedelta(days=7)
        if cadence == 'biweekly':
            return last_date + timedelta(days=14)
        if cadence == 'quarterly':
            return add_months(last_date, 3)
        if cadence == 'yearly':
            return add_months(last_date, 12)
        return add_months(last_date, 1)

    def _has_stable_amount(self, amounts: List[Decimal], avg_amount: Decimal) -> bool:
        return (max(amounts) - min(amounts)) < self.amount_spread * avg_amount

    def _analyze_group(
        self,
        key: str,
        merchant_id: Optional[str],
        transactions: List[TransactionRecord],
    ) -> Optional[SubscriptionCandidate]:
        """Analyze one group to see if it forms a pattern."""
        if len(transactions) < self.min_occurrences:
            return None

        amounts = [t.abs_amount for t in transactions]
        avg_amount = sum(amounts) / len(amounts)
        if not self._has_stable_amount(amounts, avg_amount):
            return None

        sorted_txns = sorted(transactions, key=lambda t: (t.date, t.id))
        first_date = sorted_txns[0].date
        last_date = sorted_txns[-1].date

        count = len(sorted_txns)
        avg_gap = (last_date - first_date).days / (count - 1) if count > 1 else DEFAULT_GAP_DAYS

        cadence, confidence = self._get_cadence(avg_gap)

        return SubscriptionCandidate(
            merchant_key=key,
            merchant_id=merchant_id,
            average_amount=avg_amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            occurrence_count=count,
            cadence=cadence,
            confidence=confidence,
            first_date=first_date,
            last_date=last_date,
            next_expected_date=self._next_expected_date(last_date, cadence),
            transaction_ids=[t.id for t in sorted_txns],
            average_gap_days=round(avg_gap, 1),
        )

    def detect_patterns(
        self,
        transactions: List[TransactionRecord],
        as_of: Optional[date] = None,
    ) -> List[SubscriptionCandidate]:
        """
        Analyze transactions to find recurring patterns.

        Args:
            transactions: Candidate transactions (any flow; non-expenses are skipped)
            as_of: End of the lookback window, defaults to today

        Returns:
            Candidates at or above the confidence floor, most frequent first
        """
        as_of = as_of or date.today()
        window_start = add_months(as_of, -self.lookback_months)

        expenses = [
            t for t in transactions
            if t.amount < 0
            and not t.is_transfer
            and not t.is_excluded
            and window_start <= t.date <= as_of
        ]

        if not expenses:
            logger.info("[SUBSCRIPTION_DETECTOR] No expense transactions found")
            return []

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Analyzing {len(expenses)} transactions "
            f"from {window_start} to {as_of}"
        )

        groups: Dict[Tuple[str, Optional[str]], List[TransactionRecord]] = defaultdict(list)
        for txn in expenses:
            key, merchant_id = self._group_key(txn)
            if key:
                groups[(key, merchant_id)].append(txn)

        patterns: List[SubscriptionCandidate] = []
        for (key, merchant_id), group_txns in groups.items():
            pattern = self._analyze_group(key, merchant_id, group_txns)
            if pattern and pattern.confidence >= self.min_confidence:
                patterns.append(pattern)

        patterns.sort(key=lambda p: (-p.occurrence_count, p.merchant_key))
        patterns = patterns[:self.max_results]

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Found {len(patterns)} subscription patterns"
        )

        for p in patterns:
            logger.debug(
                f"  - {p.merchant_key}: {p.cadence}, {p.average_amount}, "
                f"{p.occurrence_count} txns, {p.confidence:.0%} confidence"
            )

        return patterns
