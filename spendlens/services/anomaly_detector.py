"""
Z-score anomaly detection over expense amounts in a date window.
"""
import os
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Iterable

from spendlens.schemas import TransactionRecord

logger = logging.getLogger(__name__)


ANOMALY_THRESHOLD = float(os.getenv("ANOMALY_THRESHOLD", "2.5"))
ANOMALY_MAX_RESULTS = int(os.getenv("ANOMALY_MAX_RESULTS", "50"))

# Float noise floor for "all amounts equal"
ZERO_SPREAD = 1e-9


@dataclass
class AnomalyItem:
    transaction_id: str
    description: str
    amount: Decimal
    date: date
    z_score: float
    severity: str  # low, medium, high
    reason: str
    mean: float
    std_dev: float


def severity_for(z_score: float) -> str:
    if z_score > 4:
        return "high"
    if z_score > 3:
        return "medium"
    return "low"


def detect_anomalies(
    transactions: Iterable[TransactionRecord],
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    threshold: float = ANOMALY_THRESHOLD,
    limit: int = ANOMALY_MAX_RESULTS,
) -> List[AnomalyItem]:
    """
    Flag expenses whose absolute amount is far above the window's mean.

    Args:
        transactions: Candidate transactions
        date_from: Inclusive window start (None = unbounded)
        date_to: Inclusive window end (None = unbounded)
        threshold: Standard deviations above the mean required to flag
        limit: Maximum number of anomalies returned, largest amounts first

    Returns:
        List of anomalies; empty when the window has no spread
    """
    expenses = [
        t for t in transactions
        if t.amount < 0
        and not t.is_excluded
        and (date_from is None or t.date >= date_from)
        and (date_to is None or t.date <= date_to)
    ]

    if not expenses:
        return []

    amounts = [abs(float(t.amount)) for t in expenses]
    mean = sum(amounts) / len(amounts)
    variance = sum((a - mean) ** 2 for a in amounts) / len(amounts)
    std_dev = variance ** 0.5

    if std_dev < ZERO_SPREAD:
        logger.debug("[ANOMALY_DETECTOR] Zero variance in window, nothing to flag")
        return []

    cutoff = mean + threshold * std_dev
    flagged = [t for t in expenses if abs(float(t.amount)) > cutoff]
    flagged.sort(key=lambda t: (-abs(t.amount), t.id))

    anomalies: List[AnomalyItem] = []
    for txn in flagged[:limit]:
        z = (abs(float(txn.amount)) - mean) / std_dev
        anomalies.append(AnomalyItem(
            transaction_id=txn.id,
            description=txn.description,
            amount=txn.amount,
            date=txn.date,
            z_score=round(z, 2),
            severity=severity_for(z),
            reason=f"Amount {z:.1f}x standard deviations from average",
            mean=round(mean, 2),
            std_dev=round(std_dev, 2),
        ))

    logger.info(
        f"[ANOMALY_DETECTOR] {len(anomalies)} anomalies in {len(expenses)} expenses "
        f"(mean {mean:.2f}, std {std_dev:.2f})"
    )
    return anomalies
