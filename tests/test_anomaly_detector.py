"""
Tests for z-score expense anomalies.
"""
import os
import sys
from datetime import date, timedelta
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spendlens.schemas import TransactionRecord  # noqa: E402
from spendlens.services.anomaly_detector import detect_anomalies, severity_for  # noqa: E402


START = date(2024, 6, 1)


def _txn(i: int, amount: str, **kwargs) -> TransactionRecord:
    return TransactionRecord(
        id=f"t{i:02d}",
        date=START + timedelta(days=i % 28),
        amount=Decimal(amount),
        description=f"purchase {i}",
        **kwargs,
    )


def test_equal_amounts_yield_nothing() -> None:
    txns = [_txn(i, "-250") for i in range(10)]

    assert detect_anomalies(txns) == []
    print("✓ zero variance")


def test_outlier_flagged_with_stats() -> None:
    txns = [_txn(i, "-100") for i in range(9)] + [_txn(9, "-1000")]

    anomalies = detect_anomalies(txns)

    assert len(anomalies) == 1
    item = anomalies[0]
    assert item.transaction_id == "t09"
    assert item.mean == 190.0
    assert item.std_dev == 270.0
    assert item.z_score == 3.0
    assert item.severity == "low"
    assert item.reason == "Amount 3.0x standard deviations from average"
    print("✓ outlier flagged")


def test_severity_bands() -> None:
    txns = [_txn(i, "-100") for i in range(19)] + [_txn(19, "-2000")]

    anomalies = detect_anomalies(txns)

    assert anomalies[0].z_score > 4
    assert anomalies[0].severity == "high"
    assert severity_for(3.5) == "medium"
    assert severity_for(2.6) == "low"
    print("✓ severity bands")


def test_income_excluded_and_window_ignored() -> None:
    txns = (
        [_txn(i, "-100") for i in range(9)]
        + [_txn(9, "-1000", is_excluded=True)]
        + [_txn(10, "50000")]
        + [TransactionRecord(id="late", date=date(2024, 8, 1), amount=Decimal("-5000"))]
    )

    assert detect_anomalies(txns, date_from=START, date_to=date(2024, 6, 30)) == []
    print("✓ excluded, income and out-of-window rows ignored")


def test_limit_keeps_largest() -> None:
    txns = [_txn(i, "-10") for i in range(40)] + [_txn(40, "-900"), _txn(41, "-950")]

    anomalies = detect_anomalies(txns, limit=1)

    assert [a.transaction_id for a in anomalies] == ["t41"]
    print("✓ limit keeps largest amounts")


if __name__ == "__main__":
    test_equal_amounts_yield_nothing()
    test_outlier_flagged_with_stats()
    test_severity_bands()
    test_income_excluded_and_window_ignored()
    test_limit_keeps_largest()
    print("\nAll anomaly tests passed!")
