"""
Tests for recurring expense detection.
"""
import os
import sys
from datetime import date, timedelta
from decimal import Decimal
from typing import List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spendlens.schemas import Merchant, TransactionRecord  # noqa: E402
from spendlens.services.subscription_detector import SubscriptionDetector, add_months  # noqa: E402


AS_OF = date(2024, 5, 20)


def _series(prefix: str, description: str, dates: List[date], amounts: List[str], **kwargs) -> List[TransactionRecord]:
    return [
        TransactionRecord(
            id=f"{prefix}-{i}",
            date=d,
            amount=Decimal(a),
            description=description,
            flow_type="expense",
            **kwargs,
        )
        for i, (d, a) in enumerate(zip(dates, amounts))
    ]


MONTHLY_DATES = [
    date(2024, 1, 5),
    date(2024, 2, 4),
    date(2024, 3, 6),
    date(2024, 4, 4),
    date(2024, 5, 4),
]


def test_monthly_subscription_detected() -> None:
    txns = _series("nf", "NETFLIX.COM", MONTHLY_DATES, ["-129"] * 5)

    patterns = SubscriptionDetector().detect_patterns(txns, as_of=AS_OF)

    assert len(patterns) == 1
    netflix = patterns[0]
    assert netflix.merchant_key == "NETFLIX.COM"
    assert netflix.cadence == "monthly"
    assert netflix.confidence >= 0.8
    assert netflix.occurrence_count == 5
    assert netflix.average_amount == Decimal("129.00")
    assert netflix.next_expected_date == date(2024, 6, 4)
    assert netflix.average_gap_days == 30.0
    print("✓ monthly subscription")


def test_unstable_amounts_rejected() -> None:
    txns = _series("gym", "SATS", MONTHLY_DATES[:3], ["-100", "-300", "-200"])

    assert SubscriptionDetector().detect_patterns(txns, as_of=AS_OF) == []
    print("✓ unstable amounts rejected")


def test_too_few_occurrences_and_non_expenses_skipped() -> None:
    few = _series("sp", "SPOTIFY", MONTHLY_DATES[:2], ["-119", "-119"])
    salary = _series("sal", "LONN", MONTHLY_DATES, ["32000"] * 5)
    transfers = _series("tr", "SPAREKONTO", MONTHLY_DATES, ["-1000"] * 5, is_transfer=True)

    assert SubscriptionDetector().detect_patterns(few + salary + transfers, as_of=AS_OF) == []
    print("✓ short groups and non-expenses skipped")


def test_excluded_expenses_skipped() -> None:
    hidden = _series("gym", "SATS", MONTHLY_DATES, ["-399"] * 5, is_excluded=True)
    visible = _series("nf", "NETFLIX.COM", MONTHLY_DATES, ["-129"] * 5)

    patterns = SubscriptionDetector().detect_patterns(hidden + visible, as_of=AS_OF)

    assert [p.merchant_key for p in patterns] == ["NETFLIX.COM"]
    print("✓ excluded expenses skipped")


def test_weekly_and_out_of_band_cadences() -> None:
    weekly_dates = [date(2024, 4, 1) + timedelta(days=7 * i) for i in range(6)]
    odd_dates = [date(2024, 1, 1) + timedelta(days=50 * i) for i in range(3)]
    txns = (
        _series("wk", "MATKASSE", weekly_dates, ["-599"] * 6)
        + _series("odd", "FRISOR", odd_dates, ["-450"] * 3)
    )

    strict = SubscriptionDetector().detect_patterns(txns, as_of=AS_OF)
    lenient = SubscriptionDetector(min_confidence=0.3).detect_patterns(txns, as_of=AS_OF)

    assert [(p.merchant_key, p.cadence) for p in strict] == [("MATKASSE", "weekly")]
    assert strict[0].next_expected_date == weekly_dates[-1] + timedelta(days=7)
    assert [(p.merchant_key, p.cadence, p.confidence) for p in lenient] == [
        ("MATKASSE", "weekly", 0.8),
        ("FRISOR", "monthly", 0.4),
    ]
    print("✓ weekly and fallback cadences")


def test_lookback_window_and_merchant_grouping() -> None:
    old = _series("old", "HBO", [date(2023, 1, 5), date(2023, 2, 5), date(2023, 3, 5)], ["-99"] * 3)
    linked = _series(
        "yt", "varying text", MONTHLY_DATES[1:], ["-129", "-129", "-135", "-129"], merchant_id="m-yt"
    )
    merchants = {"m-yt": Merchant(id="m-yt", canonical_name="YouTube Premium")}

    patterns = SubscriptionDetector(merchants=merchants).detect_patterns(old + linked, as_of=AS_OF)

    assert len(patterns) == 1
    assert patterns[0].merchant_key == "YouTube Premium"
    assert patterns[0].merchant_id == "m-yt"
    print("✓ lookback window and merchant grouping")


def test_add_months_clamps() -> None:
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 11, 30), 3) == date(2024, 2, 29)
    assert add_months(date(2024, 5, 20), -6) == date(2023, 11, 20)
    print("✓ add_months clamps")


if __name__ == "__main__":
    test_monthly_subscription_detected()
    test_unstable_amounts_rejected()
    test_too_few_occurrences_and_non_expenses_skipped()
    test_excluded_expenses_skipped()
    test_weekly_and_out_of_band_cadences()
    test_lookback_window_and_merchant_grouping()
    test_add_months_clamps()
    print("\nAll subscription tests passed!")
