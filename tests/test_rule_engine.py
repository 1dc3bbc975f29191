"""
Tests for rule matching, per-action reduction and batch application.
"""
import os
import sys
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from spendlens.schemas import Category, Rule, Tag, TransactionRecord  # noqa: E402
from spendlens.services.catalog_validator import build_config_snapshot  # noqa: E402
from spendlens.services.rule_engine import (  # noqa: E402
    apply_batch,
    classify,
    evaluate,
    matches_rule,
    preview,
)


CATEGORIES = [
    Category(id="cat-groceries", name="Groceries"),
    Category(id="cat-food", name="Food"),
    Category(id="cat-transfer", name="Transfers", is_transfer=True),
    Category(id="cat-hair", name="Hair"),
]
TAGS = [
    Tag(id="tag-a", name="a"),
    Tag(id="tag-b", name="b"),
    Tag(id="tag-c", name="c"),
]


def _txn(txn_id: str, description: str, amount: str = "-100", **kwargs) -> TransactionRecord:
    kwargs.setdefault("flow_type", "expense" if Decimal(amount) < 0 else "income")
    return TransactionRecord(
        id=txn_id,
        date=date(2024, 5, 1),
        amount=Decimal(amount),
        description=description,
        **kwargs,
    )


def _rule(rule_id: str, **kwargs) -> Rule:
    return Rule(id=rule_id, name=kwargs.pop("name", rule_id), **kwargs)


class InMemoryStore:
    """Keeps records in a dict and reports whether a write changed anything."""

    def __init__(self, records: List[TransactionRecord], failing_ids=()):
        self.records = {r.id: r for r in records}
        self.failing_ids = set(failing_ids)
        self.writes: List[str] = []

    def save_classification(self, transaction_id: str, changes: Dict[str, Any]) -> bool:
        if transaction_id in self.failing_ids:
            raise RuntimeError("disk full")
        current = self.records[transaction_id]
        updated = current.model_copy(update=changes)
        if updated == current:
            return False
        self.records[transaction_id] = updated
        self.writes.append(transaction_id)
        return True


def test_lower_priority_number_wins_category() -> None:
    snapshot = build_config_snapshot(
        rules=[
            _rule("r-food", priority=20, match_value="kiwi", action_type="set_category", action_value="cat-food"),
            _rule("r-groc", priority=10, match_value="kiwi", action_type="set_category", action_value="cat-groceries"),
        ],
        categories=CATEGORIES,
    )

    changes = classify(_txn("t1", "KIWI 505 BARCODE"), snapshot)

    assert changes["category_id"] == "cat-groceries"
    print("✓ priority 10 beats priority 20")


def test_tags_accumulate_across_rules() -> None:
    snapshot = build_config_snapshot(
        rules=[
            _rule("r1", priority=1, match_value="rema", action_type="add_tag", action_value="tag-a"),
            _rule("r2", priority=2, match_value="rema", action_type="add_tag", action_value="tag-b"),
            _rule("r3", priority=3, match_value="1000", action_type="add_tag", action_value="tag-c"),
            _rule("r4", priority=4, match_value="rema", action_type="set_category", action_value="cat-groceries"),
        ],
        categories=CATEGORIES,
        tags=TAGS,
    )

    changes = classify(_txn("t1", "REMA 1000 MAJORSTUEN"), snapshot)

    assert changes["tags"] == {"tag-a", "tag-b", "tag-c"}
    assert changes["category_id"] == "cat-groceries"
    print("✓ tags accumulate while category is first-wins")


def test_evaluate_orders_actions_and_skips_disabled() -> None:
    rules = [
        _rule("r-b", name="b", priority=5, match_value="wolt", action_type="set_notes", action_value="late dinner"),
        _rule("r-a", name="a", priority=5, match_value="wolt", action_type="set_category", action_value="cat-food"),
        _rule("r-off", priority=1, enabled=False, match_value="wolt", action_type="set_category",
              action_value="cat-groceries"),
    ]

    actions = evaluate(_txn("t1", "WOLT OSLO"), rules)

    assert [a.rule_id for a in actions] == ["r-a", "r-b"]
    assert actions[0].value == "cat-food"
    print("✓ evaluation order and disabled rules")


def test_match_types() -> None:
    txn = _txn("t1", "Vipps*Cutters Majorstuen", amount="-399", merchant_raw="Vipps")

    assert matches_rule(txn, _rule("r", match_type="exact", match_field="merchant",
                                   match_value="VIPPS", action_type="set_notes"))
    assert matches_rule(txn, _rule("r", match_type="starts_with", match_field="description",
                                   match_value="vipps*", action_type="set_notes"))
    assert matches_rule(txn, _rule("r", match_type="ends_with", match_field="description",
                                   match_value="majorstuen", action_type="set_notes"))
    assert matches_rule(txn, _rule("r", match_type="regex", match_value=r"cutters\s+major",
                                   action_type="set_notes"))
    assert not matches_rule(txn, _rule("r", match_type="exact", match_value="cutters",
                                       action_type="set_notes"))
    print("✓ string match types")


def test_secondary_value_narrows_match() -> None:
    broad = _rule("r", match_value="vipps", match_value_secondary="cutters", action_type="set_notes")
    haircut = _txn("t1", "Vipps*Cutters Majorstuen")
    friend = _txn("t2", "Vipps*Ola Nordmann")

    assert matches_rule(haircut, broad)
    assert not matches_rule(friend, broad)
    assert preview([haircut, friend], broad) == ["t1"]
    print("✓ secondary value narrows")


def test_amount_rules_use_signed_amount() -> None:
    between = _rule("r", match_field="amount", match_type="between", match_value="-500",
                    match_value_secondary="-100", action_type="set_notes")
    large = _rule("r", match_field="amount", match_type="less_than", match_value="-1000",
                  action_type="set_notes")

    assert matches_rule(_txn("t1", "x", amount="-250"), between)
    assert not matches_rule(_txn("t2", "x", amount="250"), between)
    assert matches_rule(_txn("t3", "x", amount="-1500"), large)
    assert not matches_rule(_txn("t4", "x", amount="-50"), large)
    print("✓ amount rules")


def test_transfer_category_sets_and_reverses_flags() -> None:
    snapshot = build_config_snapshot(
        rules=[
            _rule("r-t", match_value="sparekonto", action_type="set_category", action_value="cat-transfer"),
            _rule("r-h", match_value="cutters", action_type="set_category", action_value="cat-hair"),
        ],
        categories=CATEGORIES,
    )

    to_transfer = classify(_txn("t1", "Til sparekonto"), snapshot)
    assert to_transfer["is_transfer"] is True
    assert to_transfer["is_excluded"] is True
    assert to_transfer["flow_type"] == "transfer"

    miscategorized = _txn(
        "t2", "Cutters Majorstuen", category_id="cat-transfer",
        is_transfer=True, is_excluded=True, flow_type="transfer",
    )
    reversed_changes = classify(miscategorized, snapshot)
    assert reversed_changes["category_id"] == "cat-hair"
    assert reversed_changes["is_transfer"] is False
    assert reversed_changes["is_excluded"] is False
    assert reversed_changes["flow_type"] == "expense"

    # Flags set at ingestion survive a plain category change
    ingest_flagged = _txn("t3", "Cutters", is_transfer=True, is_excluded=True)
    plain_changes = classify(ingest_flagged, snapshot)
    assert plain_changes == {"category_id": "cat-hair"}
    print("✓ transfer category side effects")


def test_manual_unexclude_survives_rerun() -> None:
    snapshot = build_config_snapshot(
        rules=[_rule("r-t", match_value="sparekonto", action_type="set_category", action_value="cat-transfer")],
        categories=CATEGORIES,
    )
    kept_visible = _txn(
        "t1", "Til sparekonto", category_id="cat-transfer",
        is_transfer=True, is_excluded=False, flow_type="transfer",
    )
    store = InMemoryStore([kept_visible])

    assert classify(kept_visible, snapshot) == {}
    assert apply_batch([kept_visible], snapshot, store).updated == 0
    assert store.records["t1"].is_excluded is False

    # Already a transfer from ingestion: category is set, exclusion untouched
    flagged = _txn("t2", "Til sparekonto", is_transfer=True, is_excluded=False, flow_type="transfer")
    assert classify(flagged, snapshot) == {"category_id": "cat-transfer"}
    print("✓ manual exclusion toggle survives re-runs")


def test_batch_is_idempotent() -> None:
    snapshot = build_config_snapshot(
        rules=[_rule("r", match_value="kiwi", action_type="set_category", action_value="cat-groceries")],
        categories=CATEGORIES,
    )
    store = InMemoryStore([_txn("t1", "KIWI 505"), _txn("t2", "KIWI 123"), _txn("t3", "Narvesen")])

    first = apply_batch(list(store.records.values()), snapshot, store)
    second = apply_batch(list(store.records.values()), snapshot, store)

    assert first.to_dict() == {"processed": 3, "updated": 2, "errors": 0}
    assert second.to_dict() == {"processed": 3, "updated": 0, "errors": 0}
    assert store.writes == ["t1", "t2"]
    print("✓ second run updates nothing")


def test_failure_on_one_row_does_not_abort_batch() -> None:
    snapshot = build_config_snapshot(
        rules=[_rule("r", match_value="kiwi", action_type="set_category", action_value="cat-groceries")],
        categories=CATEGORIES,
    )
    rows = [_txn("t1", "KIWI 1"), _txn("t2", "KIWI 2"), _txn("t3", "KIWI 3")]
    store = InMemoryStore(rows, failing_ids={"t2"})

    result = apply_batch(rows, snapshot, store)

    assert result.processed == 3
    assert result.updated == 2
    assert result.errors == 1
    print("✓ per-row failure counted")


if __name__ == "__main__":
    test_lower_priority_number_wins_category()
    test_tags_accumulate_across_rules()
    test_evaluate_orders_actions_and_skips_disabled()
    test_match_types()
    test_secondary_value_narrows_match()
    test_amount_rules_use_signed_amount()
    test_transfer_category_sets_and_reverses_flags()
    test_manual_unexclude_survives_rerun()
    test_batch_is_idempotent()
    test_failure_on_one_row_does_not_abort_batch()
    print("\nAll rule engine tests passed!")
