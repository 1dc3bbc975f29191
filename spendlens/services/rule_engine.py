"""
Priority-ordered rule matching and batch application.

Rules are evaluated in ascending priority (ties broken by name). Matches
are reduced per action type: category, merchant, notes and recurring flag
take the first firing rule only, while tags accumulate from every firing
rule. A lower-priority rule can therefore still add a tag after a
higher-priority rule has set the category.

Usage:
    snapshot = store.load_config_snapshot()
    actions = evaluate(transaction, snapshot.rules)
    result = apply_batch(transactions, snapshot, store)
    # result.processed, result.updated, result.errors
"""
import re
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple

from spendlens.schemas import ConfigSnapshot, Rule, TransactionRecord
from spendlens.services.catalog_validator import NUMERIC_MATCH_TYPES
from spendlens.services.ingest_normalizer import infer_flow_type
from spendlens.services.text_normalizer import normalize

logger = logging.getLogger(__name__)


# Fields the engine is allowed to write back
CLASSIFICATION_FIELDS = (
    "category_id",
    "merchant_id",
    "tags",
    "notes",
    "is_recurring",
    "is_transfer",
    "flow_type",
    "is_excluded",
)


@dataclass(frozen=True)
class RuleAction:
    """One firing rule's effect on a transaction."""
    action_type: str
    value: Optional[str]
    rule_id: str
    rule_name: str = ""


@dataclass
class ApplyResult:
    processed: int = 0
    updated: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# Matching

@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[Pattern]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return None


def _match_text(transaction: TransactionRecord, match_field: str) -> str:
    if match_field == "description":
        return transaction.description or ""
    if match_field == "merchant":
        return transaction.merchant_raw or ""
    combined = f"{transaction.merchant_raw or ''} {transaction.description or ''}"
    return " ".join(combined.split())


def _to_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


def _matches_amount(transaction: TransactionRecord, rule: Rule) -> bool:
    bound = _to_decimal(rule.match_value)
    if bound is None:
        return False

    amount = transaction.amount
    if rule.match_type == "greater_than":
        return amount > bound
    if rule.match_type == "less_than":
        return amount < bound

    upper = _to_decimal(rule.match_value_secondary)
    if upper is None:
        upper = bound
    return bound <= amount <= upper


def matches_rule(transaction: TransactionRecord, rule: Rule) -> bool:
    """Test a single rule against a transaction (ignores `enabled`)."""
    if rule.match_type in NUMERIC_MATCH_TYPES:
        return _matches_amount(transaction, rule)

    text = _match_text(transaction, rule.match_field)
    haystack = normalize(text)
    if not haystack:
        return False

    if rule.match_type == "regex":
        compiled = _compile(rule.match_value)
        matched = bool(compiled and compiled.search(text))
    else:
        needle = normalize(rule.match_value)
        if not needle:
            return False
        if rule.match_type == "contains":
            matched = needle in haystack
        elif rule.match_type == "exact":
            matched = haystack == needle
        elif rule.match_type == "starts_with":
            matched = haystack.startswith(needle)
        elif rule.match_type == "ends_with":
            matched = haystack.endswith(needle)
        else:
            matched = False

    if matched and rule.match_value_secondary:
        secondary = normalize(rule.match_value_secondary)
        matched = secondary in haystack

    return matched


# Reduction

# Reducers receive (position, action) pairs in priority order
def _first_wins(entries: List[Tuple[int, RuleAction]]) -> List[Tuple[int, RuleAction]]:
    return entries[:1]


def _accumulate(entries: List[Tuple[int, RuleAction]]) -> List[Tuple[int, RuleAction]]:
    return list(entries)


ACTION_REDUCERS: Dict[str, Callable[[List[Tuple[int, RuleAction]]], List[Tuple[int, RuleAction]]]] = {
    "set_category": _first_wins,
    "set_merchant": _first_wins,
    "set_notes": _first_wins,
    "mark_recurring": _first_wins,
    "add_tag": _accumulate,
}


def _sorted_rules(rules: Iterable[Rule]) -> List[Rule]:
    return sorted(rules, key=lambda r: (r.priority, r.name))


def evaluate(transaction: TransactionRecord, rules: Sequence[Rule]) -> List[RuleAction]:
    """
    Find the actions that apply to a transaction.

    Args:
        transaction: The record to classify
        rules: Candidate rules; evaluated in (priority, name) order

    Returns:
        Reduced actions in priority order, at most one per first-wins type
    """
    fired: Dict[str, List[Tuple[int, RuleAction]]] = defaultdict(list)

    for position, rule in enumerate(_sorted_rules(rules)):
        if not rule.enabled:
            continue
        if rule.action_type not in ACTION_REDUCERS:
            logger.warning(f"[RULE_ENGINE] Unknown action type '{rule.action_type}' on rule {rule.id}")
            continue
        if not matches_rule(transaction, rule):
            continue

        action = RuleAction(
            action_type=rule.action_type,
            value=rule.action_value,
            rule_id=rule.id,
            rule_name=rule.name,
        )
        fired[rule.action_type].append((position, action))
        logger.debug(f"[RULE_ENGINE] Rule '{rule.name or rule.id}' matched transaction {transaction.id}")

    reduced: List[Tuple[int, RuleAction]] = []
    for action_type, entries in fired.items():
        reduced.extend(ACTION_REDUCERS[action_type](entries))

    return [action for _, action in sorted(reduced, key=lambda entry: entry[0])]


# Application

def _apply_category(
    transaction: TransactionRecord,
    action: RuleAction,
    changes: Dict[str, Any],
    snapshot: ConfigSnapshot,
) -> None:
    changes["category_id"] = action.value

    # Flags only move when the transfer state flips, so a manual
    # exclusion toggle on an existing transfer is left alone
    if snapshot.is_transfer_category(action.value):
        if not transaction.is_transfer:
            changes["is_transfer"] = True
            changes["flow_type"] = "transfer"
            changes["is_excluded"] = True
        elif transaction.flow_type != "transfer":
            changes["flow_type"] = "transfer"
    elif snapshot.is_transfer_category(transaction.category_id) and transaction.is_transfer:
        # Moving away from a transfer category
        changes["is_transfer"] = False
        changes["flow_type"] = infer_flow_type(transaction.amount)
        changes["is_excluded"] = False


def _apply_merchant(transaction, action, changes, snapshot) -> None:
    changes["merchant_id"] = action.value


def _apply_tag(transaction, action, changes, snapshot) -> None:
    tags = set(changes.get("tags", transaction.tags))
    tags.add(action.value)
    changes["tags"] = tags


def _apply_notes(transaction, action, changes, snapshot) -> None:
    changes["notes"] = action.value


def _apply_recurring(transaction, action, changes, snapshot) -> None:
    value = action.value
    changes["is_recurring"] = value is None or str(value).strip().lower() in ("", "true", "1", "yes")


ACTION_HANDLERS = {
    "set_category": _apply_category,
    "set_merchant": _apply_merchant,
    "add_tag": _apply_tag,
    "set_notes": _apply_notes,
    "mark_recurring": _apply_recurring,
}


def apply_actions(
    transaction: TransactionRecord,
    actions: Iterable[RuleAction],
    snapshot: ConfigSnapshot,
) -> TransactionRecord:
    """Return a copy of the transaction with the actions applied."""
    changes: Dict[str, Any] = {}
    for action in actions:
        ACTION_HANDLERS[action.action_type](transaction, action, changes, snapshot)

    if not changes:
        return transaction
    return transaction.model_copy(update=changes)


def diff_record(before: TransactionRecord, after: TransactionRecord) -> Dict[str, Any]:
    """Classification fields whose value differs between two versions of a record."""
    changes: Dict[str, Any] = {}
    for name in CLASSIFICATION_FIELDS:
        new_value = getattr(after, name)
        if getattr(before, name) != new_value:
            changes[name] = set(new_value) if name == "tags" else new_value
    return changes


def classify(transaction: TransactionRecord, snapshot: ConfigSnapshot) -> Dict[str, Any]:
    """Evaluate and apply the snapshot's rules, returning only the changed fields."""
    actions = evaluate(transaction, snapshot.rules)
    if not actions:
        return {}
    return diff_record(transaction, apply_actions(transaction, actions, snapshot))


def apply_batch(
    transactions: Iterable[TransactionRecord],
    snapshot: ConfigSnapshot,
    store,
) -> ApplyResult:
    """
    Classify transactions and write changes through the storage collaborator.

    A failure on one transaction is logged and counted; the batch goes on.
    `updated` only counts writes that actually changed stored values, so a
    second run over unchanged input reports zero updates.

    Args:
        transactions: Records to classify
        snapshot: Configuration for the whole run
        store: Object with `save_classification(transaction_id, changes) -> bool`

    Returns:
        ApplyResult with processed, updated and errors counts
    """
    result = ApplyResult()

    for transaction in transactions:
        result.processed += 1
        try:
            changes = classify(transaction, snapshot)
            if not changes:
                continue
            if store.save_classification(transaction.id, changes):
                result.updated += 1
        except Exception as e:
            result.errors += 1
            logger.error(f"[RULE_ENGINE] Failed to apply rules to transaction {transaction.id}: {e}")

    logger.info(
        f"[RULE_ENGINE] Batch done: {result.processed} processed, "
        f"{result.updated} updated, {result.errors} errors"
    )
    return result


def preview(transactions: Iterable[TransactionRecord], rule: Rule) -> List[str]:
    """Ids of the transactions a single rule would match."""
    return [t.id for t in transactions if matches_rule(t, rule)]
