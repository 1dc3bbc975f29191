"""
Admission checks for rules, categories and splits, and snapshot building.

Configuration problems are caught here so the rule engine never has to
deal with a rule that points at a missing category or a category tree
with a cycle.
"""
import re
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional, Union

from spendlens.schemas import (
    Category,
    ConfigSnapshot,
    Merchant,
    Rule,
    Tag,
    TransactionRecord,
    TransactionSplit,
)

logger = logging.getLogger(__name__)


MAX_REGEX_LENGTH = 200
SPLIT_TOLERANCE = Decimal("0.01")

_LOOKAROUND = re.compile(r"\(\?<?[=!]")
_HUGE_QUANTIFIER = re.compile(r"\{[\d,]*\d{4,}")

STRING_MATCH_TYPES = {"contains", "exact", "starts_with", "ends_with", "regex"}
NUMERIC_MATCH_TYPES = {"greater_than", "less_than", "between"}


class CatalogValidationError(ValueError):
    """A rule, category or split references something that does not exist or is malformed."""


def _parse_decimal(value: Optional[str], label: str, rule_id: str) -> Decimal:
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise CatalogValidationError(f"Rule {rule_id}: {label} '{value}' is not a number")


def validate_regex(pattern: str, rule_id: str = "") -> None:
    if len(pattern) > MAX_REGEX_LENGTH:
        raise CatalogValidationError(f"Rule {rule_id}: regex longer than {MAX_REGEX_LENGTH} characters")
    if _LOOKAROUND.search(pattern):
        raise CatalogValidationError(f"Rule {rule_id}: lookaround is not allowed in rule regex")
    if _HUGE_QUANTIFIER.search(pattern):
        raise CatalogValidationError(f"Rule {rule_id}: regex quantifier is too large")
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise CatalogValidationError(f"Rule {rule_id}: invalid regex ({e})")


def validate_rule(
    rule: Rule,
    categories: Dict[str, Category],
    merchants: Dict[str, Merchant],
    tags: Dict[str, Tag],
) -> None:
    """
    Check a rule before it is stored or handed to the engine.

    Raises:
        CatalogValidationError: If the match definition is malformed or the
            action value does not reference an existing catalog entry.
    """
    if not (rule.match_value or "").strip():
        raise CatalogValidationError(f"Rule {rule.id}: match value is empty")

    if rule.match_type in NUMERIC_MATCH_TYPES:
        if rule.match_field != "amount":
            raise CatalogValidationError(
                f"Rule {rule.id}: {rule.match_type} only applies to the amount field"
            )
        lower = _parse_decimal(rule.match_value, "match value", rule.id)
        if rule.match_type == "between":
            upper = _parse_decimal(rule.match_value_secondary, "upper bound", rule.id)
            if lower > upper:
                raise CatalogValidationError(f"Rule {rule.id}: lower bound exceeds upper bound")
    elif rule.match_field == "amount":
        raise CatalogValidationError(f"Rule {rule.id}: {rule.match_type} cannot match the amount field")

    if rule.match_type == "regex":
        validate_regex(rule.match_value, rule.id)

    action_value = rule.action_value
    if rule.action_type == "set_category":
        if not action_value or action_value not in categories:
            raise CatalogValidationError(f"Rule {rule.id}: category '{action_value}' does not exist")
    elif rule.action_type == "add_tag":
        if not action_value or action_value not in tags:
            raise CatalogValidationError(f"Rule {rule.id}: tag '{action_value}' does not exist")
    elif rule.action_type == "set_merchant":
        if not action_value or action_value not in merchants:
            raise CatalogValidationError(f"Rule {rule.id}: merchant '{action_value}' does not exist")


def validate_category_parent(
    categories: Dict[str, Category],
    category_id: str,
    parent_id: Optional[str],
) -> None:
    """Reject a parent link that is unknown, self-referencing or would close a cycle."""
    if parent_id is None:
        return
    if parent_id == category_id:
        raise CatalogValidationError(f"Category {category_id} cannot be its own parent")
    if parent_id not in categories:
        raise CatalogValidationError(f"Parent category {parent_id} does not exist")

    seen = {category_id}
    current: Optional[str] = parent_id
    while current is not None:
        if current in seen:
            raise CatalogValidationError(
                f"Setting parent of {category_id} to {parent_id} would create a cycle"
            )
        seen.add(current)
        parent = categories.get(current)
        current = parent.parent_id if parent else None


def validate_category_tree(categories: Dict[str, Category]) -> None:
    for category in categories.values():
        validate_category_parent(categories, category.id, category.parent_id)


def validate_splits(
    transaction: TransactionRecord,
    splits: List[TransactionSplit],
    categories: Dict[str, Category],
) -> None:
    """
    Check that splits partition the transaction's absolute amount.

    Raises:
        CatalogValidationError: If a split is non-positive, points at an unknown
            category, or the parts do not add up within one cent.
    """
    if not splits:
        raise CatalogValidationError(f"Transaction {transaction.id}: no splits given")

    total = Decimal("0")
    for split in splits:
        if split.amount <= 0:
            raise CatalogValidationError(
                f"Transaction {transaction.id}: split {split.id} amount must be positive"
            )
        if split.category_id is not None and split.category_id not in categories:
            raise CatalogValidationError(
                f"Transaction {transaction.id}: split category {split.category_id} does not exist"
            )
        total += split.amount

    if abs(total - transaction.abs_amount) > SPLIT_TOLERANCE:
        raise CatalogValidationError(
            f"Transaction {transaction.id}: splits sum to {total}, expected {transaction.abs_amount}"
        )


def _keyed(items: Union[Dict[str, object], Iterable[object]]) -> dict:
    if isinstance(items, dict):
        return dict(items)
    return {item.id: item for item in items}


def build_config_snapshot(
    rules: Iterable[Rule],
    categories: Iterable[Category],
    merchants: Iterable[Merchant] = (),
    tags: Iterable[Tag] = (),
) -> ConfigSnapshot:
    """
    Freeze one consistent configuration for a run.

    Rules that fail admission are dropped with a warning instead of failing
    the run; they are sorted by (priority, name) for the engine. A category
    whose parent link is unknown or closes a cycle is kept as a root.
    """
    category_map = _keyed(categories)
    merchant_map = _keyed(merchants)
    tag_map = _keyed(tags)

    for category_id in list(category_map):
        category = category_map[category_id]
        try:
            validate_category_parent(category_map, category.id, category.parent_id)
        except CatalogValidationError as e:
            logger.warning(f"[CATALOG] Dropping parent link of category {category.id}: {e}")
            category_map[category_id] = category.model_copy(update={"parent_id": None})

    admitted: List[Rule] = []
    for rule in rules:
        try:
            validate_rule(rule, category_map, merchant_map, tag_map)
        except CatalogValidationError as e:
            logger.warning(f"[CATALOG] Dropping rule '{rule.name or rule.id}': {e}")
            continue
        admitted.append(rule)

    admitted.sort(key=lambda r: (r.priority, r.name, r.id))

    logger.info(
        f"[CATALOG] Snapshot with {len(admitted)} rules, {len(category_map)} categories, "
        f"{len(merchant_map)} merchants, {len(tag_map)} tags"
    )

    return ConfigSnapshot(
        rules=tuple(admitted),
        categories=category_map,
        merchants=merchant_map,
        tags=tag_map,
    )
