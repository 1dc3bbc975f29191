from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Set, Tuple, Any, Literal


FlowType = Literal["income", "expense", "transfer", "unknown"]
TransactionStatus = Literal["booked", "pending"]
MatchField = Literal["description", "merchant", "combined", "amount"]
MatchType = Literal[
    "contains",
    "exact",
    "starts_with",
    "ends_with",
    "regex",
    "greater_than",
    "less_than",
    "between",
]
ActionType = Literal["set_category", "add_tag", "set_merchant", "set_notes", "mark_recurring"]


# Transaction Schemas
class TransactionSplit(BaseModel):
    id: str
    transaction_id: str
    category_id: Optional[str] = None  # Falls back to the parent's category
    amount: Decimal  # Positive share of the parent's absolute amount
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RawTransactionRow(BaseModel):
    """A row as handed over by the file parser, before normalization."""
    id: Optional[str] = None
    date: date
    amount: Decimal
    description: str = ""
    merchant_raw: Optional[str] = None
    status: TransactionStatus = "booked"
    section_label: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)  # Source export columns


class TransactionRecord(BaseModel):
    id: str
    date: date
    amount: Decimal  # Negative = outflow
    description: str = ""
    merchant_raw: Optional[str] = None
    flow_type: FlowType = "unknown"
    status: TransactionStatus = "booked"
    is_excluded: bool = False
    is_transfer: bool = False
    category_id: Optional[str] = None
    merchant_id: Optional[str] = None
    tags: Set[str] = Field(default_factory=set)
    section_label: Optional[str] = None
    notes: Optional[str] = None
    is_recurring: bool = False
    splits: List[TransactionSplit] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)

    @property
    def effective_flow_type(self) -> FlowType:
        """Flow type with `unknown` resolved from the amount sign."""
        if self.flow_type != "unknown":
            return self.flow_type
        if self.amount < 0:
            return "expense"
        if self.amount > 0:
            return "income"
        return "unknown"


# Catalog Schemas
class Category(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    is_transfer: bool = False
    category_type: Optional[str] = None  # income, expense, transfer

    model_config = ConfigDict(from_attributes=True)


class Merchant(BaseModel):
    id: str
    canonical_name: str
    patterns: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class Tag(BaseModel):
    id: str
    name: str

    model_config = ConfigDict(from_attributes=True)


class Rule(BaseModel):
    id: str
    name: str = ""
    priority: int = 100  # Lower is evaluated first
    enabled: bool = True
    match_field: MatchField = "combined"
    match_type: MatchType = "contains"
    match_value: str
    match_value_secondary: Optional[str] = None
    action_type: ActionType
    action_value: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConfigSnapshot(BaseModel):
    """
    Immutable view of rules and catalogs for one run.

    Built once per batch so every transaction in the run is evaluated
    against the same configuration.
    """
    rules: Tuple[Rule, ...] = ()
    categories: Dict[str, Category] = Field(default_factory=dict)
    merchants: Dict[str, Merchant] = Field(default_factory=dict)
    tags: Dict[str, Tag] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    def is_transfer_category(self, category_id: Optional[str]) -> bool:
        if not category_id:
            return False
        category = self.categories.get(category_id)
        return bool(category and category.is_transfer)

    def category_name(self, category_id: Optional[str]) -> Optional[str]:
        category = self.categories.get(category_id) if category_id else None
        return category.name if category else None

    def merchant_name(self, merchant_id: Optional[str]) -> Optional[str]:
        merchant = self.merchants.get(merchant_id) if merchant_id else None
        return merchant.canonical_name if merchant else None
