"""
Ingestion-time sign, transfer and flow correction for raw export rows.

Bank and card exports disagree on sign conventions and mix account
transfers in with spending. This module decides, from the description and
the export's section hint, what the amount sign should be and whether the
row is a transfer that analytics must leave out.

Usage:
    decision = normalize_ingest_amount(Decimal("129.00"), "KIWI 505", "Kjøp/uttak")
    # decision.amount == Decimal("-129.00")

    record = normalize_row(raw_row)
"""
import re
import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from spendlens.schemas import RawTransactionRow, TransactionRecord
from spendlens.services.text_normalizer import normalize

logger = logging.getLogger(__name__)


# Vocabulary is matched against normalized text (see text_normalizer.normalize)
REFUND_TERMS = [
    "refusjon",
    "tilbake",
    "tilbakefor",
    "retur",
    "kredit",
    "krediter",
    "revers",
    "refund",
    "return",
]

ONE_TIME_MANDATE_TERMS = ["engangsfullmakt"]
BROKERAGE_TERMS = [
    "kjop aksjer",
    "salg aksjer",
    "kjop fond",
    "salg fond",
    "fondshandel",
    "aksjehandel",
]
CARD_BILL_TERMS = [
    "innbetaling kredittkort",
    "betaling kredittkort",
    "kredittkortfaktura",
]

TRANSFER_SIGNALS = [
    "overforing",
    "til konto",
    "fra konto",
    "egen konto",
    "mellom egne konti",
    "internal transfer",
    "to account",
    "from account",
]

INCOME_SIGNALS = [
    "lonn",
    "salary",
    "payroll",
    "utbytte",
    "rente",
    "interest",
    "nav",
    "utbetaling",
    "pensjon",
    "trygd",
    "refund",
    "tilbakebetaling",
]

PURCHASE_SIGNALS = [
    "kortkjop",
    "bankax",
    "visa",
    "sats",
    "google",
    "apple",
    "spotify",
    "netflix",
    "wolt",
    "foodora",
    "narvesen",
    "xxl",
    "cutters",
    "skatteetaten",
    "rema",
    "kiwi",
    "meny",
    "coop",
    "spar",
    "joker",
    "vinmonopolet",
    "shell",
]

SECTION_KEYS = ("section_label", "section", "sectionContext", "section_context")
SECTION_KEY_HINTS = ("type", "transaksjonstype", "kategori", "gruppe")

_LETTERS = re.compile(r"[^\W\d_]")


@dataclass
class IngestDecision:
    """Outcome of the sign/transfer normalizer for one row."""
    amount: Decimal
    is_transfer: bool = False
    is_excluded: bool = False
    reason: str = "passthrough"


@dataclass
class FlowDecision:
    flow_type: str
    reason: str


def extract_section_label(raw: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Find the export section hint in a raw row.

    Looks at the well-known keys first, then at any column whose name
    suggests a type or grouping (older exports stored the raw row as-is).
    """
    if not raw:
        return None

    for key in SECTION_KEYS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    nested = raw.get("raw_row")
    sources = [nested, raw] if isinstance(nested, Mapping) else [raw]
    for source in sources:
        for key, value in source.items():
            if not isinstance(value, str) or not value.strip():
                continue
            key_normalized = normalize(str(key))
            if any(hint in key_normalized for hint in SECTION_KEY_HINTS):
                return value.strip()

    return None


def is_purchase_section(section_label: Optional[str]) -> bool:
    if not section_label:
        return False
    s = normalize(section_label)
    return "kjop/uttak" in s or "kjop / uttak" in s or ("kjop" in s and "uttak" in s)


def is_refund_like(description: Optional[str]) -> bool:
    d = normalize(description)
    return bool(d) and any(term in d for term in REFUND_TERMS)


def is_payment_like(description: Optional[str], section_label: Optional[str]) -> bool:
    """Bank-giro, mandate, brokerage and card-bill payments move money between accounts."""
    d = normalize(description)
    s = normalize(section_label)

    if "innbetaling bankgiro" in d:
        return True
    if "bankgiro" in d and ("innbetaling" in d or "betaling" in d):
        return True
    if "innbetaling" in s and ("bankgiro" in s or "giro" in s or "betaling" in s):
        return True

    for terms in (ONE_TIME_MANDATE_TERMS, BROKERAGE_TERMS, CARD_BILL_TERMS):
        if any(term in d for term in terms):
            return True

    return False


def normalize_ingest_amount(
    amount: Decimal,
    description: Optional[str],
    section_label: Optional[str] = None,
) -> IngestDecision:
    """
    Correct the sign and flag transfers for one raw row.

    First applicable rule wins:
    1. Payment-rail rows are flagged transfer + excluded, sign untouched.
    2. Purchase-section rows that are not refund-like are forced negative.
    3. Everything else passes through.

    Reapplying to an already-normalized row changes nothing.
    """
    if is_payment_like(description, section_label):
        return IngestDecision(amount=amount, is_transfer=True, is_excluded=True, reason="payment-rail")

    if is_purchase_section(section_label) and not is_refund_like(description):
        return IngestDecision(amount=-abs(amount), reason="purchase-section")

    return IngestDecision(amount=amount)


def _is_straksbetaling(d: str) -> bool:
    return "straksbetaling" in d


def _is_felleskonto(d: str) -> bool:
    return "felleskonto" in d


def _looks_like_transfer(description: Optional[str], section_label: Optional[str]) -> bool:
    d = normalize(description)
    if _is_felleskonto(d):
        return False
    s = normalize(section_label)
    if any(sig in d or sig in s for sig in TRANSFER_SIGNALS):
        return True
    return is_payment_like(description, section_label)


def _looks_like_income(d: str) -> bool:
    return any(sig in d for sig in INCOME_SIGNALS)


def _looks_like_purchase(description: str, d: str) -> bool:
    if not d:
        return False
    if d.startswith("vipps"):
        return True
    if any(sig in d for sig in PURCHASE_SIGNALS):
        return True
    # "GOOGLE *YouTube" style merchant tokens
    return "*" in description


def _looks_like_merchant_text(description: str, d: str) -> bool:
    if not description.strip() or not _LETTERS.search(description):
        return False
    if d.startswith("innbetaling") or d.startswith("utbetaling"):
        return False
    if "overforing" in d or "til konto" in d or "fra konto" in d:
        return False
    return True


def classify_flow(
    description: Optional[str],
    amount: Decimal,
    section_label: Optional[str] = None,
) -> FlowDecision:
    """Classify a row as income, expense, transfer or unknown from its text."""
    description = description or ""
    d = normalize(description)

    if _is_straksbetaling(d):
        if amount > 0:
            return FlowDecision("income", "straksbetaling-positive")
        return FlowDecision("expense", "straksbetaling-nonpositive")

    if _is_felleskonto(d):
        return FlowDecision("expense", "felleskonto-expense")

    if _looks_like_transfer(description, section_label):
        return FlowDecision("transfer", "transfer-signals")

    if is_purchase_section(section_label):
        return FlowDecision("expense", "section-purchase")

    if amount > 0 and is_refund_like(description):
        return FlowDecision("income", "refund-positive")

    if _looks_like_income(d):
        return FlowDecision("income", "income-keywords")

    if _looks_like_purchase(description, d):
        return FlowDecision("expense", "purchase-like")

    if amount > 0 and _looks_like_merchant_text(description, d):
        return FlowDecision("expense", "merchantish-positive")

    if amount < 0:
        return FlowDecision("expense", "fallback-negative")

    return FlowDecision("unknown", "unknown")


def infer_flow_type(amount: Decimal) -> str:
    if amount < 0:
        return "expense"
    if amount > 0:
        return "income"
    return "unknown"


def normalize_row(row: RawTransactionRow) -> TransactionRecord:
    """
    Turn a parsed export row into a normalized transaction record.

    Only the sign/transfer normalizer may change the amount. The flow
    classifier's label is stored as-is, so a merchant credit stays an
    expense and an income keyword on a debit stays income.
    """
    section_label = row.section_label or extract_section_label(row.raw)
    decision = normalize_ingest_amount(row.amount, row.description, section_label)

    amount = decision.amount
    is_transfer = decision.is_transfer
    is_excluded = decision.is_excluded

    if is_transfer:
        flow_type = "transfer"
    else:
        flow = classify_flow(row.description, amount, section_label)
        if flow.flow_type == "transfer":
            flow_type = "transfer"
            is_transfer = True
            is_excluded = True
        else:
            flow_type = flow.flow_type

    if amount != row.amount:
        logger.debug(
            f"[INGEST] Sign corrected ({decision.reason}) for '{row.description[:50]}': "
            f"{row.amount} -> {amount}"
        )

    return TransactionRecord(
        id=row.id or str(uuid.uuid4()),
        date=row.date,
        amount=amount,
        description=row.description,
        merchant_raw=row.merchant_raw,
        flow_type=flow_type,
        status=row.status,
        is_excluded=is_excluded,
        is_transfer=is_transfer,
        section_label=section_label,
    )


def normalize_rows(rows: List[RawTransactionRow]) -> List[TransactionRecord]:
    """Normalize a batch of raw rows, logging how many were flagged."""
    records = [normalize_row(row) for row in rows]
    transfers = sum(1 for r in records if r.is_transfer)
    logger.info(
        f"[INGEST] Normalized {len(records)} rows ({transfers} flagged as transfers)"
    )
    return records
