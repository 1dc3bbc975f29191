"""
Merchant display cleanup and chain grouping.

Two jobs live here:
- `normalize_merchant` turns a raw card/bank merchant string into something
  presentable ("VISA 1234 kiwi 505 NOK" -> "Kiwi 505").
- `chain_key` derives the grouping key used by analytics so store-location
  variants of one chain collapse ("KIWI 505 BARCODE" and "KIWI 123" -> "KIWI").

The chain noise tables are data, loaded from `data/merchant_chain_rules.json`
(or MERCHANT_CHAIN_RULES_PATH), so new export formats are a data change.
"""
import os
import re
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional, List, Tuple, Pattern

from spendlens.services.text_normalizer import normalize

logger = logging.getLogger(__name__)


DEFAULT_CHAIN_RULES_PATH = Path(__file__).resolve().parent.parent / "data" / "merchant_chain_rules.json"
MERCHANT_CHAIN_RULES_PATH = os.getenv("MERCHANT_CHAIN_RULES_PATH", str(DEFAULT_CHAIN_RULES_PATH))

UNKNOWN_MERCHANT = "Unknown merchant"

# Upper bound on strip passes; every pass must shorten the text
MAX_STRIP_PASSES = 10


@dataclass
class MerchantName:
    """Display form of a raw merchant string."""
    display: str
    raw: str
    kind: str  # name, code, unknown


@dataclass
class ChainRules:
    """Compiled noise tables for chain-key derivation."""
    noise_prefixes: List[Pattern] = field(default_factory=list)
    noise_suffixes: List[Pattern] = field(default_factory=list)
    known_organizations: List[Tuple[str, List[str]]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ChainRules":
        return cls(
            noise_prefixes=[re.compile(p, re.IGNORECASE) for p in data.get("noise_prefixes", [])],
            noise_suffixes=[re.compile(p, re.IGNORECASE) for p in data.get("noise_suffixes", [])],
            known_organizations=[
                (entry["key"], [_compact(p) for p in entry.get("patterns", [])])
                for entry in data.get("known_organizations", [])
            ],
        )


def load_chain_rules(path: Optional[str] = None) -> ChainRules:
    """Read and compile a chain rules file."""
    rules_path = Path(path or MERCHANT_CHAIN_RULES_PATH)
    with rules_path.open(encoding="utf-8") as fh:
        data = json.load(fh)

    rules = ChainRules.from_dict(data)
    logger.debug(
        f"[MERCHANT_CHAIN] Loaded {len(rules.noise_prefixes)} prefixes, "
        f"{len(rules.noise_suffixes)} suffixes, "
        f"{len(rules.known_organizations)} organizations from {rules_path}"
    )
    return rules


@lru_cache(maxsize=1)
def default_chain_rules() -> ChainRules:
    return load_chain_rules()


def _compact(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", normalize(text))


def _normalize_space(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def _strip_until_stable(text: str, patterns: List[Pattern]) -> str:
    for _ in range(MAX_STRIP_PASSES):
        before = text
        for pattern in patterns:
            text = pattern.sub("", text).strip()
        if text == before:
            break
    return text


def _known_organization(text: str, rules: ChainRules) -> Optional[str]:
    compact = _compact(text)
    if not compact:
        return None
    for key, patterns in rules.known_organizations:
        if any(p and p in compact for p in patterns):
            return key
    return None


def chain_key(
    merchant_id: Optional[str],
    display_text: Optional[str],
    rules: Optional[ChainRules] = None,
) -> str:
    """
    Derive the grouping key for a merchant.

    Args:
        merchant_id: Canonical merchant reference, if the row has one
        display_text: Merchant or description text
        rules: Noise tables (defaults to the bundled file)

    Returns:
        The display text unchanged when a canonical merchant exists,
        otherwise an uppercase key of at most two tokens.
    """
    name = (display_text or "").strip()
    if not name:
        return ""
    if merchant_id:
        return display_text

    rules = rules or default_chain_rules()

    organization = _known_organization(name, rules)
    if organization:
        return organization

    cleaned = _normalize_space(name)
    cleaned = _strip_until_stable(cleaned, rules.noise_prefixes)
    cleaned = _strip_until_stable(cleaned, rules.noise_suffixes)

    tokens: List[str] = []
    for token in cleaned.split():
        if token.isdigit():  # store number
            break
        tokens.append(token)
        if len(tokens) == 2:
            break

    if not tokens:
        return _normalize_space(name).upper()

    return " ".join(tokens).upper()


# Display normalization

_PAYMENT_PREFIX = re.compile(
    r"^(?:visa|giro|girobetaling|e[-\s]?varekj[oø]p|varekj[oø]p|kortkj[oø]p)\s+",
    re.IGNORECASE,
)
_LEADING_CODE = re.compile(r"^\d{3,8}\s+")
_TRAILING_CURRENCY = re.compile(r"\s+(?:NOK|KR)\.?$", re.IGNORECASE)
_CORPORATE_SUFFIX = re.compile(r"^(?:as|asa|ab|sa)$", re.IGNORECASE)
_ACRONYM = re.compile(r"^[A-Z0-9.&/:-]+$")

DOMAIN_MAPPINGS = [
    (re.compile(r"(?:^|\b)CLAS[.\s_-]*OHLSON(?:\.COM)?(?:/NO)?(?:\b|$)"), "CLAS OHLSON"),
    (re.compile(r"(?:^|\b)ELKJ(?:O|Ø)P(?:\.NO)?(?:\b|$)"), "ELKJOP"),
]


def _is_code_like(value: str) -> bool:
    compact = re.sub(r"\s+", "", value).upper()
    if not compact:
        return True
    if compact.isdigit():
        return True
    if re.match(r"^\d+(?:[.,]\d+)?(?:NOK|KR)$", compact):
        return True
    if compact in ("NOK", "KR"):
        return True
    return False


def _apply_domain_mapping(value: str) -> str:
    upper = value.upper()
    for pattern, mapped in DOMAIN_MAPPINGS:
        if pattern.search(upper):
            return mapped
    return value


def _title_token(token: str) -> str:
    if not token or token.isdigit():
        return token
    if _CORPORATE_SUFFIX.match(token):
        return token.upper()
    if _ACRONYM.match(token) and len(token) <= 4:
        return token
    return token[:1].upper() + token[1:].lower()


def _normalize_casing(value: str) -> str:
    has_lower = any(ch.islower() for ch in value)
    has_upper = any(ch.isupper() for ch in value)

    # All-caps names stay as they are (PAYPAL, ELKJOP, RUTER)
    if has_upper and not has_lower:
        return value

    return " ".join(_title_token(token) for token in value.split(" "))


def normalize_merchant(raw: Optional[str]) -> MerchantName:
    """Clean a raw merchant string for display."""
    merchant_raw = _normalize_space(raw or "")
    if not merchant_raw:
        return MerchantName(display=UNKNOWN_MERCHANT, raw=merchant_raw, kind="unknown")

    if _is_code_like(merchant_raw):
        return MerchantName(display=UNKNOWN_MERCHANT, raw=merchant_raw, kind="code")

    candidate = re.sub(r"\s*[-/]{2,}\s*", " ", merchant_raw)
    candidate = re.sub(r"\s+[/-]\s*$", "", candidate).strip()
    candidate = _PAYMENT_PREFIX.sub("", candidate)
    candidate = _LEADING_CODE.sub("", candidate)
    candidate = _TRAILING_CURRENCY.sub("", candidate).strip()
    candidate = _normalize_space(_apply_domain_mapping(candidate)) or merchant_raw

    if _is_code_like(candidate):
        return MerchantName(display=UNKNOWN_MERCHANT, raw=merchant_raw, kind="code")

    return MerchantName(display=_normalize_casing(candidate), raw=merchant_raw, kind="name")
