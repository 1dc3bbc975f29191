"""
Locale-aware string folding shared by every text-matching component.

Usage:
    normalize("Kjøp  Blåbær")  # -> "kjop blabaer"
"""
import re
import unicodedata
from typing import Iterable, Optional

# Letters that NFKD leaves intact
LOCALE_SUBSTITUTIONS = {
    "ø": "o",
    "æ": "ae",
    "å": "a",
}

_WHITESPACE = re.compile(r"\s+")


def normalize(text: Optional[str]) -> str:
    """Lowercase, fold diacritics and collapse whitespace."""
    if not text:
        return ""

    folded = text.lower()
    for source, target in LOCALE_SUBSTITUTIONS.items():
        folded = folded.replace(source, target)

    decomposed = unicodedata.normalize("NFKD", folded)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))

    return _WHITESPACE.sub(" ", stripped).strip()


def contains_any(text: Optional[str], needles: Iterable[str]) -> bool:
    """True if the normalized text contains any of the (already normalized) needles."""
    haystack = normalize(text)
    if not haystack:
        return False
    return any(needle in haystack for needle in needles)
