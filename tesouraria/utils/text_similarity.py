"""
Text similarity engine for bank and ledger descriptions.
"""

import re
import unicodedata
from functools import lru_cache
from typing import List

from rapidfuzz import fuzz

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@lru_cache(maxsize=4096)
def normalize_text(text: str) -> str:
    """
    Lowercase, strip accents and collapse punctuation to single spaces.

    "Dízimo  João-Silva" -> "dizimo joao silva"
    """
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", ascii_text.lower()).strip()


class TextSimilarityEngine:
    """
    Fuzzy token comparison of free-text descriptions.
    Scores are in [0, 1].
    """

    def similarity(self, text1: str, text2: str) -> float:
        """Token-set similarity of two descriptions after normalisation."""
        a = normalize_text(text1 or "")
        b = normalize_text(text2 or "")
        if not a or not b:
            return 0.0
        return fuzz.token_set_ratio(a, b) / 100.0

    def mean_similarity(self, anchor: str, others: List[str]) -> float:
        """Mean similarity of ``anchor`` against each text in ``others``."""
        if not others:
            return 0.0
        return sum(self.similarity(anchor, other) for other in others) / len(others)

    def matches_any(self, text: str, patterns: List[str]) -> bool:
        """True when the normalised text contains any normalised pattern."""
        normalized = normalize_text(text or "")
        return any(
            normalize_text(pattern) and normalize_text(pattern) in normalized
            for pattern in patterns
        )
