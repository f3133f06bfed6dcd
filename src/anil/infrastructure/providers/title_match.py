"""Fuzzy title matching for provider show search."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import TypeVar

from rapidfuzz import fuzz
from unidecode import unidecode

_PUNCT_RE = re.compile(r"[^\w\s]")

T = TypeVar("T")


def normalize_title(text: str) -> str:
    """Lowercase, transliterate to ASCII, strip punctuation, collapse whitespace."""
    text = unidecode(text.lower())
    text = _PUNCT_RE.sub(" ", text)
    return " ".join(text.split())


def title_similarity(reference: str, candidate: str) -> float:
    """Similarity in 0.0–1.0.

    ``token_set_ratio`` is not used: it scores
    "Naruto" vs "Naruto Shippuden" as a perfect match.
    """
    a, b = normalize_title(reference), normalize_title(candidate)
    if not a or not b:
        return 0.0
    return max(
        fuzz.ratio(a, b, processor=None),
        fuzz.token_sort_ratio(a, b, processor=None),
    ) / 100.0


def best_match(
    reference: str,
    items: Iterable[tuple[str, T]],
    *,
    min_score: float = 0.0,
) -> tuple[T, float] | None:
    """Pick the item whose name is most similar to *reference*.

    *items* yields ``(name, value)`` pairs; the first of equally scored
    items wins. Returns ``None`` if nothing reaches *min_score*.
    """
    best: tuple[T, float] | None = None
    for name, value in items:
        score = title_similarity(reference, name)
        if score < min_score:
            continue
        if best is None or score > best[1]:
            best = (value, score)
    return best
