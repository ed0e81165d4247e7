"""Identity keys and similarity scoring for transaction records.

Pure functions, no I/O. Both FeedRecord (inbound) and Transaction
(committed) satisfy the duck-typed interface used here: user_id, source,
source_reference, amount_cents, currency, execution_date, description.

Scoring:
  amount       exact (amount_cents, currency) equality; a mismatch scores 0
               overall since different amounts are never the same payment
  date         1 - days / (window_days + 1) inside the window, 0 outside
               (a date outside the window also scores 0 overall)
  description  containment → 1.0, otherwise the better of token overlap
               (Dice) and SequenceMatcher ratio on normalized text
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from difflib import SequenceMatcher
from typing import NamedTuple


class IdentityKey(NamedTuple):
    user_id: str
    source: str
    source_reference: str


class _NoKey:
    """Sentinel for records without a stable source reference."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_KEY"

    def __bool__(self) -> bool:
        return False


NO_KEY = _NoKey()


@dataclass(frozen=True)
class SimilaritySettings:
    amount_weight: float = 40.0
    date_weight: float = 30.0
    description_weight: float = 30.0
    window_days: int = 3
    auto_reject_threshold: float = 95.0
    review_threshold: float = 60.0

    @property
    def total_weight(self) -> float:
        return self.amount_weight + self.date_weight + self.description_weight


DEFAULT_SETTINGS = SimilaritySettings()

VERDICT_DUPLICATE = "duplicate"
VERDICT_REVIEW = "review"
VERDICT_DIFFERENT = "different"


def identity_key(tx) -> IdentityKey | _NoKey:
    """Natural key (user_id, source, source_reference), or NO_KEY."""
    ref = tx.source_reference
    if ref is None or not str(ref).strip():
        return NO_KEY
    return IdentityKey(tx.user_id, tx.source, str(ref).strip())


def amounts_equal(a, b) -> bool:
    """Exact comparison at minor-unit precision, same currency only."""
    return a.currency == b.currency and a.amount_cents == b.amount_cents


def days_apart(date_a: str, date_b: str) -> int:
    return abs((date.fromisoformat(date_a) - date.fromisoformat(date_b)).days)


def date_proximity(date_a: str, date_b: str, window_days: int) -> float:
    """1.0 for the same day, decaying linearly to 0 just past the window."""
    days = days_apart(date_a, date_b)
    if days > window_days:
        return 0.0
    return 1.0 - days / (window_days + 1)


_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")


def _normalize(desc: str | None) -> str:
    desc = _NON_WORD_RE.sub(" ", (desc or "").lower())
    return " ".join(desc.split())


def description_similarity(a: str | None, b: str | None) -> float:
    """Case- and whitespace-insensitive description similarity in [0, 1]."""
    norm_a, norm_b = _normalize(a), _normalize(b)
    if not norm_a and not norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    shorter, longer = sorted((norm_a, norm_b), key=lambda s: (len(s), s))
    if len(shorter) >= 3 and shorter in longer:
        return 1.0
    words_a, words_b = set(norm_a.split()), set(norm_b.split())
    dice = 2 * len(words_a & words_b) / (len(words_a) + len(words_b))
    # Sorted so the score does not depend on argument order
    ratio = SequenceMatcher(None, shorter, longer).ratio()
    return max(dice, ratio)


def similarity(a, b, settings: SimilaritySettings = DEFAULT_SETTINGS) -> float:
    """Weighted 0-100 score of how likely a and b describe the same payment."""
    if not amounts_equal(a, b):
        return 0.0
    date_score = date_proximity(a.execution_date, b.execution_date, settings.window_days)
    if date_score == 0.0:
        return 0.0
    total = settings.total_weight
    if total <= 0:
        return 0.0
    score = (
        settings.amount_weight
        + settings.date_weight * date_score
        + settings.description_weight * description_similarity(a.description, b.description)
    )
    return round(100.0 * score / total, 2)


def verdict(score: float, settings: SimilaritySettings = DEFAULT_SETTINGS) -> str:
    if score >= settings.auto_reject_threshold:
        return VERDICT_DUPLICATE
    if score >= settings.review_threshold:
        return VERDICT_REVIEW
    return VERDICT_DIFFERENT
