"""Duplicate classifier for inbound transaction records.

Steps (evaluated in order, first match wins):
1. Identity key — (user_id, source, source_reference) already committed.
   This is re-delivery of the same source event: exact duplicate, and no
   pending or audit record is written for it.
2. Similarity — bounded neighbour query on the same user+account within
   ±window_days of the execution date, scored with fingerprint.similarity.
   At or above auto_reject_threshold the record is an exact duplicate
   (same payment under a re-sequenced ID); at or above review_threshold it
   is parked for review.
3. Cross-source — a payment-platform record that survived the similarity
   check is handed to the cross-source reconciler regardless of score.
4. Otherwise the record is new.

Platform records are never similarity-scored against bank-level records
(or vice versa). Those pairs describe the same payment on purpose and are
matched by the reconciler's own amount/window rule.

The classifier only reads. Acting on the result is the pipeline's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta

from src.database.fingerprint import (
    DEFAULT_SETTINGS,
    NO_KEY,
    VERDICT_DUPLICATE,
    VERDICT_REVIEW,
    SimilaritySettings,
    identity_key,
    similarity,
    verdict,
)
from src.database.models import Transaction
from src.database.repository import Repository

logger = logging.getLogger(__name__)

NEW = "new"
EXACT_DUPLICATE = "exact_duplicate"
PROBABLE_DUPLICATE = "probable_duplicate"
CROSS_SOURCE_MATCH = "cross_source_match"

TIER_IDENTITY = "identity"
TIER_SIMILARITY = "similarity"


@dataclass
class ClassifyResult:
    """Outcome of classifying a single candidate record."""
    status: str  # "new", "exact_duplicate", "probable_duplicate", "cross_source_match"
    tier: str | None = None  # "identity", "similarity"
    existing: Transaction | None = None
    score: float | None = None


def window_bounds(execution_date: str, window_days: int) -> tuple[str, str]:
    """Inclusive ISO date range ±window_days around execution_date."""
    day = date.fromisoformat(execution_date)
    delta = timedelta(days=window_days)
    return (day - delta).isoformat(), (day + delta).isoformat()


class DuplicateClassifier:
    """Classify candidates against the committed ledger."""

    def __init__(
        self,
        repo: Repository,
        settings: SimilaritySettings = DEFAULT_SETTINGS,
        bank_sources: tuple[str, ...] = ("bank-feed", "card-feed"),
        platform_sources: tuple[str, ...] = ("payment-platform",),
        similarity_auto_reject: bool = True,
    ):
        self.repo = repo
        self.settings = settings
        self.bank_sources = tuple(bank_sources)
        self.platform_sources = tuple(platform_sources)
        self.similarity_auto_reject = similarity_auto_reject

    @classmethod
    def from_config(cls, repo: Repository, config) -> DuplicateClassifier:
        return cls(
            repo,
            settings=config.similarity_settings(),
            bank_sources=config.bank_sources,
            platform_sources=config.platform_sources,
            similarity_auto_reject=config.similarity_auto_reject,
        )

    # ── Step 1: Identity key ──────────────────────────────

    def check_identity(self, candidate, user_id: str) -> Transaction | None:
        """Return the committed transaction with the candidate's identity key."""
        key = identity_key(candidate)
        if key is NO_KEY:
            return None
        return self.repo.get_transaction_by_identity(
            user_id, key.source, key.source_reference
        )

    # ── Step 2: Similarity ────────────────────────────────

    def _comparable(self, candidate, existing: Transaction) -> bool:
        pair = {candidate.source, existing.source}
        crosses = bool(pair & set(self.platform_sources)) and bool(
            pair & set(self.bank_sources)
        )
        return not crosses

    def best_match(
        self, candidate, user_id: str
    ) -> tuple[Transaction | None, float]:
        """Highest-scoring neighbour on the same user+account, and its score.

        Ties go to the earliest neighbour (by date, then insertion order).
        """
        date_from, date_to = window_bounds(
            candidate.execution_date, self.settings.window_days
        )
        neighbours = self.repo.get_transactions_in_window(
            user_id, candidate.account_id, date_from, date_to
        )
        best: Transaction | None = None
        best_score = 0.0
        for existing in neighbours:
            if not self._comparable(candidate, existing):
                continue
            score = similarity(candidate, existing, self.settings)
            if score > best_score:
                best, best_score = existing, score
        return best, best_score

    def is_platform(self, candidate) -> bool:
        return candidate.source in self.platform_sources

    # ── Full classification ───────────────────────────────

    def classify(self, candidate, user_id: str | None = None) -> ClassifyResult:
        """Decide the fate of one validated candidate record."""
        user_id = user_id or candidate.user_id

        existing = self.check_identity(candidate, user_id)
        if existing is not None:
            return ClassifyResult(
                status=EXACT_DUPLICATE, tier=TIER_IDENTITY,
                existing=existing, score=100.0,
            )

        best, score = self.best_match(candidate, user_id)
        if best is not None:
            outcome = verdict(score, self.settings)
            if outcome == VERDICT_DUPLICATE and self.similarity_auto_reject:
                return ClassifyResult(
                    status=EXACT_DUPLICATE, tier=TIER_SIMILARITY,
                    existing=best, score=score,
                )
            if outcome in (VERDICT_DUPLICATE, VERDICT_REVIEW):
                logger.debug(
                    "Probable duplicate of %s (score %.2f) for %s/%s",
                    best.id, score, candidate.source, candidate.source_reference,
                )
                return ClassifyResult(
                    status=PROBABLE_DUPLICATE, tier=TIER_SIMILARITY,
                    existing=best, score=score,
                )

        if self.is_platform(candidate):
            return ClassifyResult(status=CROSS_SOURCE_MATCH)

        return ClassifyResult(status=NEW)
