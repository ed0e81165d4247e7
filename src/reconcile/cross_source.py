"""Cross-source reconciliation: pair platform records with bank records.

A payment-platform record (e.g. a PayPal purchase) and the bank or card
debit that actually moved the money describe one payment. Linking them
marks the bank record as primary (counted, enriched with merchant detail)
and the platform record as secondary (kept for provenance, excluded from
totals).

Matching rule: same user, bank-level source, not yet reconciled, equal
absolute amount in minor units and same currency, execution date within
±window_days (inclusive). Exactly one candidate links; zero or several
leave the platform record unreconciled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from src.database.dedup import window_bounds
from src.database.models import (
    NOT_RECONCILED,
    RECONCILED_AS_PRIMARY,
    Transaction,
)
from src.database.repository import ConflictError, Repository, storage_errors

logger = logging.getLogger(__name__)

LINKED = "linked"
UNRECONCILED = "unreconciled"

REASON_NO_BANK_MATCH = "no-bank-match"
REASON_AMBIGUOUS = "ambiguous"
REASON_CONFLICT = "conflict"
REASON_NOT_PLATFORM = "not-a-platform-transaction"


class AmbiguousMatchError(Exception):
    """Raised when more than one bank record could be the platform record's twin."""

    def __init__(self, platform_id: str, candidate_ids: list[str]):
        self.platform_id = platform_id
        self.candidate_ids = candidate_ids
        super().__init__(
            f"Transaction {platform_id} matches {len(candidate_ids)} bank records:"
            f" {', '.join(candidate_ids)}"
        )


@dataclass
class ReconcileResult:
    status: str  # "linked", "unreconciled"
    primary_id: str | None = None
    secondary_id: str | None = None
    reason: str | None = None  # set when unreconciled

    @property
    def linked(self) -> bool:
        return self.status == LINKED


@dataclass
class ReconcileReport:
    reconciled_count: int = 0
    unreconciled_count: int = 0
    unreconciled_transactions: list[Transaction] = field(default_factory=list)


def build_enrichment(bank: Transaction, platform: Transaction) -> dict:
    """Merchant-level detail copied from the platform record onto the bank record.

    The bank record's own description and merchant_name are left alone;
    the repository preserves the original merchant separately.
    """
    merchant = platform.merchant_name or platform.description or None
    enriched = bank.description
    if merchant and merchant.lower() not in (bank.description or "").lower():
        enriched = f"{bank.description} - {merchant}" if bank.description else merchant
    return {
        "enhanced_merchant_name": merchant,
        "enhanced_category_hint": platform.category_hint,
        "enriched_description": enriched,
    }


def existing_link(txn: Transaction) -> ReconcileResult:
    """Describe the link an already-reconciled transaction belongs to."""
    if txn.reconciliation_status == RECONCILED_AS_PRIMARY:
        return ReconcileResult(
            status=LINKED, primary_id=txn.id,
            secondary_id=txn.reconciled_with_transaction_id,
        )
    return ReconcileResult(
        status=LINKED, primary_id=txn.reconciled_with_transaction_id,
        secondary_id=txn.id,
    )


class CrossSourceReconciler:
    """Link payment-platform transactions to the bank records behind them."""

    WINDOW_DAYS: int = 3

    def __init__(
        self,
        repo: Repository,
        bank_sources: tuple[str, ...] = ("bank-feed", "card-feed"),
        platform_sources: tuple[str, ...] = ("payment-platform",),
        window_days: int | None = None,
        chunk_size: int = 200,
    ):
        self.repo = repo
        self.bank_sources = tuple(bank_sources)
        self.platform_sources = tuple(platform_sources)
        self.window_days = self.WINDOW_DAYS if window_days is None else window_days
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, repo: Repository, config) -> CrossSourceReconciler:
        return cls(
            repo,
            bank_sources=config.bank_sources,
            platform_sources=config.platform_sources,
            window_days=config.cross_source_window_days,
            chunk_size=config.reconcile_chunk_size,
        )

    def find_bank_match(self, platform_tx: Transaction, user_id: str) -> Transaction | None:
        """Return the single eligible bank record, or None if there is none.

        Raises:
            AmbiguousMatchError: If more than one bank record is eligible.
        """
        date_from, date_to = window_bounds(platform_tx.execution_date, self.window_days)
        candidates = self.repo.find_cross_source_candidates(
            user_id,
            self.bank_sources,
            abs(platform_tx.amount_cents),
            platform_tx.currency,
            date_from,
            date_to,
        )
        if len(candidates) > 1:
            raise AmbiguousMatchError(platform_tx.id, [c.id for c in candidates])
        return candidates[0] if candidates else None

    def _unreconciled(self, txn: Transaction, reason: str) -> ReconcileResult:
        if reason in (REASON_NO_BANK_MATCH, REASON_AMBIGUOUS):
            self.repo.set_reconciliation_note(txn.id, reason)
        return ReconcileResult(status=UNRECONCILED, reason=reason)

    def reconcile(self, platform_tx: Transaction, user_id: str | None = None) -> ReconcileResult:
        """Link one platform transaction to its bank record if unambiguous.

        Idempotent: an already-reconciled transaction returns its existing
        link without searching again. A write conflict (another worker
        linked one side first) re-reads state and retries the search once.
        """
        user_id = user_id or platform_tx.user_id
        with storage_errors():
            current = self.repo.get_transaction(platform_tx.id)
            if current is None or current.user_id != user_id:
                raise ValueError(
                    f"Transaction {platform_tx.id} not found for user {user_id}"
                )
            if current.reconciliation_status != NOT_RECONCILED:
                return existing_link(current)
            if current.source not in self.platform_sources:
                return ReconcileResult(status=UNRECONCILED, reason=REASON_NOT_PLATFORM)

            for _attempt in range(2):
                try:
                    bank = self.find_bank_match(current, user_id)
                except AmbiguousMatchError as e:
                    logger.info("Not linking: %s", e)
                    return self._unreconciled(current, REASON_AMBIGUOUS)
                if bank is None:
                    return self._unreconciled(current, REASON_NO_BANK_MATCH)

                try:
                    self.repo.link_pair(
                        bank.id, current.id, **build_enrichment(bank, current)
                    )
                except ConflictError as e:
                    logger.warning("Link conflict for %s: %s", current.id, e)
                    current = self.repo.get_transaction(current.id)
                    if current.reconciliation_status != NOT_RECONCILED:
                        return existing_link(current)
                    continue

                logger.info(
                    "Linked %s (primary, %s) with %s (secondary, %s)",
                    bank.id, bank.source, current.id, current.source,
                )
                return ReconcileResult(
                    status=LINKED, primary_id=bank.id, secondary_id=current.id,
                )

        return ReconcileResult(status=UNRECONCILED, reason=REASON_CONFLICT)

    def reconcile_all_for_user(self, user_id: str) -> ReconcileReport:
        """Reconcile every unreconciled platform transaction for a user.

        Walks the user's platform transactions in id order, chunk_size at a
        time. Each link is its own atomic unit, so re-running after an
        interruption continues safely.
        """
        report = ReconcileReport()
        after_id: str | None = None
        while True:
            with storage_errors():
                page = self.repo.list_unreconciled_by_source(
                    user_id, self.platform_sources, after_id=after_id,
                    limit=self.chunk_size,
                )
            if not page:
                break
            for txn in page:
                result = self.reconcile(txn, user_id)
                if result.linked:
                    report.reconciled_count += 1
                else:
                    report.unreconciled_count += 1
                    with storage_errors():
                        current = self.repo.get_transaction(txn.id)
                    report.unreconciled_transactions.append(current or txn)
            after_id = page[-1].id
        logger.info(
            "Reconciled %d, left %d unreconciled for user %s",
            report.reconciled_count, report.unreconciled_count, user_id,
        )
        return report
