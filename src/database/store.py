"""Reconciliation store: canonical ledger, review queue, audit trail.

Wraps Repository with the write rules for the three ledger entities:
committing new transactions, parking probable duplicates, appending
prevented-duplicate audit rows, sweeping the review queue, and human
adjudication of pending entries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from src.database.fingerprint import NO_KEY, identity_key
from src.database.models import PendingDuplicate, PreventedDuplicate, Transaction
from src.database.repository import ConflictError, Repository, storage_errors
from src.parsers.base import FeedRecord, normalize_description

logger = logging.getLogger(__name__)

SWEEP_REASON = "exact identity match - retroactive"
DECISION_ACCEPT = "accept"
DECISION_REJECT = "reject"


class PendingNotFoundError(Exception):
    """Raised when adjudicating a pending duplicate that does not exist."""

    def __init__(self, pending_id: str):
        self.pending_id = pending_id
        super().__init__(f"Pending duplicate not found: {pending_id}")


class PendingResolvedError(Exception):
    """Raised when adjudicating a pending duplicate that is already resolved."""

    def __init__(self, pending_id: str, resolution: str | None = None):
        self.pending_id = pending_id
        self.resolution = resolution
        super().__init__(
            f"Pending duplicate {pending_id} is already resolved ({resolution})"
        )


@dataclass
class SweepReport:
    resolved_count: int = 0
    prevented_count: int = 0


@dataclass
class ResolveResult:
    """Outcome of adjudicating one pending duplicate."""
    pending: PendingDuplicate
    transaction: Transaction | None = None  # committed (or already present) on accept
    reconciled: int = 0  # cross-source links made after accepting


def _serialize_payload(payload) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    return json.dumps(payload, default=str)


class ReconciliationStore:
    """Transactional writes for the ledger, review queue and audit trail."""

    def __init__(self, repo: Repository, sweep_chunk_size: int = 200, reconciler=None):
        if sweep_chunk_size < 1:
            raise ValueError(f"sweep_chunk_size must be >= 1, got {sweep_chunk_size}")
        self.repo = repo
        self.sweep_chunk_size = sweep_chunk_size
        # Optional CrossSourceReconciler, run after a review acceptance
        self.reconciler = reconciler

    # ── Canonical ledger ──────────────────────────────────

    def commit_new(
        self, candidate: FeedRecord, import_run_id: str | None = None
    ) -> Transaction:
        """Insert the canonical record for a candidate.

        Raises:
            ConflictError: If a concurrent writer already committed the same
                identity key. Callers re-classify instead of retrying.
        """
        key = identity_key(candidate)
        txn = Transaction(
            user_id=candidate.user_id,
            account_id=candidate.account_id,
            source=candidate.source,
            source_reference=key.source_reference if key is not NO_KEY else None,
            amount_cents=candidate.amount_cents,
            currency=candidate.currency,
            exponent=candidate.exponent,
            execution_date=candidate.execution_date,
            description=candidate.description,
            normalized_description=normalize_description(candidate.description),
            merchant_name=candidate.merchant_name,
            category_hint=candidate.category_hint,
            raw_source_data=_serialize_payload(candidate.raw_payload),
            import_run_id=import_run_id,
        )
        with storage_errors():
            return self.repo.insert_transaction(txn)

    # ── Review queue ──────────────────────────────────────

    def park_pending(
        self,
        candidate: FeedRecord,
        existing_id: str | None,
        score: float | None,
        existing_snapshot: dict | None = None,
    ) -> tuple[PendingDuplicate, bool]:
        """Queue a probable duplicate for review.

        Returns (entry, created). Re-delivery of a candidate that is already
        waiting in the queue returns the existing entry with created=False.
        """
        key = identity_key(candidate)
        with storage_errors():
            if key is not NO_KEY:
                existing = self.repo.get_unresolved_pending_by_identity(*key)
                if existing is not None:
                    return existing, False

            if existing_snapshot is None and existing_id is not None:
                existing_txn = self.repo.get_transaction(existing_id)
                if existing_txn is not None:
                    existing_snapshot = existing_txn.snapshot()

            pending = PendingDuplicate(
                user_id=candidate.user_id,
                source=candidate.source,
                source_reference=key.source_reference if key is not NO_KEY else None,
                new_transaction_data=candidate.to_dict(),
                existing_transaction_id=existing_id,
                existing_transaction_data=existing_snapshot,
                similarity_score=score,
            )
            try:
                return self.repo.insert_pending(pending), True
            except ConflictError:
                # Lost the race to another batch parking the same candidate
                existing = self.repo.get_unresolved_pending_by_identity(*key)
                if existing is None:
                    raise
                return existing, False

    def list_pending(self, user_id: str, resolved: bool | None = False) -> list[PendingDuplicate]:
        return self.repo.list_pending(user_id, resolved=resolved)

    # ── Audit trail ───────────────────────────────────────

    def record_prevented(
        self,
        user_id: str,
        existing_id: str | None,
        blocked_data: dict,
        score: float,
        reason: str,
        source: str,
        source_reference: str | None = None,
    ) -> PreventedDuplicate:
        """Append an audit row for a blocked duplicate.

        A reference to a transaction that no longer exists is stored as null
        with the reason annotated, so the audit write itself never fails
        because of it.
        """
        score = max(0.0, min(100.0, float(score)))
        with storage_errors():
            if existing_id is not None and self.repo.get_transaction(existing_id) is None:
                reason = f"{reason} (referenced transaction {existing_id} no longer exists)"
                existing_id = None
            prevented = PreventedDuplicate(
                user_id=user_id,
                existing_transaction_id=existing_id,
                blocked_transaction_data=blocked_data,
                source=source,
                source_reference=source_reference,
                similarity_score=score,
                reason=reason,
            )
            return self.repo.insert_prevented(prevented)

    def list_prevented(self, user_id: str, limit: int | None = None) -> list[PreventedDuplicate]:
        return self.repo.list_prevented(user_id, limit=limit)

    def count_prevented(self, user_id: str) -> int:
        return self.repo.count_prevented(user_id)

    # ── Sweep ─────────────────────────────────────────────

    def sweep_pending(self, user_id: str) -> SweepReport:
        """Resolve pending entries whose identity key is now in the ledger.

        Work is committed one chunk at a time. An interruption loses at most
        the chunk in flight, and re-running picks up where it stopped.
        """
        report = SweepReport()
        with storage_errors():
            while True:
                with self.repo.atomic():
                    rows = self.repo.find_sweepable_pending(user_id, self.sweep_chunk_size)
                    if not rows:
                        break
                    for pending, txn_id in rows:
                        if not self.repo.mark_pending_resolved(
                            pending.id, "swept", f"matched transaction {txn_id}"
                        ):
                            continue
                        report.resolved_count += 1
                        self.repo.insert_prevented(PreventedDuplicate(
                            user_id=pending.user_id,
                            existing_transaction_id=txn_id,
                            blocked_transaction_data=pending.new_transaction_data,
                            source=pending.source,
                            source_reference=pending.source_reference,
                            similarity_score=100.0,
                            reason=SWEEP_REASON,
                        ))
                        report.prevented_count += 1
        if report.resolved_count:
            logger.info(
                "Swept %d pending duplicates for user %s",
                report.resolved_count, user_id,
            )
        return report

    # ── Adjudication ──────────────────────────────────────

    def resolve_pending(
        self, pending_id: str, decision: str, note: str | None = None
    ) -> ResolveResult:
        """Apply a human decision to a pending duplicate.

        accept: the candidate is committed as a new transaction. If its
            identity key was committed in the meantime, the entry is resolved
            and an audit row points at the existing transaction instead.
            With a reconciler attached, the user's platform transactions
            are reconciled once the decision is committed.
        reject: the entry is resolved and an audit row is written; nothing
            is committed.

        Raises:
            ValueError: If decision is not "accept" or "reject".
            PendingNotFoundError: If pending_id does not exist.
            PendingResolvedError: If the entry was already resolved.
        """
        if decision not in (DECISION_ACCEPT, DECISION_REJECT):
            raise ValueError(f"Unknown decision: {decision!r} (expected accept or reject)")

        with storage_errors(), self.repo.atomic():
            pending = self.repo.get_pending(pending_id)
            if pending is None:
                raise PendingNotFoundError(pending_id)
            if pending.resolved:
                raise PendingResolvedError(pending_id, pending.resolution)

            txn: Transaction | None = None
            committed = False
            if decision == DECISION_ACCEPT:
                candidate = FeedRecord.from_dict(pending.new_transaction_data)
                try:
                    txn = self.commit_new(candidate)
                    committed = True
                except ConflictError:
                    txn = self.repo.get_transaction_by_identity(
                        pending.user_id, pending.source, pending.source_reference
                    )
                    self.record_prevented(
                        pending.user_id,
                        txn.id if txn else None,
                        pending.new_transaction_data,
                        100.0,
                        "exact identity match - already committed on accept",
                        pending.source,
                        pending.source_reference,
                    )
                resolution = "accepted"
            else:
                reason = "rejected in review"
                if note:
                    reason = f"{reason}: {note}"
                self.record_prevented(
                    pending.user_id,
                    pending.existing_transaction_id,
                    pending.new_transaction_data,
                    pending.similarity_score or 0.0,
                    reason,
                    pending.source,
                    pending.source_reference,
                )
                resolution = "rejected"

            if not self.repo.mark_pending_resolved(pending_id, resolution, note):
                raise PendingResolvedError(pending_id)
            logger.info("Pending duplicate %s %s", pending_id, resolution)
            result = ResolveResult(pending=self.repo.get_pending(pending_id), transaction=txn)

        # Outside the adjudication transaction: each link is its own atomic unit
        if committed and self.reconciler is not None:
            report = self.reconciler.reconcile_all_for_user(pending.user_id)
            result.reconciled = report.reconciled_count
            if report.reconciled_count:
                with storage_errors():
                    result.transaction = self.repo.get_transaction(txn.id)
        return result
