"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).
Amounts are stored as signed integer minor units (amount_cents).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

SOURCE_MANUAL = "manual"
SOURCE_BANK_FEED = "bank-feed"
SOURCE_CARD_FEED = "card-feed"
SOURCE_PAYMENT_PLATFORM = "payment-platform"
VALID_SOURCES = frozenset({
    SOURCE_MANUAL, SOURCE_BANK_FEED, SOURCE_CARD_FEED, SOURCE_PAYMENT_PLATFORM,
})

NOT_RECONCILED = "not_reconciled"
RECONCILED_AS_PRIMARY = "reconciled_as_primary"
RECONCILED_AS_SECONDARY = "reconciled_as_secondary"


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Transaction:
    user_id: str
    account_id: str
    source: str
    amount_cents: int
    currency: str
    execution_date: str
    description: str
    id: str = field(default_factory=_new_id)
    source_reference: str | None = None
    normalized_description: str | None = None
    merchant_name: str | None = None
    category_hint: str | None = None
    reconciliation_status: str = NOT_RECONCILED
    reconciled_with_transaction_id: str | None = None
    reconciliation_note: str | None = None
    original_merchant_name: str | None = None
    enhanced_merchant_name: str | None = None
    enhanced_category_hint: str | None = None
    enriched_description: str | None = None
    raw_source_data: str | None = None
    import_run_id: str | None = None
    exponent: int = 2
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_cents).scaleb(-self.exponent)

    @property
    def is_counted(self) -> bool:
        """Secondary records are kept for provenance only."""
        return self.reconciliation_status != RECONCILED_AS_SECONDARY

    def snapshot(self) -> dict:
        """JSON-safe view used in pending/audit rows."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "source": self.source,
            "source_reference": self.source_reference,
            "amount": str(self.amount),
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "execution_date": self.execution_date,
            "description": self.description,
            "reconciliation_status": self.reconciliation_status,
        }


@dataclass
class PendingDuplicate:
    user_id: str
    source: str
    new_transaction_data: dict
    id: str = field(default_factory=_new_id)
    source_reference: str | None = None
    existing_transaction_id: str | None = None
    existing_transaction_data: dict | None = None
    similarity_score: float | None = None
    resolved: bool = False
    resolution: str | None = None  # swept, accepted, rejected
    resolution_note: str | None = None
    resolved_at: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class PreventedDuplicate:
    user_id: str
    blocked_transaction_data: dict
    source: str
    similarity_score: float
    reason: str
    id: str = field(default_factory=_new_id)
    existing_transaction_id: str | None = None
    source_reference: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class ImportRun:
    """Persisted per-batch ingestion report."""
    user_id: str | None = None
    account_id: str | None = None
    source: str | None = None
    id: str = field(default_factory=_new_id)
    sync_run_id: str | None = None
    file_name: str | None = None
    file_hash: str | None = None
    status: str = "running"  # running, completed, partial, failed, duplicate
    accepted: int = 0
    exact_duplicates: int = 0
    parked_for_review: int = 0
    cross_source_linked: int = 0
    error_count: int = 0
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    completed_at: str | None = None
