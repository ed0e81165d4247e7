"""Tests for cross-table reporting queries."""

from decimal import Decimal
from pathlib import Path

import pytest

from src.database.models import ImportRun, PendingDuplicate, PreventedDuplicate, Transaction
from src.database.queries import (
    get_ambiguous_transactions,
    get_linked_pairs,
    get_status_counts,
    get_user_totals,
)
from src.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


def _txn(repo, **overrides) -> Transaction:
    defaults = dict(
        user_id="u1",
        account_id="checking",
        source="bank-feed",
        amount_cents=-4500,
        currency="EUR",
        execution_date="2025-01-10",
        description="DEBIT CARD PURCHASE",
    )
    defaults.update(overrides)
    return repo.insert_transaction(Transaction(**defaults))


@pytest.fixture
def linked(repo):
    """A bank debit linked with the platform record behind it."""
    bank = _txn(repo, source_reference="TX1")
    platform = _txn(
        repo, source="payment-platform", account_id="paypal",
        source_reference="PP1", execution_date="2025-01-12",
        description="Coffee Shop",
    )
    repo.link_pair(bank.id, platform.id, enriched_description="DEBIT CARD PURCHASE - Coffee Shop")
    return bank, platform


class TestStatusCounts:
    def test_empty_database(self, repo):
        counts = get_status_counts(repo.conn)
        assert counts["total_txns"] == 0
        assert counts["pending_review"] == 0
        assert counts["prevented"] == 0

    def test_counts_by_reconciliation_status(self, repo, linked):
        _txn(repo, source_reference="TX2", amount_cents=-1000)
        counts = get_status_counts(repo.conn)
        assert counts["total_txns"] == 3
        assert counts["primary"] == 1
        assert counts["secondary"] == 1
        assert counts["not_reconciled"] == 1

    def test_counts_queue_audit_and_imports(self, repo):
        repo.insert_import_run(ImportRun(user_id="u1"))
        repo.insert_pending(PendingDuplicate(
            user_id="u1", source="bank-feed", source_reference="TX9",
            new_transaction_data={},
        ))
        repo.insert_prevented(PreventedDuplicate(
            user_id="u1", blocked_transaction_data={}, source="bank-feed",
            similarity_score=100.0, reason="x",
        ))
        counts = get_status_counts(repo.conn, "u1")
        assert counts["pending_review"] == 1
        assert counts["prevented"] == 1
        assert counts["total_imports"] == 1

    def test_ambiguous_counted(self, repo):
        txn = _txn(repo, source="payment-platform", source_reference="PP1")
        repo.set_reconciliation_note(txn.id, "ambiguous")
        assert get_status_counts(repo.conn)["ambiguous"] == 1

    def test_scoped_to_user(self, repo):
        _txn(repo, source_reference="TX1")
        _txn(repo, user_id="u2", source_reference="TX1")
        assert get_status_counts(repo.conn, "u2")["total_txns"] == 1


class TestUserTotals:
    def test_secondary_excluded(self, repo, linked):
        totals = get_user_totals(repo.conn, "u1")
        assert len(totals) == 1
        eur = totals[0]
        assert eur["net_cents"] == -4500
        assert eur["net"] == Decimal("-45.00")
        assert eur["counted"] == 1
        assert eur["excluded"] == 1

    def test_inflow_and_outflow(self, repo):
        _txn(repo, source_reference="TX1", amount_cents=-4500)
        _txn(repo, source_reference="TX2", amount_cents=200000, description="SALARY")
        eur = get_user_totals(repo.conn, "u1")[0]
        assert eur["inflow"] == Decimal("2000.00")
        assert eur["outflow"] == Decimal("-45.00")
        assert eur["net"] == Decimal("1955.00")

    def test_grouped_by_currency(self, repo):
        _txn(repo, source_reference="TX1")
        _txn(repo, source_reference="TX2", currency="JPY", exponent=0, amount_cents=-500)
        totals = get_user_totals(repo.conn, "u1")
        assert [t["currency"] for t in totals] == ["EUR", "JPY"]
        assert totals[1]["net"] == Decimal("-500")

    def test_date_range(self, repo):
        _txn(repo, source_reference="TX1", execution_date="2025-01-10")
        _txn(repo, source_reference="TX2", execution_date="2025-02-10")
        totals = get_user_totals(repo.conn, "u1", "2025-02-01", "2025-02-28")
        assert totals[0]["counted"] == 1


class TestLinkReports:
    def test_linked_pairs_point_at_each_other(self, repo, linked):
        bank, platform = linked
        pairs = get_linked_pairs(repo.conn, "u1")
        assert len(pairs) == 1
        pair = pairs[0]
        assert pair["primary_id"] == bank.id
        assert pair["secondary_id"] == platform.id
        assert pair["primary_points_to"] == platform.id
        assert pair["secondary_points_to"] == bank.id
        assert pair["secondary_status"] == "reconciled_as_secondary"
        assert pair["enriched_description"] == "DEBIT CARD PURCHASE - Coffee Shop"

    def test_ambiguous_listing(self, repo):
        txn = _txn(repo, source="payment-platform", source_reference="PP1")
        _txn(repo, source="payment-platform", source_reference="PP2")
        repo.set_reconciliation_note(txn.id, "ambiguous")
        rows = get_ambiguous_transactions(repo.conn, "u1")
        assert [r["id"] for r in rows] == [txn.id]
