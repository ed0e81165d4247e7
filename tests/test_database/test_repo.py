"""Tests for Repository CRUD operations."""

import sqlite3
from pathlib import Path

import pytest

from src.database.models import (
    NOT_RECONCILED,
    RECONCILED_AS_PRIMARY,
    RECONCILED_AS_SECONDARY,
    ImportRun,
    PendingDuplicate,
    PreventedDuplicate,
    Transaction,
)
from src.database.repository import (
    ConflictError,
    DuplicateImportError,
    Repository,
    StorageError,
    storage_errors,
)

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


def _make_txn(**overrides) -> Transaction:
    defaults = dict(
        user_id="u1",
        account_id="checking",
        source="bank-feed",
        source_reference="TX1",
        amount_cents=-4500,
        currency="EUR",
        execution_date="2025-01-10",
        description="DEBIT CARD PURCHASE",
    )
    defaults.update(overrides)
    return Transaction(**defaults)


def _make_pending(**overrides) -> PendingDuplicate:
    defaults = dict(
        user_id="u1",
        source="bank-feed",
        source_reference="TX9",
        new_transaction_data={"amount": "-45.00", "description": "COFFEE"},
        similarity_score=72.5,
    )
    defaults.update(overrides)
    return PendingDuplicate(**defaults)


# ── Import runs ────────────────────────────────────────────


class TestImportRunCrud:
    def test_insert_and_retrieve_by_hash(self, repo):
        repo.insert_import_run(ImportRun(file_name="batch.json", file_hash="sha_abc"))
        found = repo.get_import_run_by_hash("sha_abc")
        assert found is not None
        assert found.file_name == "batch.json"
        assert found.status == "running"

    def test_returns_none_for_unknown_hash(self, repo):
        assert repo.get_import_run_by_hash("nonexistent") is None

    def test_duplicate_hash_raises(self, repo):
        first = repo.insert_import_run(ImportRun(file_hash="sha_abc"))
        with pytest.raises(DuplicateImportError) as exc:
            repo.insert_import_run(ImportRun(file_hash="sha_abc"))
        assert exc.value.existing_run_id == first.id

    def test_null_hashes_do_not_collide(self, repo):
        repo.insert_import_run(ImportRun())
        repo.insert_import_run(ImportRun())
        assert len(repo.list_import_runs()) == 2

    def test_update_counters(self, repo):
        run = repo.insert_import_run(ImportRun(user_id="u1"))
        repo.update_import_run(
            run.id, "partial", accepted=9, error_count=1,
            error_message="Non-numeric amount", completed_at="2025-01-10T10:00:00",
        )
        found = repo.get_import_run(run.id)
        assert found.status == "partial"
        assert found.accepted == 9
        assert found.error_count == 1
        assert found.completed_at == "2025-01-10T10:00:00"

    def test_update_rejects_unknown_column(self, repo):
        run = repo.insert_import_run(ImportRun())
        with pytest.raises(ValueError, match="Unknown columns"):
            repo.update_import_run(run.id, "completed", bogus=1)

    def test_list_filters_by_user(self, repo):
        repo.insert_import_run(ImportRun(user_id="u1"))
        repo.insert_import_run(ImportRun(user_id="u2"))
        assert [r.user_id for r in repo.list_import_runs(user_id="u2")] == ["u2"]


# ── Transactions ───────────────────────────────────────────


class TestTransactionCrud:
    def test_insert_and_get(self, repo):
        txn = repo.insert_transaction(_make_txn())
        found = repo.get_transaction(txn.id)
        assert found is not None
        assert found.amount_cents == -4500
        assert str(found.amount) == "-45.00"
        assert found.reconciliation_status == NOT_RECONCILED

    def test_get_missing_returns_none(self, repo):
        assert repo.get_transaction("nope") is None

    def test_get_by_identity(self, repo):
        txn = repo.insert_transaction(_make_txn())
        found = repo.get_transaction_by_identity("u1", "bank-feed", "TX1")
        assert found.id == txn.id

    def test_identity_is_scoped_by_user(self, repo):
        repo.insert_transaction(_make_txn())
        assert repo.get_transaction_by_identity("u2", "bank-feed", "TX1") is None

    def test_duplicate_identity_raises_conflict(self, repo):
        repo.insert_transaction(_make_txn())
        with pytest.raises(ConflictError) as exc:
            repo.insert_transaction(_make_txn())
        assert exc.value.key == ("u1", "bank-feed", "TX1")
        count = repo.conn.execute("SELECT COUNT(*) FROM transactions").fetchone()[0]
        assert count == 1

    def test_conflict_leaves_connection_usable(self, repo):
        repo.insert_transaction(_make_txn())
        with pytest.raises(ConflictError):
            repo.insert_transaction(_make_txn())
        with repo.atomic():
            repo.insert_transaction(_make_txn(source_reference="TX2"))
        assert repo.get_transaction_by_identity("u1", "bank-feed", "TX2") is not None

    def test_same_reference_different_source_allowed(self, repo):
        repo.insert_transaction(_make_txn())
        repo.insert_transaction(_make_txn(source="card-feed"))

    def test_null_references_never_collide(self, repo):
        repo.insert_transaction(_make_txn(source="manual", source_reference=None))
        repo.insert_transaction(_make_txn(source="manual", source_reference=None))
        assert len(repo.get_transactions_for_user("u1")) == 2

    def test_unknown_source_rejected_by_schema(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_transaction(_make_txn(source="carrier-pigeon"))

    def test_window_query_is_bounded(self, repo):
        for i, day in enumerate(["2025-01-06", "2025-01-07", "2025-01-10", "2025-01-13", "2025-01-14"]):
            repo.insert_transaction(_make_txn(source_reference=f"TX{i}", execution_date=day))
        found = repo.get_transactions_in_window("u1", "checking", "2025-01-07", "2025-01-13")
        assert [t.execution_date for t in found] == ["2025-01-07", "2025-01-10", "2025-01-13"]

    def test_window_query_scoped_by_account(self, repo):
        repo.insert_transaction(_make_txn(account_id="savings"))
        assert repo.get_transactions_in_window("u1", "checking", "2025-01-01", "2025-01-31") == []

    def test_user_ids(self, repo):
        repo.insert_transaction(_make_txn(user_id="u2"))
        repo.insert_pending(_make_pending(user_id="u3"))
        repo.insert_transaction(_make_txn())
        assert repo.get_user_ids() == ["u1", "u2", "u3"]


class TestCrossSourceQueries:
    def test_candidates_match_absolute_amount(self, repo):
        repo.insert_transaction(_make_txn(amount_cents=-4500))
        found = repo.find_cross_source_candidates(
            "u1", ["bank-feed", "card-feed"], 4500, "EUR", "2025-01-07", "2025-01-13",
        )
        assert len(found) == 1

    def test_candidates_exclude_other_currency(self, repo):
        repo.insert_transaction(_make_txn(currency="USD"))
        found = repo.find_cross_source_candidates(
            "u1", ["bank-feed"], 4500, "EUR", "2025-01-07", "2025-01-13",
        )
        assert found == []

    def test_candidates_exclude_platform_sources(self, repo):
        repo.insert_transaction(_make_txn(source="payment-platform"))
        found = repo.find_cross_source_candidates(
            "u1", ["bank-feed", "card-feed"], 4500, "EUR", "2025-01-07", "2025-01-13",
        )
        assert found == []

    def test_candidates_empty_source_list(self, repo):
        repo.insert_transaction(_make_txn())
        assert repo.find_cross_source_candidates(
            "u1", [], 4500, "EUR", "2025-01-07", "2025-01-13",
        ) == []

    def test_unreconciled_keyset_pagination(self, repo):
        ids = sorted(
            repo.insert_transaction(
                _make_txn(source="payment-platform", source_reference=f"PP{i}")
            ).id
            for i in range(5)
        )
        first = repo.list_unreconciled_by_source("u1", ["payment-platform"], limit=2)
        assert [t.id for t in first] == ids[:2]
        rest = repo.list_unreconciled_by_source(
            "u1", ["payment-platform"], after_id=first[-1].id, limit=10,
        )
        assert [t.id for t in rest] == ids[2:]


class TestLinkPair:
    def test_links_both_sides(self, repo):
        bank = repo.insert_transaction(_make_txn(merchant_name="CARD 1234"))
        platform = repo.insert_transaction(
            _make_txn(source="payment-platform", source_reference="PP1", description="Coffee Shop"),
        )
        repo.link_pair(
            bank.id, platform.id, enhanced_merchant_name="Coffee Shop",
            enriched_description="DEBIT CARD PURCHASE - Coffee Shop",
        )
        primary = repo.get_transaction(bank.id)
        secondary = repo.get_transaction(platform.id)
        assert primary.reconciliation_status == RECONCILED_AS_PRIMARY
        assert secondary.reconciliation_status == RECONCILED_AS_SECONDARY
        assert primary.reconciled_with_transaction_id == platform.id
        assert secondary.reconciled_with_transaction_id == bank.id
        assert primary.enhanced_merchant_name == "Coffee Shop"
        assert primary.original_merchant_name == "CARD 1234"
        assert primary.merchant_name == "CARD 1234"
        assert primary.description == "DEBIT CARD PURCHASE"

    def test_second_link_conflicts_and_rolls_back(self, repo):
        bank = repo.insert_transaction(_make_txn())
        p1 = repo.insert_transaction(_make_txn(source="payment-platform", source_reference="PP1"))
        p2 = repo.insert_transaction(_make_txn(source="payment-platform", source_reference="PP2"))
        repo.link_pair(bank.id, p1.id)
        with pytest.raises(ConflictError):
            repo.link_pair(bank.id, p2.id)
        assert repo.get_transaction(p2.id).reconciliation_status == NOT_RECONCILED
        assert repo.get_transaction(bank.id).reconciled_with_transaction_id == p1.id

    def test_secondary_already_linked_rolls_back_primary(self, repo):
        b1 = repo.insert_transaction(_make_txn())
        b2 = repo.insert_transaction(_make_txn(source_reference="TX2"))
        platform = repo.insert_transaction(_make_txn(source="payment-platform", source_reference="PP1"))
        repo.link_pair(b1.id, platform.id)
        with pytest.raises(ConflictError):
            repo.link_pair(b2.id, platform.id)
        assert repo.get_transaction(b2.id).reconciliation_status == NOT_RECONCILED

    def test_schema_rejects_half_link(self, repo):
        txn = repo.insert_transaction(_make_txn())
        with pytest.raises(sqlite3.IntegrityError):
            repo.conn.execute(
                "UPDATE transactions SET reconciliation_status = ? WHERE id = ?",
                (RECONCILED_AS_PRIMARY, txn.id),
            )

    def test_reconciliation_note_only_on_unreconciled(self, repo):
        bank = repo.insert_transaction(_make_txn())
        platform = repo.insert_transaction(_make_txn(source="payment-platform", source_reference="PP1"))
        repo.set_reconciliation_note(platform.id, "ambiguous")
        assert repo.get_transaction(platform.id).reconciliation_note == "ambiguous"
        repo.link_pair(bank.id, platform.id)
        assert repo.get_transaction(platform.id).reconciliation_note is None
        repo.set_reconciliation_note(platform.id, "no-bank-match")
        assert repo.get_transaction(platform.id).reconciliation_note is None


# ── Pending duplicates ────────────────────────────────────


class TestPendingCrud:
    def test_insert_and_get_round_trips_json(self, repo):
        pending = repo.insert_pending(_make_pending())
        found = repo.get_pending(pending.id)
        assert found.new_transaction_data == {"amount": "-45.00", "description": "COFFEE"}
        assert found.resolved is False
        assert found.similarity_score == 72.5

    def test_second_unresolved_for_same_identity_conflicts(self, repo):
        repo.insert_pending(_make_pending())
        with pytest.raises(ConflictError):
            repo.insert_pending(_make_pending())

    def test_resolved_entry_does_not_block_new_one(self, repo):
        first = repo.insert_pending(_make_pending())
        assert repo.mark_pending_resolved(first.id, "rejected")
        repo.insert_pending(_make_pending())
        assert len(repo.list_pending("u1", resolved=None)) == 2

    def test_mark_resolved_is_one_way(self, repo):
        pending = repo.insert_pending(_make_pending())
        assert repo.mark_pending_resolved(pending.id, "swept", "note") is True
        assert repo.mark_pending_resolved(pending.id, "accepted") is False
        found = repo.get_pending(pending.id)
        assert found.resolution == "swept"
        assert found.resolved_at is not None

    def test_list_pending_filters(self, repo):
        a = repo.insert_pending(_make_pending(source_reference="A"))
        repo.insert_pending(_make_pending(source_reference="B"))
        repo.mark_pending_resolved(a.id, "rejected")
        assert [p.source_reference for p in repo.list_pending("u1")] == ["B"]
        assert [p.source_reference for p in repo.list_pending("u1", resolved=True)] == ["A"]

    def test_sweepable_joins_on_identity(self, repo):
        pending = repo.insert_pending(_make_pending(source_reference="TX1"))
        repo.insert_pending(_make_pending(source_reference="OTHER"))
        txn = repo.insert_transaction(_make_txn())
        rows = repo.find_sweepable_pending("u1", limit=10)
        assert [(p.id, tid) for p, tid in rows] == [(pending.id, txn.id)]

    def test_existing_reference_nulled_on_delete(self, repo):
        txn = repo.insert_transaction(_make_txn())
        pending = repo.insert_pending(_make_pending(existing_transaction_id=txn.id))
        repo.conn.execute("DELETE FROM transactions WHERE id = ?", (txn.id,))
        assert repo.get_pending(pending.id).existing_transaction_id is None


# ── Prevented duplicates ──────────────────────────────────


class TestPreventedCrud:
    def test_insert_list_count(self, repo):
        repo.insert_prevented(PreventedDuplicate(
            user_id="u1", blocked_transaction_data={"amount": "-45.00"},
            source="bank-feed", source_reference="TX1",
            similarity_score=100.0, reason="exact identity match - retroactive",
        ))
        assert repo.count_prevented("u1") == 1
        assert repo.count_prevented("u2") == 0
        found = repo.list_prevented("u1")[0]
        assert found.blocked_transaction_data == {"amount": "-45.00"}

    def test_score_out_of_range_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_prevented(PreventedDuplicate(
                user_id="u1", blocked_transaction_data={}, source="bank-feed",
                similarity_score=101.0, reason="x",
            ))

    def test_no_update_or_delete_api(self):
        names = [n for n in dir(Repository) if "prevented" in n]
        assert not any(n.startswith(("update", "delete")) for n in names)


# ── Atomic units ──────────────────────────────────────────


class TestAtomic:
    def test_commits_on_success(self, repo):
        with repo.atomic():
            repo.insert_transaction(_make_txn())
            repo.insert_transaction(_make_txn(source_reference="TX2"))
        assert len(repo.get_transactions_for_user("u1")) == 2

    def test_rolls_back_everything_on_error(self, repo):
        with pytest.raises(RuntimeError):
            with repo.atomic():
                repo.insert_transaction(_make_txn())
                raise RuntimeError("boom")
        assert repo.get_transactions_for_user("u1") == []

    def test_nested_joins_outer(self, repo):
        with pytest.raises(RuntimeError):
            with repo.atomic():
                with repo.atomic():
                    repo.insert_transaction(_make_txn())
                raise RuntimeError("boom")
        assert repo.get_transactions_for_user("u1") == []


class TestStorageErrors:
    def test_operational_error_becomes_storage_error(self):
        with pytest.raises(StorageError):
            with storage_errors():
                raise sqlite3.OperationalError("database is locked")

    def test_integrity_error_passes_through(self):
        with pytest.raises(sqlite3.IntegrityError):
            with storage_errors():
                raise sqlite3.IntegrityError("UNIQUE constraint failed")

    def test_unopenable_database(self, tmp_path):
        r = Repository(str(tmp_path / "missing_dir" / "ledger.db"))
        with pytest.raises(StorageError):
            r.conn
