"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. Single-statement writes commit immediately;
multi-statement units of work run inside atomic().
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from .models import (
    NOT_RECONCILED,
    RECONCILED_AS_PRIMARY,
    RECONCILED_AS_SECONDARY,
    ImportRun,
    PendingDuplicate,
    PreventedDuplicate,
    Transaction,
)


class ConflictError(Exception):
    """Raised when a write loses a uniqueness race.

    Covers identity-key collisions on insert and concurrent link attempts
    on already-reconciled transactions. Always recoverable: the caller
    re-reads state (re-classifies) instead of retrying blindly.
    """

    def __init__(self, message: str, key: tuple | None = None):
        self.key = key
        super().__init__(message)


class StorageError(Exception):
    """Raised when the underlying database is unavailable or failing."""


class DuplicateImportError(Exception):
    """Raised when attempting to ingest a file with a hash that already exists."""

    def __init__(self, file_hash: str, existing_run_id: str | None = None):
        self.file_hash = file_hash
        self.existing_run_id = existing_run_id
        super().__init__(f"Import with file_hash '{file_hash}' already exists")


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate sqlite3 operational failures into StorageError.

    Integrity errors pass through untouched; the repository maps the
    expected ones to ConflictError and anything else is a bug.
    """
    try:
        yield
    except sqlite3.IntegrityError:
        raise
    except sqlite3.DatabaseError as e:
        raise StorageError(str(e)) from e


def _dumps(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def _loads(value: str | None):
    if value is None:
        return None
    return json.loads(value)


def _is_identity_violation(err: sqlite3.IntegrityError, table: str) -> bool:
    msg = str(err)
    return "UNIQUE constraint failed" in msg and f"{table}.source_reference" in msg


class Repository:
    def __init__(self, db_path: str = ":memory:", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            with storage_errors():
                self._conn = sqlite3.connect(
                    self.db_path, timeout=self.timeout, check_same_thread=False,
                )
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")
                self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._depth = 0

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run a block as one all-or-nothing database transaction.

        Nested calls join the outermost transaction. BEGIN IMMEDIATE takes
        the write lock up front so concurrent writers queue instead of
        failing mid-unit.
        """
        outermost = self._depth == 0
        if outermost:
            with storage_errors():
                self.conn.execute("BEGIN IMMEDIATE")
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if outermost:
                self.conn.rollback()
            raise
        self._depth -= 1
        if outermost:
            with storage_errors():
                self.conn.commit()

    def _commit(self):
        if self._depth == 0:
            self.conn.commit()

    def _rollback(self):
        # A failed statement outside atomic() leaves the implicit transaction open
        if self._depth == 0:
            self.conn.rollback()

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        # Ensure schema_version exists for first run
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(migrations_dir.glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Import runs ─────────────────────────────────────────

    def insert_import_run(self, run: ImportRun) -> ImportRun:
        """Insert an import run record.

        Raises:
            DuplicateImportError: If a file with the same hash was already
                ingested. This handles races where two watchers pick up the
                same file simultaneously.
        """
        try:
            self.conn.execute(
                "INSERT INTO import_runs (id, user_id, account_id, source,"
                " sync_run_id, file_name, file_hash, status, accepted,"
                " exact_duplicates, parked_for_review, cross_source_linked,"
                " error_count, error_message, created_at, completed_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (run.id, run.user_id, run.account_id, run.source,
                 run.sync_run_id, run.file_name, run.file_hash, run.status,
                 run.accepted, run.exact_duplicates, run.parked_for_review,
                 run.cross_source_linked, run.error_count, run.error_message,
                 run.created_at, run.completed_at),
            )
            self._commit()
            return run
        except sqlite3.IntegrityError as e:
            self._rollback()
            if run.file_hash and "import_runs.file_hash" in str(e):
                existing = self.get_import_run_by_hash(run.file_hash)
                raise DuplicateImportError(
                    run.file_hash,
                    existing.id if existing else None,
                ) from e
            raise

    def get_import_run(self, run_id: str) -> ImportRun | None:
        row = self.conn.execute(
            "SELECT * FROM import_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return self._row_to_import_run(row) if row else None

    def get_import_run_by_hash(self, file_hash: str) -> ImportRun | None:
        row = self.conn.execute(
            "SELECT * FROM import_runs WHERE file_hash = ?", (file_hash,)
        ).fetchone()
        return self._row_to_import_run(row) if row else None

    _IMPORT_RUN_UPDATE_COLS = (
        "user_id", "account_id", "source", "sync_run_id",
        "accepted", "exact_duplicates", "parked_for_review",
        "cross_source_linked", "error_count", "error_message", "completed_at",
    )

    def update_import_run(self, run_id: str, status: str, **kwargs):
        # Reject unknown column names to prevent silent bugs
        unknown = set(kwargs.keys()) - set(self._IMPORT_RUN_UPDATE_COLS)
        if unknown:
            raise ValueError(f"Unknown columns for update_import_run: {unknown}")

        sets = ["status = ?"]
        vals: list = [status]
        for col in self._IMPORT_RUN_UPDATE_COLS:
            if col in kwargs:
                sets.append(f"{col} = ?")
                vals.append(kwargs[col])
        vals.append(run_id)
        self.conn.execute(
            f"UPDATE import_runs SET {', '.join(sets)} WHERE id = ?", vals
        )
        self._commit()

    def list_import_runs(self, user_id: str | None = None, limit: int = 20) -> list[ImportRun]:
        sql = "SELECT * FROM import_runs"
        params: list = []
        if user_id:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_import_run(r) for r in rows]

    # ── Transactions ────────────────────────────────────────

    _TXN_COLUMNS = (
        "id", "user_id", "account_id", "source", "source_reference",
        "amount_cents", "currency", "exponent", "execution_date",
        "description", "normalized_description", "merchant_name",
        "category_hint", "reconciliation_status",
        "reconciled_with_transaction_id", "reconciliation_note",
        "original_merchant_name", "enhanced_merchant_name",
        "enhanced_category_hint", "enriched_description",
        "raw_source_data", "import_run_id", "created_at", "updated_at",
    )

    def insert_transaction(self, txn: Transaction) -> Transaction:
        """Insert a canonical transaction.

        Raises:
            ConflictError: If a transaction with the same identity key
                (user_id, source, source_reference) already exists.
        """
        cols = ", ".join(self._TXN_COLUMNS)
        ph = ",".join("?" * len(self._TXN_COLUMNS))
        try:
            self.conn.execute(
                f"INSERT INTO transactions ({cols}) VALUES ({ph})",
                tuple(getattr(txn, c) for c in self._TXN_COLUMNS),
            )
        except sqlite3.IntegrityError as e:
            self._rollback()
            if _is_identity_violation(e, "transactions"):
                key = (txn.user_id, txn.source, txn.source_reference)
                raise ConflictError(
                    f"Transaction with identity {key} already exists", key,
                ) from e
            raise
        self._commit()
        return txn

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transaction_by_identity(
        self, user_id: str, source: str, source_reference: str
    ) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE user_id = ? AND source = ? AND source_reference = ?",
            (user_id, source, source_reference),
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_in_window(
        self, user_id: str, account_id: str, date_from: str, date_to: str
    ) -> list[Transaction]:
        """Neighbours on the same user/account between two dates (inclusive)."""
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            " WHERE user_id = ? AND account_id = ?"
            "   AND execution_date BETWEEN ? AND ?"
            " ORDER BY execution_date, rowid",
            (user_id, account_id, date_from, date_to),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def find_cross_source_candidates(
        self,
        user_id: str,
        sources: Iterable[str],
        abs_amount_cents: int,
        currency: str,
        date_from: str,
        date_to: str,
    ) -> list[Transaction]:
        """Unreconciled bank-level transactions matching an absolute amount."""
        sources = list(sources)
        if not sources:
            return []
        ph = ",".join("?" * len(sources))
        rows = self.conn.execute(
            "SELECT * FROM transactions"
            f" WHERE user_id = ? AND source IN ({ph})"
            "   AND reconciliation_status = ?"
            "   AND ABS(amount_cents) = ? AND currency = ?"
            "   AND execution_date BETWEEN ? AND ?"
            " ORDER BY execution_date, rowid",
            (user_id, *sources, NOT_RECONCILED, abs_amount_cents, currency,
             date_from, date_to),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def list_unreconciled_by_source(
        self,
        user_id: str,
        sources: Iterable[str],
        after_id: str | None = None,
        limit: int = 200,
    ) -> list[Transaction]:
        """Keyset-paginated unreconciled transactions for the given sources."""
        sources = list(sources)
        if not sources:
            return []
        ph = ",".join("?" * len(sources))
        sql = (
            "SELECT * FROM transactions"
            f" WHERE user_id = ? AND source IN ({ph})"
            "   AND reconciliation_status = ?"
        )
        params: list = [user_id, *sources, NOT_RECONCILED]
        if after_id is not None:
            sql += " AND id > ?"
            params.append(after_id)
        sql += " ORDER BY id LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_for_user(
        self, user_id: str, date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if date_from:
            sql += " AND execution_date >= ?"
            params.append(date_from)
        if date_to:
            sql += " AND execution_date <= ?"
            params.append(date_to)
        sql += " ORDER BY execution_date, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def link_pair(
        self,
        primary_id: str,
        secondary_id: str,
        enhanced_merchant_name: str | None = None,
        enhanced_category_hint: str | None = None,
        enriched_description: str | None = None,
    ):
        """Mark primary/secondary with mutual back-references.

        Both updates are conditional on the row still being unreconciled;
        if either loses that race the whole unit is rolled back.

        Raises:
            ConflictError: If either side was reconciled concurrently.
        """
        if primary_id == secondary_id:
            raise ValueError(f"Cannot link transaction {primary_id} with itself")
        with self.atomic():
            self._mark_linked(
                primary_id, RECONCILED_AS_PRIMARY, secondary_id,
                "  original_merchant_name = COALESCE(original_merchant_name, merchant_name),"
                "  enhanced_merchant_name = ?,"
                "  enhanced_category_hint = ?,"
                "  enriched_description = ?,",
                (enhanced_merchant_name, enhanced_category_hint, enriched_description),
            )
            self._mark_linked(secondary_id, RECONCILED_AS_SECONDARY, primary_id)

    def _mark_linked(
        self, txn_id: str, status: str, partner_id: str,
        extra_sets: str = "", extra_params: tuple = (),
    ):
        try:
            cur = self.conn.execute(
                "UPDATE transactions SET"
                "  reconciliation_status = ?,"
                "  reconciled_with_transaction_id = ?,"
                "  reconciliation_note = NULL,"
                f"{extra_sets}"
                "  updated_at = CURRENT_TIMESTAMP"
                " WHERE id = ? AND reconciliation_status = ?",
                (status, partner_id, *extra_params, txn_id, NOT_RECONCILED),
            )
        except sqlite3.IntegrityError as e:
            # Partner already paired with someone else
            if "reconciled_with_transaction_id" in str(e):
                raise ConflictError(f"Transaction {partner_id} is already linked") from e
            raise
        if cur.rowcount != 1:
            raise ConflictError(f"Transaction {txn_id} is no longer unreconciled")

    def set_reconciliation_note(self, txn_id: str, note: str | None):
        self.conn.execute(
            "UPDATE transactions SET reconciliation_note = ?,"
            " updated_at = CURRENT_TIMESTAMP"
            " WHERE id = ? AND reconciliation_status = ?",
            (note, txn_id, NOT_RECONCILED),
        )
        self._commit()

    def get_user_ids(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT user_id FROM transactions"
            " UNION SELECT user_id FROM pending_duplicates"
            " ORDER BY user_id"
        ).fetchall()
        return [r[0] for r in rows]

    # ── Pending duplicates ──────────────────────────────────

    def insert_pending(self, pending: PendingDuplicate) -> PendingDuplicate:
        """Insert a review-queue entry.

        Raises:
            ConflictError: If an unresolved entry with the same identity
                key already exists.
        """
        try:
            self.conn.execute(
                "INSERT INTO pending_duplicates"
                " (id, user_id, source, source_reference, new_transaction_data,"
                "  existing_transaction_id, existing_transaction_data,"
                "  similarity_score, resolved, resolution, resolution_note,"
                "  resolved_at, created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (pending.id, pending.user_id, pending.source,
                 pending.source_reference, _dumps(pending.new_transaction_data),
                 pending.existing_transaction_id,
                 _dumps(pending.existing_transaction_data),
                 pending.similarity_score, int(pending.resolved),
                 pending.resolution, pending.resolution_note,
                 pending.resolved_at, pending.created_at),
            )
        except sqlite3.IntegrityError as e:
            self._rollback()
            if _is_identity_violation(e, "pending_duplicates"):
                key = (pending.user_id, pending.source, pending.source_reference)
                raise ConflictError(
                    f"Unresolved pending duplicate for {key} already exists", key,
                ) from e
            raise
        self._commit()
        return pending

    def get_pending(self, pending_id: str) -> PendingDuplicate | None:
        row = self.conn.execute(
            "SELECT * FROM pending_duplicates WHERE id = ?", (pending_id,)
        ).fetchone()
        return self._row_to_pending(row) if row else None

    def get_unresolved_pending_by_identity(
        self, user_id: str, source: str, source_reference: str
    ) -> PendingDuplicate | None:
        row = self.conn.execute(
            "SELECT * FROM pending_duplicates"
            " WHERE user_id = ? AND source = ? AND source_reference = ?"
            "   AND resolved = 0",
            (user_id, source, source_reference),
        ).fetchone()
        return self._row_to_pending(row) if row else None

    def list_pending(
        self, user_id: str, resolved: bool | None = False, limit: int | None = None,
    ) -> list[PendingDuplicate]:
        sql = "SELECT * FROM pending_duplicates WHERE user_id = ?"
        params: list = [user_id]
        if resolved is not None:
            sql += " AND resolved = ?"
            params.append(int(resolved))
        sql += " ORDER BY created_at, rowid"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_pending(r) for r in rows]

    def find_sweepable_pending(
        self, user_id: str, limit: int
    ) -> list[tuple[PendingDuplicate, str]]:
        """Unresolved pending entries whose identity key now exists in the ledger.

        Returns (pending, matching_transaction_id) pairs, oldest first.
        """
        rows = self.conn.execute(
            "SELECT pd.*, t.id AS matched_transaction_id"
            " FROM pending_duplicates pd"
            " JOIN transactions t"
            "   ON t.user_id = pd.user_id"
            "  AND t.source = pd.source"
            "  AND t.source_reference = pd.source_reference"
            " WHERE pd.user_id = ? AND pd.resolved = 0"
            "   AND pd.source_reference IS NOT NULL"
            " ORDER BY pd.created_at, pd.rowid"
            " LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [(self._row_to_pending(r), r["matched_transaction_id"]) for r in rows]

    def mark_pending_resolved(
        self, pending_id: str, resolution: str, note: str | None = None,
    ) -> bool:
        """Resolve an unresolved entry. Returns False if it was already resolved."""
        cur = self.conn.execute(
            "UPDATE pending_duplicates SET resolved = 1, resolution = ?,"
            " resolution_note = ?, resolved_at = CURRENT_TIMESTAMP"
            " WHERE id = ? AND resolved = 0",
            (resolution, note, pending_id),
        )
        self._commit()
        return cur.rowcount == 1

    # ── Prevented duplicates (append-only) ──────────────────

    def insert_prevented(self, prevented: PreventedDuplicate) -> PreventedDuplicate:
        self.conn.execute(
            "INSERT INTO prevented_duplicates"
            " (id, user_id, existing_transaction_id, blocked_transaction_data,"
            "  source, source_reference, similarity_score, reason, created_at)"
            " VALUES (?,?,?,?,?,?,?,?,?)",
            (prevented.id, prevented.user_id, prevented.existing_transaction_id,
             _dumps(prevented.blocked_transaction_data), prevented.source,
             prevented.source_reference, prevented.similarity_score,
             prevented.reason, prevented.created_at),
        )
        self._commit()
        return prevented

    def list_prevented(self, user_id: str, limit: int | None = None) -> list[PreventedDuplicate]:
        sql = (
            "SELECT * FROM prevented_duplicates WHERE user_id = ?"
            " ORDER BY created_at DESC, rowid DESC"
        )
        params: list = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_prevented(r) for r in rows]

    def count_prevented(self, user_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM prevented_duplicates WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return row[0]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_import_run(row: sqlite3.Row) -> ImportRun:
        return ImportRun(
            id=row["id"], user_id=row["user_id"],
            account_id=row["account_id"], source=row["source"],
            sync_run_id=row["sync_run_id"], file_name=row["file_name"],
            file_hash=row["file_hash"], status=row["status"],
            accepted=row["accepted"],
            exact_duplicates=row["exact_duplicates"],
            parked_for_review=row["parked_for_review"],
            cross_source_linked=row["cross_source_linked"],
            error_count=row["error_count"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @classmethod
    def _row_to_transaction(cls, row: sqlite3.Row) -> Transaction:
        return Transaction(**{c: row[c] for c in cls._TXN_COLUMNS})

    @staticmethod
    def _row_to_pending(row: sqlite3.Row) -> PendingDuplicate:
        return PendingDuplicate(
            id=row["id"], user_id=row["user_id"], source=row["source"],
            source_reference=row["source_reference"],
            new_transaction_data=_loads(row["new_transaction_data"]),
            existing_transaction_id=row["existing_transaction_id"],
            existing_transaction_data=_loads(row["existing_transaction_data"]),
            similarity_score=row["similarity_score"],
            resolved=bool(row["resolved"]),
            resolution=row["resolution"],
            resolution_note=row["resolution_note"],
            resolved_at=row["resolved_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_prevented(row: sqlite3.Row) -> PreventedDuplicate:
        return PreventedDuplicate(
            id=row["id"], user_id=row["user_id"],
            existing_transaction_id=row["existing_transaction_id"],
            blocked_transaction_data=_loads(row["blocked_transaction_data"]),
            source=row["source"], source_reference=row["source_reference"],
            similarity_score=row["similarity_score"], reason=row["reason"],
            created_at=row["created_at"],
        )
