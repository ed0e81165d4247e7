"""Complex queries that span multiple tables.

These go beyond single-table CRUD and implement derived fields,
aggregations, and reporting queries.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal


def get_status_counts(conn: sqlite3.Connection, user_id: str | None = None) -> dict:
    """Counts for the `ledgerrec status` command."""
    params = (user_id,) if user_id else ()

    def count(sql: str, condition: str | None = None) -> int:
        conditions = ["user_id = ?"] if user_id else []
        if condition:
            conditions.append(condition)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        return conn.execute(sql, params).fetchone()[0]

    return {
        "total_txns": count("SELECT COUNT(*) FROM transactions"),
        "not_reconciled": count(
            "SELECT COUNT(*) FROM transactions", "reconciliation_status = 'not_reconciled'"
        ),
        "primary": count(
            "SELECT COUNT(*) FROM transactions",
            "reconciliation_status = 'reconciled_as_primary'",
        ),
        "secondary": count(
            "SELECT COUNT(*) FROM transactions",
            "reconciliation_status = 'reconciled_as_secondary'",
        ),
        "ambiguous": count(
            "SELECT COUNT(*) FROM transactions",
            "reconciliation_status = 'not_reconciled' AND reconciliation_note = 'ambiguous'",
        ),
        "pending_review": count("SELECT COUNT(*) FROM pending_duplicates", "resolved = 0"),
        "prevented": count("SELECT COUNT(*) FROM prevented_duplicates"),
        "total_imports": count("SELECT COUNT(*) FROM import_runs"),
    }


def get_user_totals(
    conn: sqlite3.Connection,
    user_id: str,
    date_from: str | None = None,
    date_to: str | None = None,
) -> list[dict]:
    """Per-currency totals for a user, counting each real payment once.

    Secondary records of a cross-source link are excluded: their amount is
    already carried by the primary bank record.
    """
    sql = (
        "SELECT currency, MAX(exponent) AS exponent,"
        "  SUM(CASE WHEN reconciliation_status != 'reconciled_as_secondary'"
        "      THEN amount_cents ELSE 0 END) AS net_cents,"
        "  SUM(CASE WHEN reconciliation_status != 'reconciled_as_secondary'"
        "       AND amount_cents > 0 THEN amount_cents ELSE 0 END) AS inflow_cents,"
        "  SUM(CASE WHEN reconciliation_status != 'reconciled_as_secondary'"
        "       AND amount_cents < 0 THEN amount_cents ELSE 0 END) AS outflow_cents,"
        "  SUM(CASE WHEN reconciliation_status != 'reconciled_as_secondary'"
        "      THEN 1 ELSE 0 END) AS counted,"
        "  SUM(CASE WHEN reconciliation_status = 'reconciled_as_secondary'"
        "      THEN 1 ELSE 0 END) AS excluded"
        " FROM transactions"
        " WHERE user_id = ?"
    )
    params: list = [user_id]
    if date_from:
        sql += " AND execution_date >= ?"
        params.append(date_from)
    if date_to:
        sql += " AND execution_date <= ?"
        params.append(date_to)
    sql += " GROUP BY currency ORDER BY currency"
    rows = conn.execute(sql, params).fetchall()

    totals = []
    for r in rows:
        exponent = r["exponent"]
        totals.append({
            "currency": r["currency"],
            "net_cents": r["net_cents"],
            "net": Decimal(r["net_cents"]).scaleb(-exponent),
            "inflow": Decimal(r["inflow_cents"]).scaleb(-exponent),
            "outflow": Decimal(r["outflow_cents"]).scaleb(-exponent),
            "counted": r["counted"],
            "excluded": r["excluded"],
        })
    return totals


def get_ambiguous_transactions(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Platform records left unlinked because several bank records matched."""
    rows = conn.execute(
        "SELECT id, source, source_reference, amount_cents, currency, exponent,"
        "  execution_date, description"
        " FROM transactions"
        " WHERE user_id = ? AND reconciliation_status = 'not_reconciled'"
        "   AND reconciliation_note = 'ambiguous'"
        " ORDER BY execution_date, rowid",
        (user_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def get_linked_pairs(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Cross-source links as (primary, secondary) rows, primary-first."""
    rows = conn.execute(
        "SELECT p.id AS primary_id, s.id AS secondary_id,"
        "  p.reconciled_with_transaction_id AS primary_points_to,"
        "  s.reconciled_with_transaction_id AS secondary_points_to,"
        "  s.reconciliation_status AS secondary_status,"
        "  p.amount_cents AS primary_amount_cents,"
        "  s.amount_cents AS secondary_amount_cents,"
        "  p.currency, p.execution_date AS primary_date,"
        "  s.execution_date AS secondary_date,"
        "  p.enriched_description"
        " FROM transactions p"
        " LEFT JOIN transactions s ON s.id = p.reconciled_with_transaction_id"
        " WHERE p.user_id = ? AND p.reconciliation_status = 'reconciled_as_primary'"
        " ORDER BY p.execution_date, p.rowid",
        (user_id,),
    ).fetchall()
    return [dict(r) for r in rows]
