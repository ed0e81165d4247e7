"""CLI entry point for the reconciliation ledger.

Commands:
    ledgerrec ingest [--file PATH]           Ingest a batch file or all files in the drop folder
    ledgerrec watch                          Start file watcher daemon
    ledgerrec status [--user USER]           Ledger, review queue and import counts
    ledgerrec review USER                    List pending duplicates and ambiguous links
    ledgerrec resolve PENDING_ID accept|reject [--note TEXT]
                                             Adjudicate a pending duplicate
    ledgerrec reconcile [USER]               Link platform records to bank records
    ledgerrec sweep [USER]                   Auto-resolve pending duplicates proven exact
    ledgerrec prevented USER                 Show the prevented-duplicate audit trail
    ledgerrec totals USER                    Per-currency totals (secondary records excluded)
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on LEDGER_LOG_LEVEL env var."""
    level = os.environ.get("LEDGER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from src.config import Config

    config_dir = os.environ.get("LEDGER_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database."""
    from src.database.repository import Repository

    db_path = os.environ.get("LEDGER_DB_PATH", "ledger.db")
    return Repository(db_path=db_path)


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("LEDGER_WATCH_DIR", "import"))


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    return Path(os.environ.get(
        "LEDGER_MIGRATIONS_DIR", Path(__file__).parent / "database" / "migrations",
    ))


def _open_repo():
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _user_ids(repo, user: str | None) -> list[str]:
    return [user] if user else repo.get_user_ids()


def _format_report(report) -> str:
    return (
        f"{report.file_name}: {report.status}"
        f" (accepted={report.accepted}, dup={report.exact_duplicates},"
        f" review={report.parked_for_review}, linked={report.cross_source_linked},"
        f" errors={len(report.errors)}, reconciled={report.reconciled})"
    )


def _format_cents(amount_cents: int, exponent: int) -> str:
    from decimal import Decimal

    return str(Decimal(amount_cents).scaleb(-exponent))


# ── Command handlers ─────────────────────────────────────


def cmd_ingest(args: argparse.Namespace) -> int:
    """Ingest batch file(s) via the IngestionPipeline."""
    from src.database.repository import StorageError
    from src.ingest.pipeline import SUPPORTED_EXTENSIONS, IngestionPipeline
    from src.parsers.base import ValidationError

    config = _get_config()
    repo = _open_repo()
    pipeline = IngestionPipeline(repo, config)

    try:
        if args.file:
            files = [args.file.resolve()]
            if not files[0].exists():
                print(f"Error: File not found: {files[0]}")
                return 1
            if files[0].suffix.lower() not in SUPPORTED_EXTENSIONS:
                print(f"Error: Unsupported file type: {files[0].suffix}")
                return 1
        else:
            watch_dir = _get_watch_dir()
            if not watch_dir.exists():
                print(f"Watch directory not found: {watch_dir}")
                return 1
            files = [
                f for f in sorted(watch_dir.iterdir())
                if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
            ]
            if not files:
                print("No pending files found.")
                return 0

        failures = 0
        totals = {"accepted": 0, "dup": 0, "review": 0, "linked": 0}
        for filepath in files:
            try:
                report = pipeline.ingest_file(filepath)
            except ValidationError as e:
                print(f"  {filepath.name}: invalid batch file ({e})")
                failures += 1
                continue
            except StorageError as e:
                print(f"  {filepath.name}: storage failure ({e})")
                return 1
            print(f"  {_format_report(report)}")
            for err in report.errors:
                ref = f" [{err.source_reference}]" if err.source_reference else ""
                print(f"    record {err.index}{ref}: {err.message}")
            totals["accepted"] += report.accepted
            totals["dup"] += report.exact_duplicates
            totals["review"] += report.parked_for_review
            totals["linked"] += report.cross_source_linked + report.reconciled

        print(
            f"\nProcessed {len(files)} files: {totals['accepted']} accepted,"
            f" {totals['dup']} duplicates, {totals['review']} for review,"
            f" {totals['linked']} linked, {failures} failed"
        )
        return 1 if failures else 0
    finally:
        repo.close()


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the file watcher daemon."""
    from src.ingest.pipeline import IngestionPipeline
    from src.watcher.observer import FileWatcher

    config = _get_config()
    repo = _open_repo()
    pipeline = IngestionPipeline(repo, config)

    watcher = FileWatcher(
        watch_dir=_get_watch_dir(),
        pipeline=pipeline,
    )

    print(f"Watching {watcher.watch_dir} for batch files... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display ledger status counts."""
    from src.database.queries import get_status_counts

    repo = _open_repo()
    counts = get_status_counts(repo.conn, args.user)

    title = "Ledger Status" + (f" ({args.user})" if args.user else "")
    print(title)
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Not reconciled:      {counts['not_reconciled']:,}")
    print(f"  Linked (primary):    {counts['primary']:,}")
    print(f"  Linked (secondary):  {counts['secondary']:,}")
    print(f"  Ambiguous links:     {counts['ambiguous']:,}")
    print(f"  Pending review:      {counts['pending_review']:,}")
    print(f"  Prevented dupes:     {counts['prevented']:,}")
    print(f"  Total imports:       {counts['total_imports']:,}")

    runs = repo.list_import_runs(user_id=args.user, limit=5)
    if runs:
        print("\n  Recent imports:")
        for run in runs:
            print(
                f"    {run.created_at[:19]}  {run.status:<10}"
                f"  {run.file_name or run.sync_run_id or run.id}"
            )

    repo.close()
    return 0


def cmd_review(args: argparse.Namespace) -> int:
    """List pending duplicates and ambiguous cross-source records for a user."""
    from src.database.queries import get_ambiguous_transactions

    repo = _open_repo()
    pending = repo.list_pending(args.user, resolved=False, limit=50)
    ambiguous = get_ambiguous_transactions(repo.conn, args.user)

    if not pending and not ambiguous:
        print("Nothing pending review.")
        repo.close()
        return 0

    if pending:
        print(f"Pending duplicates ({len(pending)}):")
        print("-" * 80)
        for p in pending:
            data = p.new_transaction_data
            score = f"{p.similarity_score:.0f}" if p.similarity_score is not None else "n/a"
            print(
                f"  {p.id}  {data.get('execution_date')}  {str(data.get('amount')):>10}"
                f" {data.get('currency')}  {str(data.get('description'))[:30]:<30}"
                f"  score={score}"
            )

    if ambiguous:
        print(f"\nAmbiguous cross-source records ({len(ambiguous)}):")
        print("-" * 80)
        for r in ambiguous:
            amount = _format_cents(r["amount_cents"], r["exponent"])
            print(
                f"  {r['id']}  {r['execution_date']}  {amount:>10} {r['currency']}"
                f"  {r['description'][:30]}"
            )

    repo.close()
    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    """Accept or reject a pending duplicate."""
    from src.database.store import (
        PendingNotFoundError,
        PendingResolvedError,
        ReconciliationStore,
    )
    from src.reconcile.cross_source import CrossSourceReconciler

    config = _get_config()
    repo = _open_repo()
    store = ReconciliationStore(
        repo, reconciler=CrossSourceReconciler.from_config(repo, config),
    )
    try:
        result = store.resolve_pending(args.pending_id, args.decision, note=args.note)
    except (PendingNotFoundError, PendingResolvedError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    line = f"{args.pending_id}: {result.pending.resolution}"
    if result.transaction is not None:
        line += f" (transaction {result.transaction.id})"
    if result.reconciled:
        line += f", {result.reconciled} linked"
    print(line)
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Link unreconciled platform transactions to bank transactions."""
    from src.reconcile.cross_source import CrossSourceReconciler

    config = _get_config()
    repo = _open_repo()
    reconciler = CrossSourceReconciler.from_config(repo, config)

    for user_id in _user_ids(repo, args.user):
        report = reconciler.reconcile_all_for_user(user_id)
        print(
            f"  {user_id:<20}  linked={report.reconciled_count}"
            f"  unreconciled={report.unreconciled_count}"
        )
        for txn in report.unreconciled_transactions:
            print(
                f"    {txn.id}  {txn.execution_date}  {str(txn.amount):>10} {txn.currency}"
                f"  {txn.reconciliation_note or ''}"
            )

    repo.close()
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Resolve pending duplicates whose identity key is now in the ledger."""
    from src.database.store import ReconciliationStore

    config = _get_config()
    repo = _open_repo()
    store = ReconciliationStore(repo, sweep_chunk_size=config.sweep_chunk_size)

    for user_id in _user_ids(repo, args.user):
        report = store.sweep_pending(user_id)
        print(
            f"  {user_id:<20}  resolved={report.resolved_count}"
            f"  prevented={report.prevented_count}"
        )

    repo.close()
    return 0


def cmd_prevented(args: argparse.Namespace) -> int:
    """Show the prevented-duplicate audit trail for a user."""
    repo = _open_repo()
    total = repo.count_prevented(args.user)
    rows = repo.list_prevented(args.user, limit=args.limit)

    print(f"Prevented duplicates for {args.user}: {total}")
    for p in rows:
        data = p.blocked_transaction_data
        print(
            f"  {p.created_at[:19]}  {p.similarity_score:>5.1f}"
            f"  {data.get('source')}/{data.get('source_reference') or '-'}"
            f"  {p.reason}"
        )

    repo.close()
    return 0


def cmd_totals(args: argparse.Namespace) -> int:
    """Per-currency totals that count each real payment once."""
    from src.database.queries import get_user_totals

    repo = _open_repo()
    totals = get_user_totals(repo.conn, args.user, args.date_from, args.date_to)

    if not totals:
        print(f"No transactions for {args.user}.")
        repo.close()
        return 0

    for t in totals:
        print(
            f"  {t['currency']}  net={t['net']}  in={t['inflow']}  out={t['outflow']}"
            f"  counted={t['counted']}  excluded={t['excluded']}"
        )

    repo.close()
    return 0


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "ingest": cmd_ingest,
    "watch": cmd_watch,
    "status": cmd_status,
    "review": cmd_review,
    "resolve": cmd_resolve,
    "reconcile": cmd_reconcile,
    "sweep": cmd_sweep,
    "prevented": cmd_prevented,
    "totals": cmd_totals,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgerrec",
        description="Cross-source transaction reconciliation ledger",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ingest
    ingest_p = subparsers.add_parser("ingest", help="Ingest batch file(s)")
    ingest_p.add_argument("--file", type=Path, help="Specific file to ingest")

    # watch
    subparsers.add_parser("watch", help="Start file watcher daemon")

    # status
    status_p = subparsers.add_parser("status", help="Show ledger, review and import counts")
    status_p.add_argument("--user", help="Restrict counts to one user")

    # review
    review_p = subparsers.add_parser("review", help="List items needing manual review")
    review_p.add_argument("user", help="User ID")

    # resolve
    resolve_p = subparsers.add_parser("resolve", help="Accept or reject a pending duplicate")
    resolve_p.add_argument("pending_id", help="Pending duplicate ID")
    resolve_p.add_argument("decision", choices=["accept", "reject"])
    resolve_p.add_argument("--note", help="Reviewer note")

    # reconcile
    recon_p = subparsers.add_parser("reconcile", help="Link platform records to bank records")
    recon_p.add_argument("user", nargs="?", help="User ID (default: all users)")

    # sweep
    sweep_p = subparsers.add_parser("sweep", help="Auto-resolve pending duplicates")
    sweep_p.add_argument("user", nargs="?", help="User ID (default: all users)")

    # prevented
    prevented_p = subparsers.add_parser("prevented", help="Show prevented duplicates")
    prevented_p.add_argument("user", help="User ID")
    prevented_p.add_argument("--limit", type=int, default=50)

    # totals
    totals_p = subparsers.add_parser("totals", help="Per-currency totals for a user")
    totals_p.add_argument("user", help="User ID")
    totals_p.add_argument("--from", dest="date_from", help="Start date (YYYY-MM-DD)")
    totals_p.add_argument("--to", dest="date_to", help="End date (YYYY-MM-DD)")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
