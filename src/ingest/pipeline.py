"""Ingestion pipeline: validate → classify → commit/park/link → sweep → reconcile.

Entry point for feed importers. A batch of normalized records for one
user/account/source/sync-run goes through the duplicate classifier one
record at a time, in order, so records inside the same batch are checked
against each other as well as against the ledger:

  new                  commit
  exact_duplicate      count (+ audit row when matched by similarity)
  probable_duplicate   park in the review queue
  cross_source_match   commit, then hand to the cross-source reconciler

After the records, each user the batch touched has its review queue
swept and its unreconciled platform records retried, so a bank debit
that clears days after its PayPal record still gets linked.

Per-record failures (validation, lost identity races that re-classify
badly) land in BatchReport.errors and the batch carries on. StorageError
aborts the batch, marks the import run failed, and propagates. Re-running
the same batch afterwards is safe because identity keys make it
idempotent.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from src.database.dedup import (
    CROSS_SOURCE_MATCH,
    EXACT_DUPLICATE,
    PROBABLE_DUPLICATE,
    TIER_SIMILARITY,
    ClassifyResult,
    DuplicateClassifier,
)
from src.database.models import ImportRun, _now
from src.database.repository import (
    ConflictError,
    DuplicateImportError,
    Repository,
    StorageError,
    storage_errors,
)
from src.database.store import ReconciliationStore
from src.parsers.base import (
    FeedRecord,
    ValidationError,
    _field,
    compute_file_hash,
    parse_record,
)
from src.parsers.json_batch import JsonBatchParser, batch_label
from src.reconcile.cross_source import CrossSourceReconciler

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".json"}


@dataclass
class RecordError:
    """A record rejected from a batch."""
    index: int
    message: str
    field_name: str | None = None
    source_reference: str | None = None


@dataclass
class BatchReport:
    """Per-batch outcome handed back to the calling sync job."""
    accepted: int = 0
    exact_duplicates: int = 0
    parked_for_review: int = 0
    cross_source_linked: int = 0
    errors: list[RecordError] = field(default_factory=list)
    swept: int = 0
    reconciled: int = 0  # links made after the batch, not records of it
    status: str = "completed"  # completed, partial, duplicate, failed
    import_run_id: str | None = None
    file_name: str | None = None

    @property
    def processed(self) -> int:
        return (
            self.accepted + self.exact_duplicates + self.parked_for_review
            + self.cross_source_linked + len(self.errors)
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _raw_reference(raw: Any) -> str | None:
    if isinstance(raw, FeedRecord):
        return raw.source_reference
    if isinstance(raw, Mapping):
        ref = _field(raw, "sourceReference", "source_reference")
        return str(ref) if ref is not None else None
    return None


class IngestionPipeline:
    """Feed batches through classifier, store and reconciler.

    Args:
        repo: Database repository.
        config: Application config. When omitted, built-in defaults apply.
        classifier, store, reconciler: Optional pre-built collaborators.
    """

    def __init__(
        self,
        repo: Repository,
        config=None,
        classifier: DuplicateClassifier | None = None,
        store: ReconciliationStore | None = None,
        reconciler: CrossSourceReconciler | None = None,
    ):
        self.repo = repo
        self.config = config
        if classifier is None:
            classifier = (
                DuplicateClassifier.from_config(repo, config) if config
                else DuplicateClassifier(repo)
            )
        if reconciler is None:
            reconciler = (
                CrossSourceReconciler.from_config(repo, config) if config
                else CrossSourceReconciler(repo)
            )
        if store is None:
            store = ReconciliationStore(
                repo, sweep_chunk_size=config.sweep_chunk_size if config else 200,
                reconciler=reconciler,
            )
        self.classifier = classifier
        self.store = store
        self.reconciler = reconciler
        self.sweep_after_batch = config.sweep_after_batch if config else True
        self.reconcile_after_batch = config.reconcile_after_batch if config else True
        self.currency_exponents = config.currency_exponents if config else {}
        self.default_currency = config.default_currency if config else "EUR"
        self.parser = JsonBatchParser()

    # ── Batch ─────────────────────────────────────────────

    def ingest_batch(
        self,
        records: Iterable[Any],
        defaults: Mapping | None = None,
        sync_run_id: str | None = None,
        file_name: str | None = None,
        file_hash: str | None = None,
    ) -> BatchReport:
        """Ingest an ordered batch of records.

        Records may be raw mappings (validated here, with batch defaults
        filled in) or already-built FeedRecord instances.

        Raises:
            StorageError: If the database fails. The import run is marked
                failed and nothing past the failing record is processed.
            DuplicateImportError: If file_hash was already ingested.
        """
        defaults = dict(defaults or {})
        report = BatchReport(file_name=file_name)
        run = ImportRun(
            user_id=_field(defaults, "userId", "user_id"),
            account_id=_field(defaults, "accountId", "account_id"),
            source=_field(defaults, "source"),
            sync_run_id=sync_run_id,
            file_name=file_name,
            file_hash=file_hash,
        )
        with storage_errors():
            self.repo.insert_import_run(run)
        report.import_run_id = run.id

        users: set[str] = set()
        try:
            for index, raw in enumerate(records):
                user_id = self._process_record(index, raw, defaults, run.id, report)
                if user_id:
                    users.add(user_id)

            if self.sweep_after_batch:
                for user_id in sorted(users):
                    report.swept += self.store.sweep_pending(user_id).resolved_count

            # Platform records committed before their bank debit arrived
            if self.reconcile_after_batch:
                for user_id in sorted(users):
                    report.reconciled += (
                        self.reconciler.reconcile_all_for_user(user_id).reconciled_count
                    )
        except StorageError as e:
            logger.error("Batch aborted by storage failure: %s", e)
            report.status = "failed"
            self._finish_run(run.id, report, error_message=str(e))
            raise

        report.status = "partial" if report.errors else "completed"
        self._finish_run(run.id, report)
        logger.info(
            "Batch %s: accepted=%d dup=%d review=%d linked=%d errors=%d swept=%d"
            " reconciled=%d",
            run.id, report.accepted, report.exact_duplicates,
            report.parked_for_review, report.cross_source_linked,
            len(report.errors), report.swept, report.reconciled,
        )
        return report

    def _process_record(
        self, index: int, raw: Any, defaults: Mapping, run_id: str,
        report: BatchReport,
    ) -> str | None:
        """Validate and apply one record. Returns its user_id when valid."""
        try:
            if isinstance(raw, FeedRecord):
                candidate = raw
            else:
                candidate = parse_record(
                    raw, defaults,
                    currency_exponents=self.currency_exponents,
                    default_currency=self.default_currency,
                )
        except ValidationError as e:
            logger.warning("Record %d rejected: %s", index, e)
            report.errors.append(RecordError(
                index=index, message=str(e), field_name=e.field_name,
                source_reference=_raw_reference(raw),
            ))
            return None

        try:
            self._apply(candidate, run_id, report)
        except ConflictError as e:
            logger.warning("Record %d left unresolved after conflict: %s", index, e)
            report.errors.append(RecordError(
                index=index, message=str(e),
                source_reference=candidate.source_reference,
            ))
        return candidate.user_id

    def _apply(
        self, candidate: FeedRecord, run_id: str, report: BatchReport,
        retry: bool = True,
    ) -> None:
        with storage_errors():
            result = self.classifier.classify(candidate)

        if result.status == EXACT_DUPLICATE:
            report.exact_duplicates += 1
            if result.tier == TIER_SIMILARITY:
                self._audit(candidate, result)
            return

        if result.status == PROBABLE_DUPLICATE:
            _, created = self.store.park_pending(
                candidate, result.existing.id, result.score,
                result.existing.snapshot(),
            )
            if created:
                report.parked_for_review += 1
            else:
                # Already waiting in the queue from an earlier delivery
                report.exact_duplicates += 1
            return

        try:
            txn = self.store.commit_new(candidate, import_run_id=run_id)
        except ConflictError:
            if not retry:
                raise
            logger.info(
                "Identity conflict on %s/%s, re-classifying",
                candidate.source, candidate.source_reference,
            )
            self._apply(candidate, run_id, report, retry=False)
            return

        if result.status == CROSS_SOURCE_MATCH:
            outcome = self.reconciler.reconcile(txn, candidate.user_id)
            if outcome.linked:
                report.cross_source_linked += 1
                return
        report.accepted += 1

    def _audit(self, candidate: FeedRecord, result: ClassifyResult) -> None:
        """Best-effort audit row; a failure here never fails the record."""
        try:
            self.store.record_prevented(
                candidate.user_id,
                result.existing.id if result.existing else None,
                candidate.to_dict(),
                result.score or 0.0,
                f"similarity {result.score:.2f} at or above auto-reject threshold",
                candidate.source,
                candidate.source_reference,
            )
        except (StorageError, sqlite3.DatabaseError):
            logger.exception(
                "Failed to record prevented duplicate for %s/%s",
                candidate.source, candidate.source_reference,
            )

    def _finish_run(
        self, run_id: str, report: BatchReport, error_message: str | None = None,
    ) -> None:
        if error_message is None and report.errors:
            error_message = "; ".join(e.message for e in report.errors[:5])
        try:
            with storage_errors():
                self.repo.update_import_run(
                    run_id, report.status,
                    accepted=report.accepted,
                    exact_duplicates=report.exact_duplicates,
                    parked_for_review=report.parked_for_review,
                    cross_source_linked=report.cross_source_linked,
                    error_count=len(report.errors),
                    error_message=error_message,
                    completed_at=_now(),
                )
        except StorageError:
            if report.status != "failed":
                raise
            logger.warning("Could not mark import run %s as failed", run_id)

    # ── Files ─────────────────────────────────────────────

    def ingest_file(self, filepath: Path) -> BatchReport:
        """Ingest a JSON batch file from the drop folder.

        Whole-file re-deliveries (same SHA256) are skipped with status
        "duplicate", including the race where two watchers pick up the
        same file at once.

        Raises:
            ValidationError: If the file is not a readable batch.
            StorageError: As for ingest_batch().
        """
        filepath = Path(filepath)
        file_name = filepath.name
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValidationError(f"Unsupported file extension: {filepath.suffix}")

        file_hash = compute_file_hash(filepath)
        with storage_errors():
            existing = self.repo.get_import_run_by_hash(file_hash)
        if existing is not None:
            logger.info("Duplicate file skipped: %s", file_name)
            return BatchReport(
                status="duplicate", import_run_id=existing.id, file_name=file_name,
            )

        batch = self.parser.parse(filepath)
        logger.info(
            "Ingesting %s (%s, %d records)",
            file_name, batch_label(batch), len(batch.records),
        )
        try:
            return self.ingest_batch(
                batch.records, batch.defaults(),
                sync_run_id=batch.sync_run_id,
                file_name=file_name, file_hash=file_hash,
            )
        except DuplicateImportError as e:
            # Another process recorded this file between our check and insert
            logger.info("Duplicate file (race): %s", file_name)
            return BatchReport(
                status="duplicate", import_run_id=e.existing_run_id,
                file_name=file_name,
            )
