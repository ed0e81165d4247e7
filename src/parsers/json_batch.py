"""JSON batch parser for feed importer drops.

A batch file carries one user/account/source/sync-run worth of records:

    {
      "userId": "u1", "accountId": "checking", "source": "bank-feed",
      "currency": "EUR", "syncRunId": "sync-42",
      "records": [{"sourceReference": "TX1", "amount": "-45.00", ...}, ...]
    }

A bare JSON list of fully specified records is accepted too. Records are
returned unvalidated: validation happens per record in the pipeline so
one bad record does not sink the batch. Null entries are skipped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .base import BaseParser, ValidationError, _field, _optional_str

logger = logging.getLogger(__name__)


@dataclass
class RecordBatch:
    """Raw records plus the batch-level defaults that scope them."""
    records: list[Any] = field(default_factory=list)
    user_id: str | None = None
    account_id: str | None = None
    source: str | None = None
    currency: str | None = None
    sync_run_id: str | None = None

    def defaults(self) -> dict:
        """Batch-level values merged under each record by parse_record()."""
        values = {
            "userId": self.user_id,
            "accountId": self.account_id,
            "source": self.source,
            "currency": self.currency,
        }
        return {k: v for k, v in values.items() if v is not None}


class JsonBatchParser(BaseParser):
    """Parse importer batch files (.json)."""

    def detect(self, file_path: Path) -> bool:
        """Batch files are JSON objects with a records list, or JSON lists."""
        if file_path.suffix.lower() != ".json":
            return False
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return False
        if isinstance(data, list):
            return True
        return isinstance(data, dict) and isinstance(data.get("records"), list)

    def parse(self, file_path: Path) -> RecordBatch:
        """Read a batch file.

        Raises:
            ValidationError: If the file is not valid JSON or has no
                records list.
        """
        self.skipped_count = 0  # Reset for each parse
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in {file_path.name}: {e}") from e

        if isinstance(data, list):
            batch = RecordBatch()
            raw_records = data
        elif isinstance(data, dict) and isinstance(data.get("records"), list):
            batch = RecordBatch(
                user_id=_optional_str(data, "userId", "user_id"),
                account_id=_optional_str(data, "accountId", "account_id"),
                source=_optional_str(data, "source"),
                currency=_optional_str(data, "currency"),
                sync_run_id=_optional_str(data, "syncRunId", "sync_run_id"),
            )
            raw_records = data["records"]
        else:
            raise ValidationError(
                f"{file_path.name}: expected a list or an object with a 'records' list",
                "records",
            )

        for record in raw_records:
            if record is None:
                self.skipped_count += 1
                continue
            batch.records.append(record)

        if self.skipped_count:
            logger.warning(
                "%s: skipped %d null records", file_path.name, self.skipped_count
            )
        return batch


def batch_label(batch: RecordBatch) -> str:
    """Short human-readable scope for log lines."""
    first = batch.records[0] if batch.records else {}
    user = batch.user_id or (_field(first, "userId", "user_id") if isinstance(first, dict) else None)
    return f"{user or '?'}/{batch.account_id or '?'}/{batch.source or '?'}"
