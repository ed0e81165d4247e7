"""Base parser: inbound record contract, validation, and utility functions."""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping

from src.database.models import VALID_SOURCES

DEFAULT_EXPONENT = 2


class ValidationError(ValueError):
    """Raised when an inbound record is malformed.

    Attributes:
        field_name: The offending field, if known.
    """

    def __init__(self, message: str, field_name: str | None = None):
        self.field_name = field_name
        super().__init__(message)


@dataclass
class FeedRecord:
    """Normalized transaction record handed over by a feed importer."""
    user_id: str
    account_id: str
    source: str            # manual, bank-feed, card-feed, payment-platform
    amount_cents: int      # signed minor units: negative=outflow
    currency: str          # ISO-4217, uppercase
    execution_date: str    # YYYY-MM-DD
    description: str
    source_reference: str | None = None  # feed transaction ID
    merchant_name: str | None = None
    category_hint: str | None = None
    exponent: int = DEFAULT_EXPONENT
    raw_payload: Any = field(default=None, repr=False)

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_cents).scaleb(-self.exponent)

    def to_dict(self) -> dict:
        """JSON-safe snapshot used for pending/audit rows."""
        return {
            "user_id": self.user_id,
            "account_id": self.account_id,
            "source": self.source,
            "source_reference": self.source_reference,
            "amount": str(self.amount),
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "execution_date": self.execution_date,
            "description": self.description,
            "merchant_name": self.merchant_name,
            "category_hint": self.category_hint,
            "raw_payload": self.raw_payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> FeedRecord:
        """Rebuild a record from a to_dict() snapshot."""
        amount_cents = int(data["amount_cents"])
        amount = data.get("amount")
        exponent = DEFAULT_EXPONENT
        if amount is not None:
            exponent = -Decimal(str(amount)).as_tuple().exponent
        return cls(
            user_id=data["user_id"],
            account_id=data["account_id"],
            source=data["source"],
            amount_cents=amount_cents,
            currency=data["currency"],
            execution_date=data["execution_date"],
            description=data.get("description") or "",
            source_reference=data.get("source_reference"),
            merchant_name=data.get("merchant_name"),
            category_hint=data.get("category_hint"),
            exponent=exponent,
            raw_payload=data.get("raw_payload"),
        )


class BaseParser(ABC):
    """Abstract base for feed file parsers.

    Attributes:
        skipped_count: Number of records skipped while reading the file
            (e.g. entries that are not JSON objects). Check this after
            parse() to detect silent data loss.
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path):
        """Parse a feed file into a batch of raw (unvalidated) records."""

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


# ── Field helpers ─────────────────────────────────────────


def _field(data: Mapping, *names: str) -> Any:
    """Return the first present key among camelCase/snake_case aliases."""
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def _required_str(data: Mapping, *names: str) -> str:
    value = _field(data, *names)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"Missing required field: {names[0]}", names[0])
    return str(value).strip()


def _optional_str(data: Mapping, *names: str) -> str | None:
    value = _field(data, *names)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def to_minor_units(
    value: Any, currency: str, exponents: Mapping[str, int] | None = None
) -> tuple[int, int]:
    """Convert a decimal amount into (minor_units, exponent) for a currency.

    Floats are converted through their shortest repr so 45.1 stays 45.10
    and never 45.0999... Amounts with more precision than the currency
    allows are rejected rather than rounded.
    """
    exponent = (exponents or {}).get(currency.upper(), DEFAULT_EXPONENT)
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Non-numeric amount: {value!r}", "amount")
    try:
        if isinstance(value, float):
            amount = Decimal(repr(value))
        elif isinstance(value, (int, Decimal)):
            amount = Decimal(value)
        else:
            amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Non-numeric amount: {value!r}", "amount") from e
    if not amount.is_finite():
        raise ValidationError(f"Non-numeric amount: {value!r}", "amount")
    scaled = amount.scaleb(exponent)
    if scaled != scaled.to_integral_value():
        raise ValidationError(
            f"Amount {value!r} has more than {exponent} decimal places for {currency}",
            "amount",
        )
    return int(scaled), exponent


def parse_execution_date(value: Any) -> str:
    """Normalize a date/datetime/ISO string into YYYY-MM-DD."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or len(value.strip()) < 10:
        raise ValidationError(f"Invalid executionDate: {value!r}", "executionDate")
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError as e:
        raise ValidationError(
            f"Invalid executionDate: {value!r}", "executionDate"
        ) from e


def parse_record(
    data: Any,
    defaults: Mapping | None = None,
    currency_exponents: Mapping[str, int] | None = None,
    default_currency: str = "EUR",
) -> FeedRecord:
    """Validate one inbound record and return a FeedRecord.

    Accepts both the camelCase field names of the importer contract
    (userId, sourceReference, executionDate, rawPayload, ...) and their
    snake_case equivalents. Batch-level defaults (user, account, source,
    currency) fill in fields the record omits.

    Raises:
        ValidationError: If a required field is missing or malformed.
    """
    if not isinstance(data, Mapping):
        raise ValidationError(f"Record is not an object: {type(data).__name__}")
    merged: dict = dict(defaults or {})
    merged.update({k: v for k, v in data.items() if v is not None})

    user_id = _required_str(merged, "userId", "user_id")
    account_id = _required_str(merged, "accountId", "account_id")
    source = _required_str(merged, "source")
    if source not in VALID_SOURCES:
        raise ValidationError(f"Unknown source: {source!r}", "source")

    currency = (_optional_str(merged, "currency") or default_currency).upper()
    if not re.fullmatch(r"[A-Z]{3}", currency):
        raise ValidationError(f"Invalid currency: {currency!r}", "currency")

    amount = _field(merged, "amount")
    if amount is None:
        raise ValidationError("Missing required field: amount", "amount")
    amount_cents, exponent = to_minor_units(amount, currency, currency_exponents)

    raw_date = _field(merged, "executionDate", "execution_date")
    if raw_date is None:
        raise ValidationError("Missing required field: executionDate", "executionDate")
    execution_date = parse_execution_date(raw_date)

    description = _field(merged, "description")
    if description is None:
        raise ValidationError("Missing required field: description", "description")

    return FeedRecord(
        user_id=user_id,
        account_id=account_id,
        source=source,
        amount_cents=amount_cents,
        currency=currency,
        execution_date=execution_date,
        description=str(description),
        source_reference=_optional_str(merged, "sourceReference", "source_reference"),
        merchant_name=_optional_str(merged, "merchantName", "merchant_name"),
        category_hint=_optional_str(merged, "categoryHint", "category_hint"),
        exponent=exponent,
        raw_payload=_field(data, "rawPayload", "raw_payload"),
    )


def normalize_description(desc: str) -> str:
    """Normalize a transaction description for matching.

    - Uppercase
    - Strip long numbers (4+ digits)
    - Strip #123 patterns
    - Strip * and # decorators
    - Collapse whitespace
    """
    desc = desc.upper()
    desc = re.sub(r'\d{4,}', '', desc)
    desc = re.sub(r'#\d+', '', desc)
    desc = re.sub(r'[*#]', '', desc)
    desc = re.sub(r'\s+', ' ', desc)
    return desc.strip()


def compute_file_hash(file_path: Path) -> str:
    """SHA256 of entire file contents; detects re-delivered batch files."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()
