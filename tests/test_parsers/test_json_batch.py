"""Tests for the JSON batch file parser."""

import json

import pytest

from src.parsers.base import ValidationError
from src.parsers.json_batch import JsonBatchParser, RecordBatch, batch_label


@pytest.fixture
def parser():
    return JsonBatchParser()


def _write(tmp_path, body, name="batch.json"):
    path = tmp_path / name
    path.write_text(body if isinstance(body, str) else json.dumps(body))
    return path


ENVELOPE = {
    "userId": "u1",
    "accountId": "checking",
    "source": "bank-feed",
    "currency": "EUR",
    "syncRunId": "sync-42",
    "records": [
        {"sourceReference": "TX1", "amount": "-45.00",
         "executionDate": "2025-01-10", "description": "DEBIT CARD PURCHASE"},
        {"sourceReference": "TX2", "amount": "-3.50",
         "executionDate": "2025-01-11", "description": "BAKERY"},
    ],
}


class TestDetect:
    def test_envelope(self, parser, tmp_path):
        assert parser.detect(_write(tmp_path, ENVELOPE))

    def test_bare_list(self, parser, tmp_path):
        assert parser.detect(_write(tmp_path, []))

    def test_wrong_extension(self, parser, tmp_path):
        assert not parser.detect(_write(tmp_path, ENVELOPE, name="batch.txt"))

    def test_object_without_records(self, parser, tmp_path):
        assert not parser.detect(_write(tmp_path, {"userId": "u1"}))

    def test_invalid_json(self, parser, tmp_path):
        assert not parser.detect(_write(tmp_path, "{oops"))


class TestParse:
    def test_envelope(self, parser, tmp_path):
        batch = parser.parse(_write(tmp_path, ENVELOPE))
        assert batch.user_id == "u1"
        assert batch.account_id == "checking"
        assert batch.source == "bank-feed"
        assert batch.sync_run_id == "sync-42"
        assert len(batch.records) == 2
        assert batch.records[0]["sourceReference"] == "TX1"

    def test_records_left_unvalidated(self, parser, tmp_path):
        body = {**ENVELOPE, "records": [{"amount": "not a number"}, 7]}
        batch = parser.parse(_write(tmp_path, body))
        assert batch.records == [{"amount": "not a number"}, 7]

    def test_null_records_skipped(self, parser, tmp_path):
        body = {**ENVELOPE, "records": [None, ENVELOPE["records"][0], None]}
        batch = parser.parse(_write(tmp_path, body))
        assert len(batch.records) == 1
        assert parser.skipped_count == 2

    def test_skipped_count_resets(self, parser, tmp_path):
        parser.parse(_write(tmp_path, [None], name="a.json"))
        parser.parse(_write(tmp_path, [], name="b.json"))
        assert parser.skipped_count == 0

    def test_snake_case_envelope(self, parser, tmp_path):
        body = {"user_id": "u1", "account_id": "a", "sync_run_id": "s", "records": []}
        batch = parser.parse(_write(tmp_path, body))
        assert (batch.user_id, batch.account_id, batch.sync_run_id) == ("u1", "a", "s")

    def test_invalid_json_raises(self, parser, tmp_path):
        with pytest.raises(ValidationError):
            parser.parse(_write(tmp_path, "{oops"))

    def test_wrong_shape_raises(self, parser, tmp_path):
        with pytest.raises(ValidationError) as exc:
            parser.parse(_write(tmp_path, {"records": "nope"}))
        assert exc.value.field_name == "records"


class TestRecordBatch:
    def test_defaults_omit_missing_values(self):
        batch = RecordBatch(user_id="u1", source="manual")
        assert batch.defaults() == {"userId": "u1", "source": "manual"}

    def test_label(self):
        assert batch_label(RecordBatch(user_id="u1", account_id="a", source="manual")) == "u1/a/manual"

    def test_label_from_first_record(self):
        batch = RecordBatch(records=[{"userId": "u7"}])
        assert batch_label(batch) == "u7/?/?"
