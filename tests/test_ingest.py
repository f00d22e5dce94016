"""Tests for message export parsing."""

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from mailweave.core.errors import MessageImportError
from mailweave.ingest import load_messages, parse_messages


class TestParseMessages:
    """Tests for parse_messages()."""

    def test_minimal_record(self) -> None:
        """Test a record with only the required fields."""
        [record] = parse_messages([{"id": 7, "date": "2024-03-01T09:00:00+00:00"}])

        assert record.id == "7"
        assert record.message_id == ""
        assert record.date == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
        assert record.references == ()
        assert record.mailbox_id == "inbox"

    def test_naive_date_is_utc(self) -> None:
        """Test dates without an offset are treated as UTC."""
        [record] = parse_messages([{"id": "1", "date": "2024-03-01T09:00:00"}])
        assert record.date.tzinfo is UTC

    def test_references_string_is_split(self) -> None:
        """Test a raw References header string becomes a tuple of ids."""
        [record] = parse_messages(
            [{"id": "1", "date": "2024-03-01T09:00:00Z", "references": "<a@x> <b@x>\n <c@x>"}]
        )
        assert record.references == ("<a@x>", "<b@x>", "<c@x>")

    def test_not_a_list(self) -> None:
        """Test a top-level object is rejected."""
        with pytest.raises(MessageImportError, match="JSON array"):
            parse_messages({"id": "1"})

    def test_invalid_record_reports_index(self) -> None:
        """Test the failing record's position and field are reported."""
        payload = [
            {"id": "1", "date": "2024-03-01T09:00:00Z"},
            {"id": "2", "date": "not a date"},
        ]
        with pytest.raises(MessageImportError, match="index 1.*date") as exc_info:
            parse_messages(payload, source="export.json")

        assert exc_info.value.index == 1
        assert exc_info.value.source == "export.json"


class TestLoadMessages:
    """Tests for load_messages()."""

    def test_load_file(self, tmp_path: Path) -> None:
        """Test records are read from a JSON file."""
        path = tmp_path / "export.json"
        path.write_text(
            json.dumps(
                [
                    {"id": "1", "message_id": "<a@x>", "date": "2024-03-01T09:00:00Z", "subject": "Hi"},
                    {"id": "2", "message_id": "<b@x>", "date": "2024-03-01T10:00:00Z", "in_reply_to": "<a@x>"},
                ]
            )
        )
        records = load_messages(path)
        assert [record.id for record in records] == ["1", "2"]
        assert records[1].in_reply_to == "<a@x>"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises MessageImportError."""
        with pytest.raises(MessageImportError, match="not found"):
            load_messages(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path: Path) -> None:
        """Test malformed JSON reports the position."""
        path = tmp_path / "export.json"
        path.write_text("[{")
        with pytest.raises(MessageImportError, match="not valid JSON"):
            load_messages(path)
