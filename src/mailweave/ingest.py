"""Parse message exports into MessageRecord lists.

The export format is a JSON array of objects, one per message:

    [
      {
        "id": "42",
        "message_id": "<abc@example.com>",
        "date": "2024-03-01T09:30:00+00:00",
        "subject": "Re: Budget",
        "in_reply_to": "<root@example.com>",
        "references": ["<root@example.com>"],
        "is_unread": true
      }
    ]

``references`` may also be a single whitespace-separated string, as it
appears in a raw References header. Records are validated with Pydantic so
a bad export fails with the position and field at fault.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from mailweave.core.errors import MessageImportError
from mailweave.core.logging import get_logger
from mailweave.engine.models import MessageRecord

logger = get_logger(__name__)


class MessageImport(BaseModel):
    """One message in an export file."""

    id: str = Field(min_length=1)
    message_id: str = ""
    date: datetime
    subject: str = ""
    is_unread: bool = False
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    thread_id: str | None = None
    mailbox_id: str = "inbox"
    sender: str = ""
    recipients: str = ""
    snippet: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        # Exports from SQL sources often carry integer row ids
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("references", mode="before")
    @classmethod
    def split_references(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return v.split()
        return v

    def to_record(self) -> MessageRecord:
        return MessageRecord(
            id=self.id,
            message_id=self.message_id,
            date=self.date,
            subject=self.subject,
            is_unread=self.is_unread,
            in_reply_to=self.in_reply_to,
            references=tuple(self.references),
            thread_id=self.thread_id,
            mailbox_id=self.mailbox_id,
            sender=self.sender,
            recipients=self.recipients,
            snippet=self.snippet,
        )


def parse_messages(payload: Any, source: str | None = None) -> list[MessageRecord]:
    """Validate decoded JSON into message records.

    Args:
        payload: Decoded JSON (must be a list of objects)
        source: Where the payload came from, for error messages

    Returns:
        List of MessageRecord in input order

    Raises:
        MessageImportError: If the payload is not a list or a record is invalid
    """
    if not isinstance(payload, list):
        raise MessageImportError(
            f"Message export must be a JSON array, got {type(payload).__name__}",
            source=source,
        )

    records = []
    for index, item in enumerate(payload):
        try:
            records.append(MessageImport.model_validate(item).to_record())
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'record'}: {error['msg']}"
                for error in e.errors()
            )
            raise MessageImportError(
                f"Invalid message record at index {index}: {problems}",
                source=source,
                index=index,
            ) from e
    return records


def load_messages(path: str | Path) -> list[MessageRecord]:
    """Read and validate a message export file.

    Args:
        path: Path to the JSON export

    Returns:
        List of MessageRecord

    Raises:
        MessageImportError: If the file cannot be read or parsed
    """
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise MessageImportError(f"Message export not found: {path}", source=str(path)) from e
    except (OSError, UnicodeDecodeError) as e:
        raise MessageImportError(f"Cannot read message export {path}: {e}", source=str(path)) from e
    except json.JSONDecodeError as e:
        raise MessageImportError(
            f"Message export {path} is not valid JSON (line {e.lineno}, column {e.colno}): {e.msg}",
            source=str(path),
        ) from e

    records = parse_messages(payload, source=str(path))
    logger.info("Message export loaded", path=str(path), count=len(records))
    return records
