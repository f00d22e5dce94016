"""Message identity: canonical Message-IDs and stable thread keys.

Every other engine module identifies a message by its *key*: the normalized
Message-ID when the header is usable, otherwise a fallback derived from the
record's own persisted identity. Keys never depend on call-time randomness,
so the same stored message maps to the same key on every run.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mailweave.engine.models import MessageRecord, ThreadNode


def normalize_identifier(raw: str | None) -> str | None:
    """Canonicalize a Message-ID style identifier.

    Trims surrounding whitespace, strips one enclosing pair of angle brackets
    and lowercases the result.

    Args:
        raw: Raw header value (may be None)

    Returns:
        The normalized identifier, or None when nothing usable remains
    """
    if raw is None:
        return None

    candidate = raw.strip()
    if candidate.startswith("<") and candidate.endswith(">"):
        candidate = candidate[1:-1].strip()

    if not candidate:
        return None
    return candidate.lower()


def fallback_key(message: MessageRecord) -> str:
    """Derive a key from the record's persisted identity.

    Used when the Message-ID header is missing or degenerate, and for
    duplicate-identifier losers. Prefers the surrogate record id; a record
    without one is keyed by a digest of its stable stored fields.
    """
    record_id = (message.id or "").strip().lower()
    if record_id:
        return record_id

    material = "\x1f".join(
        [
            message.mailbox_id or "",
            message.date.isoformat(),
            message.sender or "",
            message.subject or "",
        ]
    )
    return "synthetic-" + hashlib.sha1(material.encode("utf-8")).hexdigest()


def thread_key(message: MessageRecord) -> str:
    """Return the stable key identifying a message across runs.

    Args:
        message: Message record

    Returns:
        Normalized Message-ID if valid, otherwise ``fallback_key(message)``
    """
    normalized = normalize_identifier(message.message_id)
    if normalized is not None:
        return normalized
    return fallback_key(message)


def thread_identifier(node: ThreadNode) -> str:
    """Derive the thread id of a tree from its root node.

    The id is the root's key, so it is stable as long as the root message is
    unchanged, regardless of input ordering or traversal order.
    """
    return node.key
