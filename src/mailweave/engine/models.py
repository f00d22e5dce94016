"""Value types shared by every threading layer.

All types are frozen dataclasses. ``ThreadNode`` trees and ``ThreadingResult``
objects are rebuilt from scratch by each layer; nothing here is mutated after
construction. ``ManualThreadGroup`` is the only type with a lifetime beyond a
single call: it is persisted by the store and fed back in.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from mailweave.engine.identity import thread_key


@dataclass(frozen=True)
class MessageRecord:
    """A single email message as supplied by the message source.

    Attributes:
        id: Stable surrogate id assigned when the message was first stored
        message_id: Raw Message-ID header value
        date: When the message was sent/received (naive values are UTC)
        subject: Subject line
        is_unread: Whether the message is unread
        in_reply_to: Raw In-Reply-To header, if present
        references: Raw References header ids, oldest first
        thread_id: Thread assignment (the algorithmic thread id after threading)
        mailbox_id: Mailbox the message was fetched from
        sender: From header
        recipients: To header
        snippet: Short plain-text body preview
    """

    id: str
    message_id: str
    date: datetime
    subject: str = ""
    is_unread: bool = False
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    thread_id: str | None = None
    mailbox_id: str = "inbox"
    sender: str = ""
    recipients: str = ""
    snippet: str = ""

    def __post_init__(self) -> None:
        if self.date.tzinfo is None:
            object.__setattr__(self, "date", self.date.replace(tzinfo=UTC))
        if not isinstance(self.references, tuple):
            object.__setattr__(self, "references", tuple(self.references))

    @property
    def thread_key(self) -> str:
        """Stable key identifying this message (see ``identity.thread_key``)."""
        return thread_key(self)

    def assigning(self, thread_id: str | None) -> MessageRecord:
        """Return a copy of this record with a new thread assignment."""
        if thread_id == self.thread_id:
            return self
        return replace(self, thread_id=thread_id)


@dataclass(frozen=True)
class ThreadNode:
    """A message and its replies in the public output forest.

    ``key`` is the key the message is identified by in the result it belongs
    to. It equals ``message.thread_key`` except for duplicate-identifier
    losers, which are keyed by their record id.
    """

    message: MessageRecord
    key: str
    children: tuple[ThreadNode, ...] = ()

    @property
    def id(self) -> str:
        return self.key

    def iter_nodes(self) -> Iterator[ThreadNode]:
        """Yield this node and all descendants in pre-order."""
        stack: list[ThreadNode] = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class EmailThread:
    """Aggregate summary of one root tree."""

    id: str
    root_message_id: str | None
    subject: str
    last_updated: datetime
    unread_count: int
    message_count: int


@dataclass(frozen=True)
class ManualThreadGroup:
    """A user-defined merge of algorithmic threads and pinned messages.

    Attributes:
        id: Persistent group id, used as the merged thread's id
        thread_ids: Algorithmic thread ids absorbed whole
        message_keys: Keys of individually pinned messages
    """

    id: str
    thread_ids: frozenset[str] = frozenset()
    message_keys: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not isinstance(self.thread_ids, frozenset):
            object.__setattr__(self, "thread_ids", frozenset(self.thread_ids))
        if not isinstance(self.message_keys, frozenset):
            object.__setattr__(self, "message_keys", frozenset(self.message_keys))

    @property
    def is_empty(self) -> bool:
        return not self.thread_ids and not self.message_keys

    @property
    def member_count(self) -> int:
        return len(self.thread_ids) + len(self.message_keys)


@dataclass(frozen=True)
class ThreadingResult:
    """Output of the builder, threaded through the manual layers.

    ``threads[i]`` always summarizes ``roots[i]``.

    Attributes:
        roots: Root nodes, newest root first
        threads: One summary per root, same order as ``roots``
        thread_map: Message key -> algorithmic thread id
        effective_thread_map: Message key -> thread id after manual layers
        manual_override_message_ids: Keys relocated by manual overrides
        manual_group_by_message_key: Message key -> manual group id
        manual_attachment_message_ids: Keys present in a group because they were pinned
    """

    roots: tuple[ThreadNode, ...] = ()
    threads: tuple[EmailThread, ...] = ()
    thread_map: dict[str, str] = field(default_factory=dict)
    effective_thread_map: dict[str, str] = field(default_factory=dict)
    manual_override_message_ids: frozenset[str] = frozenset()
    manual_group_by_message_key: dict[str, str] = field(default_factory=dict)
    manual_attachment_message_ids: frozenset[str] = frozenset()

    @property
    def message_count(self) -> int:
        return sum(thread.message_count for thread in self.threads)

    @property
    def unread_count(self) -> int:
        return sum(thread.unread_count for thread in self.threads)

    def iter_nodes(self) -> Iterator[ThreadNode]:
        """Yield every node of every root tree."""
        for root in self.roots:
            yield from root.iter_nodes()

    def thread(self, thread_id: str) -> EmailThread | None:
        """Look up a thread summary by id."""
        for thread in self.threads:
            if thread.id == thread_id:
                return thread
        return None
