"""Mutable working view of a thread forest.

The manual layers never edit ``ThreadNode`` trees in place. They load a
finished forest into a ``WorkingForest``, detach and attach messages by key,
and assemble a brand-new ``ThreadingResult`` from it. The builder uses the
same assembly step so every layer orders, labels and summarizes trees the
same way.

Traversals are iterative so that pathological reply chains cannot hit the
interpreter's recursion limit.
"""

from __future__ import annotations

import bisect
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime

from mailweave.engine.aggregate import summarize_thread
from mailweave.engine.models import MessageRecord, ThreadingResult, ThreadNode


class WorkingForest:
    """Key-addressed forest supporting detach/attach of single messages.

    Children are kept in chronological order (date, then key). A detached
    message is *floating*: it belongs to no tree until it is attached under a
    parent or added as a root.
    """

    def __init__(self) -> None:
        self._messages: dict[str, MessageRecord] = {}
        self._parent: dict[str, str | None] = {}
        self._children: dict[str, list[str]] = {}
        self._roots: list[str] = []

    @classmethod
    def from_roots(cls, roots: Iterable[ThreadNode]) -> WorkingForest:
        """Load an immutable forest."""
        forest = cls()
        for root in roots:
            forest._roots.append(root.key)
            forest._parent[root.key] = None
            stack = [root]
            while stack:
                node = stack.pop()
                forest._messages[node.key] = node.message
                forest._children[node.key] = [child.key for child in node.children]
                for child in node.children:
                    forest._parent[child.key] = node.key
                    stack.append(child)
        return forest

    @classmethod
    def from_links(
        cls,
        messages: dict[str, MessageRecord],
        children: dict[str, list[str]],
        roots: list[str],
    ) -> WorkingForest:
        """Build a forest from explicit parent -> children links.

        Child lists are re-sorted chronologically.
        """
        forest = cls()
        forest._messages = dict(messages)
        for key in messages:
            forest._parent[key] = None
            forest._children[key] = []
        for parent_key, child_keys in children.items():
            ordered = sorted(child_keys, key=forest.order_of)
            forest._children[parent_key] = ordered
            for child_key in ordered:
                forest._parent[child_key] = parent_key
        forest._roots = list(roots)
        return forest

    def __contains__(self, key: object) -> bool:
        return key in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def roots(self) -> list[str]:
        return list(self._roots)

    def message(self, key: str) -> MessageRecord:
        return self._messages[key]

    def order_of(self, key: str) -> tuple[datetime, str]:
        """Chronological sort key for a message."""
        return (self._messages[key].date, key)

    def root_of(self, key: str) -> str:
        """Walk up to the root of the tree containing ``key``."""
        current = key
        parent = self._parent[current]
        while parent is not None:
            current = parent
            parent = self._parent[current]
        return current

    def is_ancestor(self, ancestor: str, key: str) -> bool:
        """Check whether ``ancestor`` is ``key`` or one of its ancestors."""
        current: str | None = key
        while current is not None:
            if current == ancestor:
                return True
            current = self._parent[current]
        return False

    def detach(self, key: str) -> None:
        """Remove a single message from its tree.

        Its children take its place in the parent's child list (or the root
        list), keeping their relative order. The message is left floating.
        """
        parent = self._parent[key]
        orphans = self._children[key]
        siblings = self._children[parent] if parent is not None else self._roots

        index = siblings.index(key)
        siblings[index : index + 1] = orphans
        for orphan in orphans:
            self._parent[orphan] = parent
        if parent is not None and orphans:
            siblings.sort(key=self.order_of)

        self._children[key] = []
        self._parent[key] = None

    def attach(self, parent_key: str, key: str) -> None:
        """Attach a floating message as a direct child of ``parent_key``."""
        bisect.insort(self._children[parent_key], key, key=self.order_of)
        self._parent[key] = parent_key

    def graft(self, parent_key: str, root_key: str) -> None:
        """Move a whole tree under ``parent_key``, keeping its replies."""
        self._roots.remove(root_key)
        self.attach(parent_key, root_key)

    def add_root(self, key: str) -> None:
        """Turn a floating message into a root."""
        self._roots.append(key)
        self._parent[key] = None

    def iter_tree(self, root_key: str) -> Iterator[str]:
        """Yield the keys of a tree in pre-order."""
        stack = [root_key]
        while stack:
            key = stack.pop()
            yield key
            stack.extend(reversed(self._children[key]))

    def build_tree(
        self,
        root_key: str,
        relabel: Callable[[MessageRecord], MessageRecord] | None = None,
    ) -> ThreadNode:
        """Build an immutable tree rooted at ``root_key``.

        Args:
            root_key: Key of the root message
            relabel: Optional transform applied to every message
        """
        built: dict[str, ThreadNode] = {}
        stack: list[tuple[str, bool]] = [(root_key, False)]
        while stack:
            key, expanded = stack.pop()
            if not expanded:
                stack.append((key, True))
                stack.extend((child, False) for child in self._children[key])
                continue
            message = self._messages[key]
            built[key] = ThreadNode(
                message=relabel(message) if relabel else message,
                key=key,
                children=tuple(built.pop(child) for child in self._children[key]),
            )
        return built[root_key]


def assemble_result(
    forest: WorkingForest,
    thread_id_for_root: Callable[[str], str],
    *,
    thread_map: dict[str, str] | None = None,
    assign_thread_ids: bool = False,
    manual_override_message_ids: frozenset[str] = frozenset(),
    manual_group_by_message_key: dict[str, str] | None = None,
    manual_attachment_message_ids: frozenset[str] = frozenset(),
) -> ThreadingResult:
    """Turn a working forest into a ``ThreadingResult``.

    Roots are ordered newest root message first (ties: key, descending).

    Args:
        forest: Forest to assemble
        thread_id_for_root: Maps a root key to the id of its thread
        thread_map: Algorithmic key -> thread map; defaults to the effective map
        assign_thread_ids: Stamp each message with its thread id (builder only)
        manual_override_message_ids: Keys relocated by overrides
        manual_group_by_message_key: Key -> manual group id
        manual_attachment_message_ids: Keys pinned into groups

    Returns:
        Fully populated ThreadingResult
    """
    root_keys = sorted(forest.roots, key=forest.order_of, reverse=True)

    roots: list[ThreadNode] = []
    threads = []
    effective: dict[str, str] = {}

    for root_key in root_keys:
        thread_id = thread_id_for_root(root_key)
        relabel = (lambda message, tid=thread_id: message.assigning(tid)) if assign_thread_ids else None
        root = forest.build_tree(root_key, relabel=relabel)
        for key in forest.iter_tree(root_key):
            effective[key] = thread_id
        roots.append(root)
        threads.append(summarize_thread(root, thread_id))

    return ThreadingResult(
        roots=tuple(roots),
        threads=tuple(threads),
        thread_map=dict(effective) if thread_map is None else dict(thread_map),
        effective_thread_map=effective,
        manual_override_message_ids=manual_override_message_ids,
        manual_group_by_message_key=dict(manual_group_by_message_key or {}),
        manual_attachment_message_ids=manual_attachment_message_ids,
    )
