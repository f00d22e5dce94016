"""Reference-chain threading (Jamie Zawinski's algorithm).

Based on the algorithm described at https://www.jwz.org/doc/threading.html,
with containers held in an index-addressed arena and every parent edge
validated against the existing ancestor chain, so cyclic or contradictory
References headers can never produce a loop.

Pipeline, executed once per call:
    1. Put messages in a canonical order and resolve duplicate Message-IDs
    2. Create containers (real and placeholder)
    3. Link containers along each message's reference chain
    4. Collect the root set
    5. Prune empty placeholder containers
    6. Group stray single roots that share a normalized subject
    7. Assemble roots, summaries and key -> thread maps

Usage:
    from mailweave.engine.threader import build_threads

    result = build_threads(messages)
    for thread in result.threads:
        print(thread.id, thread.message_count)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from mailweave.config_schema import ThreadingConfig
from mailweave.core.logging import get_logger
from mailweave.engine.forest import WorkingForest, assemble_result
from mailweave.engine.identity import fallback_key, normalize_identifier
from mailweave.engine.models import MessageRecord, ThreadingResult
from mailweave.engine.subjects import normalize_subject, snippet_similarity

logger = get_logger(__name__)


@dataclass(slots=True)
class Container:
    """Arena node used only while linking.

    Attributes:
        key: Message key (or referenced id for placeholders)
        message: The message, or None for a placeholder
        parent: Arena index of the parent container
        children: Arena indices of child containers, in link order
    """

    key: str
    message: MessageRecord | None = None
    parent: int | None = None
    children: list[int] = field(default_factory=list)

    def is_dummy(self) -> bool:
        """Check if this is an empty container (no message)."""
        return self.message is None


class ContainerGraph:
    """Arena of containers addressed by index and by key."""

    def __init__(self) -> None:
        self.containers: list[Container] = []
        self.index: dict[str, int] = {}
        self.refused_links = 0

    def container_for(self, key: str) -> int:
        """Find or create the container for a key."""
        existing = self.index.get(key)
        if existing is not None:
            return existing
        self.containers.append(Container(key=key))
        position = len(self.containers) - 1
        self.index[key] = position
        return position

    def is_ancestor_or_self(self, ancestor: int, node: int) -> bool:
        """Walk up from ``node`` looking for ``ancestor``."""
        current: int | None = node
        while current is not None:
            if current == ancestor:
                return True
            current = self.containers[current].parent
        return False

    def link(self, parent: int, child: int) -> bool:
        """Make ``child`` a child of ``parent`` unless that would form a cycle.

        An existing parent of ``child`` is replaced.

        Returns:
            True if the edge was made (or already existed)
        """
        child_container = self.containers[child]
        if child_container.parent == parent:
            return True
        if self.is_ancestor_or_self(child, parent):
            self.refused_links += 1
            return False

        if child_container.parent is not None:
            self.containers[child_container.parent].children.remove(child)
        child_container.parent = parent
        self.containers[parent].children.append(child)
        return True

    def root_set(self) -> list[int]:
        """Indices of containers without a parent, in creation order."""
        return [i for i, container in enumerate(self.containers) if container.parent is None]


def _unique_key(candidate: str, used: set[str]) -> str:
    if candidate not in used:
        return candidate
    suffix = 2
    while f"{candidate}~{suffix}" in used:
        suffix += 1
    return f"{candidate}~{suffix}"


def assign_keys(messages: Iterable[MessageRecord]) -> list[tuple[str, MessageRecord]]:
    """Put messages in canonical order and give each a unique key.

    When several messages share a key, the most recent one (ties: greater
    record id) keeps it; the others are keyed by their record identity.

    Returns:
        (key, message) pairs ordered by date, natural key and record id
    """
    ordered = sorted(messages, key=lambda m: (m.date, m.thread_key, m.id))

    owner_by_key: dict[str, int] = {}
    for position, message in enumerate(ordered):
        natural = message.thread_key
        current = owner_by_key.get(natural)
        if current is None or (message.date, message.id) >= (
            ordered[current].date,
            ordered[current].id,
        ):
            owner_by_key[natural] = position

    used = set(owner_by_key)
    keyed: list[tuple[str, MessageRecord]] = []
    duplicates = 0
    for position, message in enumerate(ordered):
        natural = message.thread_key
        if owner_by_key[natural] == position:
            keyed.append((natural, message))
            continue
        duplicates += 1
        key = _unique_key(fallback_key(message), used)
        used.add(key)
        keyed.append((key, message))

    if duplicates:
        logger.info("Duplicate message identifiers resolved", duplicates=duplicates)
    return keyed


def reference_chain(message: MessageRecord, own_keys: set[str]) -> list[str]:
    """Normalized parent chain for a message, oldest first.

    Uses References, falling back to In-Reply-To when References holds no
    usable id. Invalid ids, self-references and repeats are dropped.
    """
    candidates = [normalize_identifier(ref) for ref in message.references]
    chain_source = [ref for ref in candidates if ref is not None]
    if not chain_source:
        in_reply_to = normalize_identifier(message.in_reply_to)
        chain_source = [in_reply_to] if in_reply_to is not None else []

    chain: list[str] = []
    seen: set[str] = set()
    for ref in chain_source:
        if ref in own_keys or ref in seen:
            continue
        seen.add(ref)
        chain.append(ref)
    return chain


def prune_empty_containers(graph: ContainerGraph, roots: list[int]) -> tuple[list[int], dict[int, list[int]]]:
    """Splice placeholder containers out of the forest.

    A placeholder is replaced by its (already pruned) children in its
    parent's child list, or in the root set. Runs as an explicit post-order
    walk.

    Returns:
        (pruned root indices, real container index -> pruned child indices)
    """
    resolved: dict[int, list[int]] = {}
    final_children: dict[int, list[int]] = {}

    stack: list[tuple[int, bool]] = [(root, False) for root in reversed(roots)]
    while stack:
        position, expanded = stack.pop()
        container = graph.containers[position]
        if not expanded:
            stack.append((position, True))
            stack.extend((child, False) for child in reversed(container.children))
            continue

        spliced = [real for child in container.children for real in resolved.pop(child)]
        if container.is_dummy():
            resolved[position] = spliced
        else:
            final_children[position] = spliced
            resolved[position] = [position]

    pruned_roots = [real for root in roots for real in resolved.pop(root)]
    return pruned_roots, final_children


def group_by_subject(
    graph: ContainerGraph,
    roots: list[int],
    final_children: dict[int, list[int]],
    options: ThreadingConfig,
) -> list[int]:
    """Gather single-message roots that share a normalized subject.

    The earliest member (ties: key) becomes the root; the others become its
    children. With ``min_snippet_similarity`` set, members whose snippet is
    too different from the root's stay separate.

    Returns:
        The new root list
    """
    by_subject: dict[str, list[int]] = {}
    for position in roots:
        if final_children[position]:
            continue
        message = graph.containers[position].message
        subject = normalize_subject(
            message.subject,
            options.subject_prefixes,
            timeout=options.regex_timeout_seconds,
        )
        if subject:
            by_subject.setdefault(subject, []).append(position)

    absorbed: set[int] = set()
    for members in by_subject.values():
        if len(members) < 2:
            continue
        members.sort(key=lambda p: (graph.containers[p].message.date, graph.containers[p].key))
        head, *rest = members
        head_snippet = graph.containers[head].message.snippet
        for position in rest:
            snippet = graph.containers[position].message.snippet
            if (
                options.min_snippet_similarity > 0
                and head_snippet
                and snippet
                and snippet_similarity(head_snippet, snippet) < options.min_snippet_similarity
            ):
                continue
            final_children[head].append(position)
            absorbed.add(position)

    if absorbed:
        logger.debug("Stray roots grouped by subject", absorbed=len(absorbed))
    return [position for position in roots if position not in absorbed]


def build_threads(
    messages: Iterable[MessageRecord],
    options: ThreadingConfig | None = None,
) -> ThreadingResult:
    """Thread a flat collection of messages into conversations.

    Pure function of its input: the same messages in any order always yield
    the same roots and thread ids. Never raises for malformed headers; empty
    input yields an empty result.

    Args:
        messages: Every message currently in scope
        options: Threading policy (defaults to ``ThreadingConfig()``)

    Returns:
        Base ThreadingResult whose effective map equals its algorithmic map
    """
    options = options or ThreadingConfig()
    keyed = assign_keys(messages)
    if not keyed:
        return ThreadingResult()

    graph = ContainerGraph()
    own_positions: list[int] = []
    for key, message in keyed:
        position = graph.container_for(key)
        graph.containers[position].message = message
        own_positions.append(position)

    for (key, message), position in zip(keyed, own_positions):
        chain = reference_chain(message, {key, message.thread_key})
        if not chain:
            continue

        previous: int | None = None
        for ref in chain:
            ref_position = graph.container_for(ref)
            if previous is not None and graph.containers[ref_position].parent is None:
                graph.link(previous, ref_position)
            previous = ref_position

        graph.link(previous, position)

    roots, final_children = prune_empty_containers(graph, graph.root_set())
    if options.group_by_subject:
        roots = group_by_subject(graph, roots, final_children, options)

    messages_by_key = {
        graph.containers[position].key: graph.containers[position].message
        for position in final_children
    }
    children_by_key = {
        graph.containers[position].key: [graph.containers[child].key for child in children]
        for position, children in final_children.items()
    }
    forest = WorkingForest.from_links(
        messages_by_key,
        children_by_key,
        [graph.containers[position].key for position in roots],
    )

    # Thread id == root key (see identity.thread_identifier)
    result = assemble_result(forest, lambda root_key: root_key, assign_thread_ids=True)

    logger.debug(
        "Threads built",
        message_count=len(keyed),
        thread_count=len(result.threads),
        placeholder_count=len(graph.containers) - len(keyed),
        refused_links=graph.refused_links,
    )
    return result
