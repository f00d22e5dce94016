"""Manual group layer: merge algorithmic threads into persistent groups.

A ``ManualThreadGroup`` absorbs whole algorithmic threads plus individually
pinned messages. Its id survives recomputation and becomes the merged
thread's id, while membership is re-resolved against the current base
result every time.

Conflicting definitions are reconciled in input order: the first group to
claim a thread id (or pin a message) keeps it and later groups lose it. The
corrected definitions are returned so the caller can persist them; otherwise
storage and the effective grouping would drift apart.

Usage:
    from mailweave.engine.groups import apply_groups

    result, updated_groups = apply_groups(stored_groups, base)
    if updated_groups:
        await store.apply_group_corrections(updated_groups)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from typing import NamedTuple

from mailweave.core.logging import get_logger
from mailweave.engine.forest import WorkingForest, assemble_result
from mailweave.engine.models import ManualThreadGroup, ThreadingResult
from mailweave.engine.overrides import root_keys_by_thread_id

logger = get_logger(__name__)


class GroupApplication(NamedTuple):
    """Result of applying manual groups.

    Attributes:
        result: Threading result with each live group merged into one thread
        updated_groups: Group definitions corrected by conflict reconciliation
    """

    result: ThreadingResult
    updated_groups: tuple[ManualThreadGroup, ...]


def reconcile_groups(
    groups: Iterable[ManualThreadGroup],
) -> tuple[list[ManualThreadGroup], list[ManualThreadGroup]]:
    """Resolve overlapping group definitions.

    Walks groups in the given order. A thread id or pinned message key
    already claimed by an earlier group is removed from the later group.
    Repeated group ids after the first are ignored.

    Args:
        groups: Stored group definitions, in stable order

    Returns:
        (effective groups, corrected groups). Corrected groups also appear,
        in corrected form, among the effective groups.
    """
    effective: list[ManualThreadGroup] = []
    corrected: list[ManualThreadGroup] = []
    seen_ids: set[str] = set()
    thread_owner: dict[str, str] = {}
    key_owner: dict[str, str] = {}

    for group in groups:
        if group.id in seen_ids:
            logger.warning("Duplicate manual group id ignored", group_id=group.id)
            continue
        seen_ids.add(group.id)

        kept_threads = frozenset(t for t in group.thread_ids if t not in thread_owner)
        kept_keys = frozenset(k for k in group.message_keys if k not in key_owner)
        for thread_id in kept_threads:
            thread_owner[thread_id] = group.id
        for key in kept_keys:
            key_owner[key] = group.id

        if kept_threads != group.thread_ids or kept_keys != group.message_keys:
            fixed = replace(group, thread_ids=kept_threads, message_keys=kept_keys)
            logger.info(
                "Manual group conflict corrected",
                group_id=group.id,
                removed_threads=sorted(group.thread_ids - kept_threads),
                removed_messages=sorted(group.message_keys - kept_keys),
            )
            corrected.append(fixed)
            effective.append(fixed)
        else:
            effective.append(group)

    return effective, corrected


def apply_groups(groups: Iterable[ManualThreadGroup], base: ThreadingResult) -> GroupApplication:
    """Merge algorithmic threads and pinned messages into their groups.

    For each group, the earliest root among its live algorithmic threads
    becomes the merged root; the other thread roots and the pinned messages
    become its direct children. Thread ids missing from ``base`` are skipped
    for this pass without touching the stored definition.

    Nodes keep ``message.thread_id`` (their algorithmic thread) while
    ``effective_thread_map`` points them at the group id.

    Args:
        groups: Stored group definitions, in stable order
        base: Result to merge into (builder output, optionally overridden)

    Returns:
        GroupApplication with the merged result and corrected definitions
    """
    effective, corrected = reconcile_groups(groups)
    if not effective:
        return GroupApplication(base, tuple(corrected))

    forest = WorkingForest.from_roots(base.roots)
    live_threads = set(base.thread_map.values())
    thread_by_root = {root: thread for thread, root in root_keys_by_thread_id(base).items()}

    thread_owner: dict[str, str] = {}
    stale_threads = 0
    for group in effective:
        for thread_id in group.thread_ids:
            if thread_id in live_threads:
                thread_owner[thread_id] = group.id
            else:
                stale_threads += 1

    def owner_of_tree(key: str) -> str | None:
        return thread_owner.get(base.thread_map.get(forest.root_of(key), ""))

    # Pinned messages leave their trees individually
    pinned_owner: dict[str, str] = {}
    stale_messages = 0
    for group in effective:
        for key in sorted(group.message_keys):
            if key not in forest:
                stale_messages += 1
                continue
            if owner_of_tree(key) == group.id:
                continue
            forest.detach(key)
            pinned_owner[key] = group.id

    thread_roots: dict[str, list[str]] = {}
    for root_key in forest.roots:
        owner = thread_owner.get(base.thread_map.get(root_key, ""))
        if owner is not None:
            thread_roots.setdefault(owner, []).append(root_key)

    group_by_root: dict[str, str] = {}
    for group in effective:
        constituents = sorted(thread_roots.get(group.id, []), key=forest.order_of)
        pinned = sorted(
            (key for key, owner in pinned_owner.items() if owner == group.id),
            key=forest.order_of,
        )

        if constituents:
            head = constituents[0]
            for root_key in constituents[1:]:
                forest.graft(head, root_key)
        elif pinned:
            head = pinned.pop(0)
            forest.add_root(head)
        else:
            continue

        for key in pinned:
            forest.attach(head, key)
        group_by_root[head] = group.id

    group_by_message_key = {
        key: group_id
        for head, group_id in group_by_root.items()
        for key in forest.iter_tree(head)
    }

    def thread_id_for_root(root_key: str) -> str:
        if root_key in group_by_root:
            return group_by_root[root_key]
        # Replies promoted to roots start threads keyed by themselves
        return thread_by_root.get(root_key, root_key)

    result = assemble_result(
        forest,
        thread_id_for_root,
        thread_map=base.thread_map,
        manual_override_message_ids=base.manual_override_message_ids,
        manual_group_by_message_key=group_by_message_key,
        manual_attachment_message_ids=frozenset(pinned_owner),
    )

    logger.info(
        "Manual groups applied",
        group_count=len(group_by_root),
        pinned_messages=len(pinned_owner),
        stale_threads=stale_threads,
        stale_messages=stale_messages,
        corrected_groups=len(corrected),
    )
    return GroupApplication(result, tuple(corrected))
