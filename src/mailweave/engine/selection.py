"""Turn a user's message selection into manual group edits.

The functions here only compute what should change; persisting the edit is
left to the caller (normally ``DatabaseStore.upsert_manual_thread_groups``
and ``delete_manual_thread_group``).

Grouping rules for a selection of two or more messages and a target:
    - An ungrouped selected message absorbs its whole algorithmic thread when
      that thread has replies, is the target's thread, or is selected more
      than once. A lone single-message thread is pinned by key instead.
    - No selected message in a group yet: a new group is created.
    - Exactly one existing group touched: it is extended.
    - Several groups touched: they are merged into a new group and the old
      ones are deleted.
"""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, replace

from mailweave.core.logging import get_logger
from mailweave.engine.models import ManualThreadGroup, ThreadingResult

logger = get_logger(__name__)


def new_group_id() -> str:
    """Generate a fresh manual group id."""
    return f"manual-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class GroupEdit:
    """Group changes to persist.

    Attributes:
        upserts: Groups to insert or replace
        deletes: Ids of groups to delete
    """

    upserts: tuple[ManualThreadGroup, ...] = ()
    deletes: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.upserts and not self.deletes


def _algorithmic_thread(result: ThreadingResult, key: str) -> str:
    return result.thread_map.get(key, key)


def group_selection(
    selected_keys: Iterable[str],
    target_key: str,
    result: ThreadingResult,
    groups: Mapping[str, ManualThreadGroup],
    id_factory: Callable[[], str] = new_group_id,
) -> GroupEdit:
    """Compute the group edit that joins the selected messages.

    Args:
        selected_keys: Keys of the selected messages
        target_key: Key of the message the selection is grouped onto
        result: Current (fully layered) threading result
        groups: Stored groups by id
        id_factory: Produces ids for newly created groups

    Returns:
        GroupEdit; empty when the selection cannot form a group
    """
    known = result.effective_thread_map
    if target_key not in known:
        return GroupEdit()
    selected = sorted({key for key in selected_keys if key in known} | {target_key})
    if len(selected) < 2:
        return GroupEdit()

    thread_sizes = Counter(result.thread_map.values())
    selected_per_thread = Counter(_algorithmic_thread(result, key) for key in selected)
    target_thread = _algorithmic_thread(result, target_key)

    touched_groups = sorted(
        {result.manual_group_by_message_key[key] for key in selected if key in result.manual_group_by_message_key}
    )

    thread_ids: set[str] = set()
    pinned: set[str] = set()
    for key in selected:
        if key in result.manual_group_by_message_key:
            continue
        thread_id = _algorithmic_thread(result, key)
        if (
            thread_sizes[thread_id] > 1
            or thread_id == target_thread
            or selected_per_thread[thread_id] > 1
        ):
            thread_ids.add(thread_id)
        else:
            pinned.add(key)

    if not touched_groups:
        if len(thread_ids) < 2 and not (pinned and thread_ids):
            return GroupEdit()
        group = ManualThreadGroup(id=id_factory(), thread_ids=thread_ids, message_keys=pinned)
        logger.info("Manual group created", group_id=group.id, member_count=group.member_count)
        return GroupEdit(upserts=(group,))

    if len(touched_groups) == 1:
        existing = groups.get(touched_groups[0])
        if existing is None or not (thread_ids or pinned):
            return GroupEdit()
        group = replace(
            existing,
            thread_ids=existing.thread_ids | thread_ids,
            message_keys=existing.message_keys | pinned,
        )
        logger.info("Manual group extended", group_id=group.id, member_count=group.member_count)
        return GroupEdit(upserts=(group,))

    merged_threads = set(thread_ids)
    merged_keys = set(pinned)
    for group_id in touched_groups:
        existing = groups.get(group_id)
        if existing is None:
            continue
        merged_threads |= existing.thread_ids
        merged_keys |= existing.message_keys

    group = ManualThreadGroup(id=id_factory(), thread_ids=merged_threads, message_keys=merged_keys)
    logger.info("Manual groups merged", group_id=group.id, merged_groups=touched_groups)
    return GroupEdit(upserts=(group,), deletes=tuple(touched_groups))


def ungroup_selection(
    selected_keys: Iterable[str],
    result: ThreadingResult,
    groups: Mapping[str, ManualThreadGroup],
) -> GroupEdit:
    """Compute the group edit that removes the selected messages from groups.

    A pinned message is unpinned; any other grouped message takes its whole
    algorithmic thread out of the group. Groups left with at most one member
    are deleted.

    Args:
        selected_keys: Keys of the selected messages
        result: Current (fully layered) threading result
        groups: Stored groups by id

    Returns:
        GroupEdit; empty when nothing selected belongs to a group
    """
    removed_threads: dict[str, set[str]] = {}
    removed_keys: dict[str, set[str]] = {}
    for key in sorted(set(selected_keys)):
        group_id = result.manual_group_by_message_key.get(key)
        if group_id is None:
            continue
        if key in result.manual_attachment_message_ids:
            removed_keys.setdefault(group_id, set()).add(key)
        else:
            removed_threads.setdefault(group_id, set()).add(_algorithmic_thread(result, key))

    upserts: list[ManualThreadGroup] = []
    deletes: list[str] = []
    for group_id in sorted(removed_threads.keys() | removed_keys.keys()):
        existing = groups.get(group_id)
        if existing is None:
            continue
        remaining = replace(
            existing,
            thread_ids=existing.thread_ids - removed_threads.get(group_id, set()),
            message_keys=existing.message_keys - removed_keys.get(group_id, set()),
        )
        if remaining.member_count <= 1:
            deletes.append(group_id)
        else:
            upserts.append(remaining)

    if upserts or deletes:
        logger.info("Manual group membership removed", updated=len(upserts), deleted=len(deletes))
    return GroupEdit(upserts=tuple(upserts), deletes=tuple(deletes))
