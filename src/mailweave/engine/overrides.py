"""Manual override layer: force single messages into chosen threads.

Overrides are always applied to the *base* result of ``build_threads``,
never to a previously overridden result. Dropping an override key and
re-applying the rest therefore restores the algorithmic placement exactly.

Usage:
    from mailweave.engine.overrides import apply_overrides

    base = build_threads(messages)
    result, invalid_keys = apply_overrides({"b@example.com": "a@example.com"}, base)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import NamedTuple

from mailweave.core.logging import get_logger
from mailweave.engine.forest import WorkingForest, assemble_result
from mailweave.engine.models import ThreadingResult

logger = get_logger(__name__)


class OverrideApplication(NamedTuple):
    """Result of applying manual overrides.

    Attributes:
        result: Threading result with overridden messages relocated
        invalid_keys: Override keys whose message or target thread is missing
    """

    result: ThreadingResult
    invalid_keys: frozenset[str]


def root_keys_by_thread_id(result: ThreadingResult) -> dict[str, str]:
    """Map each thread id of a result to the key of its root message."""
    return {thread.id: root.key for thread, root in zip(result.threads, result.roots)}


def apply_overrides(overrides: Mapping[str, str], base: ThreadingResult) -> OverrideApplication:
    """Relocate individually overridden messages.

    Each overridden message is detached on its own (its replies take its
    former place) and attached as a direct child of the root of the tree that
    now holds the target thread's root message. When an earlier override
    moved that root message elsewhere, later overrides naming the same thread
    follow it there. Keys are processed in sorted order. Threads left empty
    disappear.

    Args:
        overrides: Message key -> target thread id
        base: Unmodified result of ``build_threads``

    Returns:
        OverrideApplication with the new result and the keys that could not
        be applied. With no overrides the base result itself is returned.
    """
    if not overrides:
        return OverrideApplication(base, frozenset())

    forest = WorkingForest.from_roots(base.roots)
    root_by_thread = root_keys_by_thread_id(base)
    thread_by_root = {root_key: thread_id for thread_id, root_key in root_by_thread.items()}

    invalid: set[str] = set()
    relocated: set[str] = set()

    for key in sorted(overrides):
        target_thread = overrides[key]
        target_root = root_by_thread.get(target_thread)
        if key not in forest or target_root is None:
            invalid.add(key)
            continue
        if key == target_root:
            # Already the root of the requested thread
            continue
        # The target root may itself have been moved by an earlier override
        target_root = forest.root_of(target_root)
        if key == target_root:
            continue

        forest.detach(key)
        forest.attach(target_root, key)
        relocated.add(key)

    if invalid:
        logger.warning(
            "Manual overrides skipped",
            invalid_count=len(invalid),
            invalid_keys=sorted(invalid)[:10],
        )

    if not relocated:
        return OverrideApplication(base, frozenset(invalid))

    def thread_id_for_root(root_key: str) -> str:
        # Replies promoted to roots start threads keyed by themselves
        return thread_by_root.get(root_key, root_key)

    result = assemble_result(
        forest,
        thread_id_for_root,
        thread_map=base.thread_map,
        manual_override_message_ids=frozenset(relocated),
    )

    logger.info(
        "Manual overrides applied",
        applied=len(relocated),
        invalid=len(invalid),
        thread_count=len(result.threads),
    )
    return OverrideApplication(result, frozenset(invalid))
