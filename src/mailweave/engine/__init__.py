"""Threading engine.

This package provides the threading layers, applied in order:
- Builder: reference-chain threading plus stray-subject grouping
- Manual overrides: relocate single messages into chosen threads
- Manual groups: merge whole threads and pinned messages under a group id
- Selection editing: turn a user selection into group edits
- Rethread pipeline: run every layer against the store
"""

from mailweave.engine.aggregate import summarize_thread
from mailweave.engine.groups import GroupApplication, apply_groups, reconcile_groups
from mailweave.engine.identity import normalize_identifier, thread_identifier, thread_key
from mailweave.engine.models import (
    EmailThread,
    ManualThreadGroup,
    MessageRecord,
    ThreadingResult,
    ThreadNode,
)
from mailweave.engine.overrides import OverrideApplication, apply_overrides
from mailweave.engine.pipeline import RethreadOutcome, RethreadPipeline
from mailweave.engine.selection import GroupEdit, group_selection, ungroup_selection
from mailweave.engine.subjects import normalize_subject
from mailweave.engine.threader import build_threads

__all__ = [
    # Models
    "EmailThread",
    "ManualThreadGroup",
    "MessageRecord",
    "ThreadingResult",
    "ThreadNode",
    # Identity
    "normalize_identifier",
    "thread_identifier",
    "thread_key",
    "normalize_subject",
    # Layers
    "build_threads",
    "summarize_thread",
    "OverrideApplication",
    "apply_overrides",
    "GroupApplication",
    "apply_groups",
    "reconcile_groups",
    # Selection editing
    "GroupEdit",
    "group_selection",
    "ungroup_selection",
    # Pipeline
    "RethreadOutcome",
    "RethreadPipeline",
]
