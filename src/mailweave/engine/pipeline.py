"""Rethread pipeline: recompute every thread from stored state.

Runs the layers strictly in order:
    fetch messages -> build_threads -> apply_overrides -> apply_groups
and then persists what the layers decided (group corrections, pruned
override keys, thread membership) and checkpoints the WAL.

Each run generates a UUID4 rethread_cycle_id for log correlation. All log
entries within a run share this ID.

Usage:
    from mailweave.engine.pipeline import RethreadPipeline

    pipeline = RethreadPipeline(store, config)
    outcome = await pipeline.rethread()
    print(outcome.thread_count)
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mailweave.config_schema import AppConfig
from mailweave.core.logging import get_logger, rethread_cycle
from mailweave.engine.groups import apply_groups
from mailweave.engine.models import ManualThreadGroup, ThreadingResult
from mailweave.engine.overrides import apply_overrides
from mailweave.engine.threader import build_threads

if TYPE_CHECKING:
    from mailweave.db.store import DatabaseStore

logger = get_logger(__name__)


@dataclass
class RethreadOutcome:
    """Result of a single rethread run."""

    cycle_id: str
    result: ThreadingResult = field(default_factory=ThreadingResult)
    duration_ms: int = 0
    messages_fetched: int = 0
    migrated_groups: int = 0
    invalid_override_keys: frozenset[str] = frozenset()
    pruned_overrides: int = 0
    corrected_groups: tuple[ManualThreadGroup, ...] = ()

    @property
    def thread_count(self) -> int:
        return len(self.result.threads)


class RethreadPipeline:
    """Recomputes threads from the store and writes the membership back.

    Attributes:
        _store: DatabaseStore for messages and manual threading state
        _config: Application configuration
    """

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    async def rethread(self, since: datetime | None = None) -> RethreadOutcome:
        """Execute a single rethread run.

        Args:
            since: Only thread messages dated at or after this instant

        Returns:
            RethreadOutcome with the final result and what was corrected

        Raises:
            DatabaseError: If reading or writing the store fails
        """
        with rethread_cycle(str(uuid.uuid4())) as cycle_id:
            return await self._run(cycle_id, since)

    async def _run(self, cycle_id: str, since: datetime | None) -> RethreadOutcome:
        start_time = time.monotonic()
        outcome = RethreadOutcome(cycle_id=cycle_id)
        manual = self._config.manual

        logger.info("Rethread started", since=since.isoformat() if since else None)

        try:
            if manual.migrate_legacy_overrides:
                migrated = await self._store.migrate_legacy_overrides()
                outcome.migrated_groups = len(migrated)

            messages = await self._store.fetch_messages(since=since)
            outcome.messages_fetched = len(messages)

            result = build_threads(messages, self._config.threading)

            if manual.apply_overrides:
                overrides = await self._store.fetch_manual_thread_overrides()
                result, invalid_keys = apply_overrides(overrides, result)
                outcome.invalid_override_keys = invalid_keys
                if invalid_keys and manual.prune_invalid_overrides:
                    outcome.pruned_overrides = await self._store.delete_manual_thread_overrides(
                        sorted(invalid_keys)
                    )

            if manual.apply_groups:
                groups = await self._store.fetch_manual_thread_groups()
                result, corrected = apply_groups(groups, result)
                outcome.corrected_groups = corrected
                if corrected:
                    await self._store.apply_group_corrections(corrected)

            await self._store.update_thread_membership(result)
            await self._store.set_state("last_rethread_at", datetime.now(UTC).isoformat())
            await self._store.checkpoint_wal()
            outcome.result = result

        finally:
            outcome.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "Rethread complete",
                duration_ms=outcome.duration_ms,
                messages_fetched=outcome.messages_fetched,
                thread_count=outcome.thread_count,
                message_count=outcome.result.message_count,
                migrated_groups=outcome.migrated_groups,
                invalid_overrides=len(outcome.invalid_override_keys),
                pruned_overrides=outcome.pruned_overrides,
                corrected_groups=len(outcome.corrected_groups),
            )

        return outcome
