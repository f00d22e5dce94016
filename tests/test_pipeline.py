"""Tests for the rethread pipeline.

Runs the full fetch -> build -> overrides -> groups -> persist sequence
against a real SQLite store.
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from conftest import build_message, key, ref

from mailweave.config_schema import AppConfig, ManualConfig
from mailweave.core.errors import DatabaseError
from mailweave.core.logging import get_correlation_id
from mailweave.db.store import DatabaseStore
from mailweave.engine.models import ManualThreadGroup
from mailweave.engine.pipeline import RethreadPipeline

MESSAGES = [
    build_message("a", 0),
    build_message("a2", 1, references=(ref("a"),)),
    build_message("b", 10),
    build_message("c", 20),
]


@pytest.fixture
async def store(sample_config: AppConfig) -> DatabaseStore:
    """Initialized store holding the sample messages."""
    store = DatabaseStore(Path(sample_config.database.path))
    await store.initialize()
    await store.upsert_messages(MESSAGES)
    return store


class TestRethread:
    """Tests for RethreadPipeline.rethread()."""

    @pytest.mark.asyncio
    async def test_plain_rethread(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test threads are built and membership persisted."""
        outcome = await RethreadPipeline(store, sample_config).rethread()

        assert outcome.messages_fetched == 4
        assert outcome.thread_count == 3
        assert outcome.cycle_id
        membership = await store.fetch_thread_membership()
        assert membership[key("a2")] == key("a")
        assert await store.get_state("last_rethread_at") is not None

    @pytest.mark.asyncio
    async def test_correlation_id_cleared(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test the cycle id does not leak past the run."""
        await RethreadPipeline(store, sample_config).rethread()
        assert get_correlation_id() is None

    @pytest.mark.asyncio
    async def test_overrides_then_groups(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test overrides are applied before groups."""
        await store.upsert_manual_thread_overrides({key("c"): key("b")})
        await store.upsert_manual_thread_groups([ManualThreadGroup(id="g", thread_ids={key("a"), key("b")})])

        outcome = await RethreadPipeline(store, sample_config).rethread()

        assert outcome.thread_count == 1
        assert outcome.result.threads[0].id == "g"
        assert outcome.result.manual_override_message_ids == frozenset({key("c")})
        assert set((await store.fetch_thread_membership()).values()) == {"g"}

    @pytest.mark.asyncio
    async def test_invalid_overrides_reported_and_pruned(
        self, store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        """Test unusable overrides are reported and optionally deleted."""
        await store.upsert_manual_thread_overrides({"gone@example.com": key("a"), key("c"): "no-thread"})

        kept = await RethreadPipeline(store, sample_config).rethread()
        assert kept.invalid_override_keys == frozenset({"gone@example.com", key("c")})
        assert kept.pruned_overrides == 0

        config = sample_config.model_copy(update={"manual": ManualConfig(prune_invalid_overrides=True)})
        pruned = await RethreadPipeline(store, config).rethread()
        assert pruned.pruned_overrides == 2
        assert await store.fetch_manual_thread_overrides() == {}

    @pytest.mark.asyncio
    async def test_group_corrections_persisted(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test conflicting group definitions are fixed in storage."""
        await store.upsert_manual_thread_groups([ManualThreadGroup(id="g1", thread_ids={key("a"), key("b")})])
        await store.upsert_manual_thread_groups([ManualThreadGroup(id="g2", thread_ids={key("b"), key("c")})])

        outcome = await RethreadPipeline(store, sample_config).rethread()

        assert outcome.corrected_groups == (ManualThreadGroup(id="g2", thread_ids={key("c")}),)
        groups = await store.fetch_manual_thread_groups()
        assert groups[1] == ManualThreadGroup(id="g2", thread_ids={key("c")})

    @pytest.mark.asyncio
    async def test_legacy_migration(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test stored overrides are converted to groups when configured."""
        await store.upsert_manual_thread_overrides({key("c"): key("a")})
        config = sample_config.model_copy(update={"manual": ManualConfig(migrate_legacy_overrides=True)})

        outcome = await RethreadPipeline(store, config).rethread()

        assert outcome.migrated_groups == 1
        assert outcome.result.effective_thread_map[key("c")] == f"legacy-{key('a')}"
        assert outcome.result.manual_attachment_message_ids == frozenset({key("c")})
        assert await store.fetch_manual_thread_overrides() == {}

    @pytest.mark.asyncio
    async def test_manual_layers_can_be_disabled(self, store: DatabaseStore, sample_config: AppConfig) -> None:
        """Test turning off both manual layers gives the algorithmic result."""
        await store.upsert_manual_thread_overrides({key("c"): key("a")})
        await store.upsert_manual_thread_groups([ManualThreadGroup(id="g", thread_ids={key("a"), key("b")})])
        config = sample_config.model_copy(
            update={"manual": ManualConfig(apply_overrides=False, apply_groups=False)}
        )

        outcome = await RethreadPipeline(store, config).rethread()
        assert outcome.thread_count == 3

    @pytest.mark.asyncio
    async def test_wal_checkpointed_after_membership(self, sample_config: AppConfig) -> None:
        """Test the WAL is checkpointed once membership and state are written."""
        store = AsyncMock()
        store.fetch_messages.return_value = MESSAGES
        store.fetch_manual_thread_overrides.return_value = {}
        store.fetch_manual_thread_groups.return_value = []

        await RethreadPipeline(store, sample_config).rethread()

        calls = [name for name, _, _ in store.mock_calls]
        assert calls.count("checkpoint_wal") == 1
        assert calls.index("update_thread_membership") < calls.index("checkpoint_wal")
        assert calls.index("set_state") < calls.index("checkpoint_wal")

    @pytest.mark.asyncio
    async def test_database_errors_propagate(self, sample_config: AppConfig) -> None:
        """Test store failures surface as DatabaseError and clear the cycle id."""
        store = AsyncMock()
        store.fetch_messages.side_effect = DatabaseError("disk gone")

        with pytest.raises(DatabaseError):
            await RethreadPipeline(store, sample_config).rethread()
        assert get_correlation_id() is None
