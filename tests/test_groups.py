"""Tests for the manual group layer."""

import pytest
from conftest import build_message, key, ref

from mailweave.engine.groups import apply_groups, reconcile_groups
from mailweave.engine.models import ManualThreadGroup, ThreadingResult
from mailweave.engine.overrides import apply_overrides
from mailweave.engine.threader import build_threads

A = key("a")
B = key("b")
C = key("c")


@pytest.fixture
def base() -> ThreadingResult:
    """Threads a -> a2, b -> b2 and a single-message thread c."""
    return build_threads(
        [
            build_message("a", 0),
            build_message("a2", 1, references=(ref("a"),)),
            build_message("b", 10),
            build_message("b2", 11, references=(ref("b"),)),
            build_message("c", 20),
        ]
    )


def thread_keys(result: ThreadingResult, thread_id: str) -> list[str]:
    """Keys of every message whose effective thread is ``thread_id``."""
    return sorted(k for k, t in result.effective_thread_map.items() if t == thread_id)


class TestReconcileGroups:
    """Tests for reconcile_groups()."""

    def test_first_group_keeps_shared_thread(self) -> None:
        """Test a thread claimed twice stays with the earlier group."""
        first = ManualThreadGroup(id="g1", thread_ids={A})
        second = ManualThreadGroup(id="g2", thread_ids={A, B})
        effective, corrected = reconcile_groups([first, second])

        assert effective == [first, ManualThreadGroup(id="g2", thread_ids={B})]
        assert corrected == [ManualThreadGroup(id="g2", thread_ids={B})]

    def test_pinned_message_claimed_once(self) -> None:
        """Test a message pinned by two groups stays with the earlier one."""
        first = ManualThreadGroup(id="g1", message_keys={C})
        second = ManualThreadGroup(id="g2", thread_ids={B}, message_keys={C})
        _, corrected = reconcile_groups([first, second])
        assert corrected == [ManualThreadGroup(id="g2", thread_ids={B})]

    def test_duplicate_group_id_ignored(self) -> None:
        """Test only the first definition of a group id is used."""
        effective, corrected = reconcile_groups(
            [ManualThreadGroup(id="g", thread_ids={A}), ManualThreadGroup(id="g", thread_ids={B})]
        )
        assert effective == [ManualThreadGroup(id="g", thread_ids={A})]
        assert corrected == []


class TestApplyGroups:
    """Tests for apply_groups()."""

    def test_no_groups_returns_base(self, base: ThreadingResult) -> None:
        """Test an empty group list changes nothing."""
        result, updated = apply_groups([], base)
        assert result is base
        assert updated == ()

    def test_merge_preserves_provenance(self, base: ThreadingResult) -> None:
        """Test merged nodes keep their algorithmic thread ids under the group id."""
        result, updated = apply_groups([ManualThreadGroup(id="g", thread_ids={A, B})], base)

        assert updated == ()
        assert [thread.id for thread in result.threads] == [C, "g"]
        group_root = result.roots[1]
        assert group_root.key == A
        assert [child.key for child in group_root.children] == [key("a2"), B]

        provenance = {node.key: node.message.thread_id for node in group_root.iter_nodes()}
        assert provenance == {A: A, key("a2"): A, B: B, key("b2"): B}
        assert thread_keys(result, "g") == sorted([A, key("a2"), B, key("b2")])
        assert result.thread_map == base.thread_map
        assert result.manual_group_by_message_key == {k: "g" for k in provenance}
        assert result.manual_attachment_message_ids == frozenset()

    def test_group_thread_counts(self, base: ThreadingResult) -> None:
        """Test the merged thread summary covers every member."""
        result, _ = apply_groups([ManualThreadGroup(id="g", thread_ids={A, B})], base)
        thread = result.thread("g")
        assert thread is not None
        assert thread.message_count == 4
        assert thread.subject == "Subject a"

    def test_conflicting_groups_are_corrected(self, base: ThreadingResult) -> None:
        """Test each thread joins at most one group and the fix is reported."""
        groups = [
            ManualThreadGroup(id="g1", thread_ids={A, C}),
            ManualThreadGroup(id="g2", thread_ids={A, B}),
        ]
        result, updated = apply_groups(groups, base)

        assert updated == (ManualThreadGroup(id="g2", thread_ids={B}),)
        assert thread_keys(result, "g1") == sorted([A, key("a2"), C])
        assert thread_keys(result, "g2") == sorted([B, key("b2")])

    def test_pinned_message_attached(self, base: ThreadingResult) -> None:
        """Test a pinned message becomes a direct child of the group root."""
        result, _ = apply_groups([ManualThreadGroup(id="g", thread_ids={A}, message_keys={key("b2")})], base)

        group_root = next(root for root in result.roots if root.key == A)
        assert [child.key for child in group_root.children] == [key("a2"), key("b2")]
        assert result.manual_attachment_message_ids == frozenset({key("b2")})
        assert thread_keys(result, B) == [B]
        assert result.thread_map[key("b2")] == B

    def test_pinned_member_of_own_thread_stays(self, base: ThreadingResult) -> None:
        """Test pinning a message already inside an absorbed thread leaves it in place."""
        result, _ = apply_groups([ManualThreadGroup(id="g", thread_ids={A}, message_keys={key("a2")})], base)
        assert result.manual_attachment_message_ids == frozenset()
        assert thread_keys(result, "g") == sorted([A, key("a2")])

    def test_pinned_only_group(self, base: ThreadingResult) -> None:
        """Test a group of pinned messages is rooted at the earliest one."""
        result, _ = apply_groups([ManualThreadGroup(id="g", message_keys={key("b2"), C})], base)

        group_root = next(root for root, thread in zip(result.roots, result.threads) if thread.id == "g")
        assert group_root.key == key("b2")
        assert [child.key for child in group_root.children] == [C]

    def test_pin_wins_over_absorbed_thread(self, base: ThreadingResult) -> None:
        """Test a message pinned elsewhere leaves the thread another group absorbs."""
        groups = [
            ManualThreadGroup(id="g1", thread_ids={B}),
            ManualThreadGroup(id="g2", thread_ids={A}, message_keys={key("b2")}),
        ]
        result, _ = apply_groups(groups, base)

        assert thread_keys(result, "g1") == [B]
        assert key("b2") in thread_keys(result, "g2")
        assert result.manual_group_by_message_key[key("b2")] == "g2"

    def test_stale_members_skipped(self, base: ThreadingResult) -> None:
        """Test unknown thread ids and keys are ignored without correcting the group."""
        group = ManualThreadGroup(id="g", thread_ids={"gone"}, message_keys={"missing@example.com"})
        result, updated = apply_groups([group], base)

        assert updated == ()
        assert [thread.id for thread in result.threads] == [thread.id for thread in base.threads]
        assert "g" not in result.effective_thread_map.values()

    def test_message_belongs_to_one_thread(self, base: ThreadingResult) -> None:
        """Test every message appears exactly once after grouping."""
        groups = [
            ManualThreadGroup(id="g1", thread_ids={A}, message_keys={key("b2")}),
            ManualThreadGroup(id="g2", thread_ids={B, C}, message_keys={key("a2")}),
        ]
        result, _ = apply_groups(groups, base)

        node_keys = [node.key for node in result.iter_nodes()]
        assert sorted(node_keys) == sorted(base.thread_map)
        assert result.message_count == 5

    def test_override_flags_carried_through(self, base: ThreadingResult) -> None:
        """Test groups applied after overrides keep the override bookkeeping."""
        overridden, _ = apply_overrides({C: A}, base)
        result, _ = apply_groups([ManualThreadGroup(id="g", thread_ids={A, B})], overridden)

        assert result.manual_override_message_ids == frozenset({C})
        assert thread_keys(result, "g") == sorted([A, key("a2"), B, key("b2"), C])
