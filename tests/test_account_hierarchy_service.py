"""
Account Hierarchy Service Tests.

Covers create/move/remove rules, queries, statistics and the structural
invariants that must hold after every mutation.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from account_hierarchy.app.models import (
    CreateAccountRequest,
    MoveAccountRequest,
    UpdateAccountRequest,
)
from account_hierarchy.core.exceptions import (
    AccountNotFoundError,
    ConcurrentModificationError,
    HasChildrenError,
    HierarchyCycleError,
    InvalidLevelError,
    LevelLimitExceededError,
    PartialMutationError,
    TenantMismatchError,
)
from account_hierarchy.core.services.account_hierarchy import AccountHierarchyService
from account_hierarchy.core.services.account_hierarchy.path_utils import count_segments
from account_hierarchy.core.stores import AccountQuery


async def build_chain(create, depth, client_id="client_a"):
    """Root plus descendants down to `depth` levels; returns the list top-down."""
    chain = [await create("L1", client_id)]
    for lvl in range(2, depth + 1):
        chain.append(await create(f"L{lvl}", client_id, chain[-1].id))
    return chain


def assert_structurally_consistent(store):
    accounts = store.snapshot()
    for account in accounts.values():
        assert account.level == count_segments(account.hierarchy_path)
        if account.parent_id is None:
            assert account.level == 1
        else:
            parent = accounts[account.parent_id]
            assert account.level == parent.level + 1
            assert account.hierarchy_path.startswith(parent.hierarchy_path + ".")
            assert account.id in parent.child_ids


# ==============================================================================
# Create
# ==============================================================================

class TestCreateAccount:
    """Tests for account creation."""

    @pytest.mark.asyncio
    async def test_roots_get_sequential_indices(self, create):
        first = await create("North")
        second = await create("South")

        assert (first.level, first.hierarchy_path) == (1, "1")
        assert (second.level, second.hierarchy_path) == (1, "2")
        assert first.parent_id is None

    @pytest.mark.asyncio
    async def test_root_indices_are_per_tenant(self, create):
        await create("A1", "client_a")
        b1 = await create("B1", "client_b")

        assert b1.hierarchy_path == "1"

    @pytest.mark.asyncio
    async def test_child_links_into_parent(self, create, store):
        parent = await create("HQ")
        child = await create("Branch", parent_id=parent.id)

        assert child.level == 2
        assert child.hierarchy_path == "1.1"
        assert child.parent_id == parent.id

        stored_parent = await store.find_by_id(parent.id)
        assert stored_parent.child_ids == [child.id]

    @pytest.mark.asyncio
    async def test_siblings_use_next_index(self, create):
        parent = await create("HQ")
        c1 = await create("C1", parent_id=parent.id)
        c2 = await create("C2", parent_id=parent.id)

        assert [c1.hierarchy_path, c2.hierarchy_path] == ["1.1", "1.2"]

    @pytest.mark.asyncio
    async def test_sibling_index_skips_past_gap(self, create, service):
        parent = await create("HQ")
        c1 = await create("C1", parent_id=parent.id)
        await create("C2", parent_id=parent.id)
        await service.remove_account(c1.id)

        c3 = await create("C3", parent_id=parent.id)

        # One past the highest remaining index, so no collision with "1.2"
        assert c3.hierarchy_path == "1.3"

    @pytest.mark.asyncio
    async def test_missing_parent_raises_not_found(self, create, store):
        with pytest.raises(AccountNotFoundError) as exc_info:
            await create("Orphan", parent_id="does-not-exist")

        assert exc_info.value.message == "Parent account not found"
        assert exc_info.value.http_status == 404
        assert await store.count(AccountQuery()) == 0

    @pytest.mark.asyncio
    async def test_level_limit_persists_nothing(self, create, store):
        chain = await build_chain(create, 5)
        before = await store.count(AccountQuery())

        with pytest.raises(LevelLimitExceededError) as exc_info:
            await create("L6", parent_id=chain[-1].id)

        assert exc_info.value.message == "Cannot create account beyond level 5"
        assert await store.count(AccountQuery()) == before
        assert (await store.find_by_id(chain[-1].id)).child_ids == []

    @pytest.mark.asyncio
    async def test_cross_tenant_parent_rejected(self, create, store):
        parent = await create("HQ", "client_a")

        with pytest.raises(TenantMismatchError):
            await create("Intruder", "client_b", parent.id)

        assert await store.count(AccountQuery(client_id="client_b")) == 0

    @pytest.mark.asyncio
    async def test_concurrent_creates_get_distinct_paths(self, service, create):
        parent = await create("HQ")

        children = await asyncio.gather(*[
            service.create_account(CreateAccountRequest(name=f"C{i}", client_id="client_a", parent_id=parent.id))
            for i in range(8)
        ])

        paths = {c.hierarchy_path for c in children}
        assert len(paths) == 8
        assert paths == {f"1.{i}" for i in range(1, 9)}

    @pytest.mark.asyncio
    async def test_link_failure_is_reported_as_partial(self, create, store, service):
        parent = await create("HQ")
        store.push_child = AsyncMock(side_effect=RuntimeError("store went away"))

        with pytest.raises(PartialMutationError) as exc_info:
            await create("Child", parent_id=parent.id)

        assert exc_info.value.completed_steps == ["insert_account"]
        assert exc_info.value.failed_step == "link_parent"
        assert await store.count(AccountQuery(parent_id=parent.id)) == 1


# ==============================================================================
# Move
# ==============================================================================

class TestMoveAccount:
    """Tests for re-parenting and the descendant cascade."""

    @pytest.mark.asyncio
    async def test_move_to_root_cascades_descendants(self, create, service, store):
        a = await create("A")
        b = await create("B", parent_id=a.id)
        c = await create("C", parent_id=b.id)
        assert (b.level, b.hierarchy_path) == (2, "1.1")
        assert (c.level, c.hierarchy_path) == (3, "1.1.1")

        moved = await service.move_account(b.id, MoveAccountRequest(new_parent_id=None))

        assert moved.level == 1
        assert moved.hierarchy_path == "2"
        assert moved.parent_id is None

        c_after = await store.find_by_id(c.id)
        assert (c_after.level, c_after.hierarchy_path) == (2, "2.1")
        assert (await store.find_by_id(a.id)).child_ids == []
        assert_structurally_consistent(store)

    @pytest.mark.asyncio
    async def test_move_under_other_parent_keeps_suffixes(self, create, service, store):
        a = await create("A")
        x = await create("X")
        await create("X1", parent_id=x.id)
        b = await create("B", parent_id=a.id)
        b1 = await create("B1", parent_id=b.id)
        b2 = await create("B2", parent_id=b.id)
        b21 = await create("B21", parent_id=b2.id)

        moved = await service.move_account(b.id, MoveAccountRequest(new_parent_id=x.id))

        assert moved.hierarchy_path == "2.2"
        assert moved.level == 2
        assert (await store.find_by_id(b1.id)).hierarchy_path == "2.2.1"
        assert (await store.find_by_id(b2.id)).hierarchy_path == "2.2.2"
        b21_after = await store.find_by_id(b21.id)
        assert (b21_after.level, b21_after.hierarchy_path) == (4, "2.2.2.1")
        assert (await store.find_by_id(x.id)).child_ids[-1] == b.id
        assert_structurally_consistent(store)

    @pytest.mark.asyncio
    async def test_level_shift_applies_to_whole_branch(self, create, service, store):
        chain = await build_chain(create, 4)
        other = await create("Other")

        await service.move_account(chain[2].id, MoveAccountRequest(new_parent_id=other.id))

        moved = await store.find_by_id(chain[2].id)
        leaf = await store.find_by_id(chain[3].id)
        assert moved.level == 2
        assert leaf.level == 3
        assert leaf.hierarchy_path == moved.hierarchy_path + ".1"

    @pytest.mark.asyncio
    async def test_same_parent_is_noop(self, create, service, store):
        a = await create("A")
        b = await create("B", parent_id=a.id)

        result = await service.move_account(b.id, MoveAccountRequest(new_parent_id=a.id))

        assert result.hierarchy_path == b.hierarchy_path
        assert result.version == b.version

    @pytest.mark.asyncio
    async def test_cascade_does_not_touch_numeric_prefix_neighbours(self, create, service, store):
        roots = [await create(f"R{i}") for i in range(1, 11)]
        child_of_first = await create("R1-child", parent_id=roots[0].id)
        child_of_tenth = await create("R10-child", parent_id=roots[9].id)
        assert child_of_tenth.hierarchy_path == "10.1"

        await service.move_account(roots[0].id, MoveAccountRequest(new_parent_id=roots[1].id))

        assert (await store.find_by_id(child_of_first.id)).hierarchy_path == "2.1.1"
        untouched = await store.find_by_id(child_of_tenth.id)
        assert (untouched.level, untouched.hierarchy_path) == (2, "10.1")

    @pytest.mark.asyncio
    async def test_move_into_own_branch_rejected(self, create, service, store):
        a = await create("A")
        b = await create("B", parent_id=a.id)
        c = await create("C", parent_id=b.id)
        before = store.snapshot()

        with pytest.raises(HierarchyCycleError):
            await service.move_account(a.id, MoveAccountRequest(new_parent_id=c.id))
        with pytest.raises(HierarchyCycleError):
            await service.move_account(b.id, MoveAccountRequest(new_parent_id=b.id))

        assert store.snapshot() == before

    @pytest.mark.asyncio
    async def test_parent_at_level_five_rejected(self, create, service):
        chain = await build_chain(create, 5)
        loose = await create("Loose")

        with pytest.raises(LevelLimitExceededError) as exc_info:
            await service.move_account(loose.id, MoveAccountRequest(new_parent_id=chain[-1].id))

        assert exc_info.value.message == "Cannot move account beyond level 5"

    @pytest.mark.asyncio
    async def test_deep_branch_cannot_exceed_limit(self, create, service, store):
        target_chain = await build_chain(create, 3)
        branch = await build_chain(create, 3)
        before = store.snapshot()

        # Branch root would land at level 4 and its leaf at level 6
        with pytest.raises(LevelLimitExceededError):
            await service.move_account(branch[0].id, MoveAccountRequest(new_parent_id=target_chain[-1].id))

        assert store.snapshot() == before

    @pytest.mark.asyncio
    async def test_missing_account_or_parent(self, create, service):
        a = await create("A")

        with pytest.raises(AccountNotFoundError):
            await service.move_account("missing", MoveAccountRequest(new_parent_id=a.id))
        with pytest.raises(AccountNotFoundError) as exc_info:
            await service.move_account(a.id, MoveAccountRequest(new_parent_id="missing"))
        assert exc_info.value.message == "Parent account not found"

    @pytest.mark.asyncio
    async def test_cross_tenant_move_rejected(self, create, service):
        a = await create("A", "client_a")
        b = await create("B", "client_b")

        with pytest.raises(TenantMismatchError):
            await service.move_account(a.id, MoveAccountRequest(new_parent_id=b.id))

    @pytest.mark.asyncio
    async def test_move_back_to_root_takes_next_root_index(self, create, service):
        a = await create("A")
        b = await create("B")

        await service.move_account(b.id, MoveAccountRequest(new_parent_id=a.id))
        back = await service.move_account(b.id, MoveAccountRequest(new_parent_id=None))

        assert back.hierarchy_path == "2"

    @pytest.mark.asyncio
    async def test_failed_cascade_is_reported_as_partial(self, create, service, store):
        a = await create("A")
        x = await create("X")
        b = await create("B", parent_id=a.id)
        await create("B1", parent_id=b.id)
        store.bulk_update = AsyncMock(side_effect=RuntimeError("bulk write rejected"))

        with pytest.raises(PartialMutationError) as exc_info:
            await service.move_account(b.id, MoveAccountRequest(new_parent_id=x.id))

        error = exc_info.value
        assert error.failed_step == "cascade_descendants"
        assert error.completed_steps == ["update_account", "unlink_old_parent", "link_new_parent"]
        assert error.http_status == 500

        report = await service.check_integrity("client_a")
        assert not report.is_consistent

    @pytest.mark.asyncio
    async def test_stale_version_raises_conflict(self, create, service, store):
        a = await create("A")
        b = await create("B")
        original_find = store.find_by_id
        calls = {"n": 0}

        async def stale_then_real(account_id):
            account = await original_find(account_id)
            if account_id == b.id and account is not None:
                calls["n"] += 1
                if calls["n"] == 2:
                    # Another process renamed B between our read and write
                    await store.update_by_id(b.id, {"name": "Renamed"})
            return account

        store.find_by_id = stale_then_real

        with pytest.raises(ConcurrentModificationError):
            await service.move_account(b.id, MoveAccountRequest(new_parent_id=a.id))

        store.find_by_id = original_find
        assert (await store.find_by_id(b.id)).parent_id is None


# ==============================================================================
# Update / Remove
# ==============================================================================

class TestUpdateAndRemove:
    """Tests for non-structural edits and leaf-only deletion."""

    @pytest.mark.asyncio
    async def test_rename_keeps_structure(self, create, service):
        a = await create("A")

        renamed = await service.update_account(a.id, UpdateAccountRequest(name="  Alpha "), updated_by="u1")

        assert renamed.name == "Alpha"
        assert renamed.hierarchy_path == a.hierarchy_path
        assert renamed.updated_by == "u1"
        assert renamed.version == a.version + 1

    @pytest.mark.asyncio
    async def test_rename_missing_account(self, service):
        with pytest.raises(AccountNotFoundError):
            await service.update_account("missing", UpdateAccountRequest(name="X"))

    @pytest.mark.asyncio
    async def test_remove_leaf_unlinks_parent(self, create, service, store):
        a = await create("A")
        b = await create("B", parent_id=a.id)

        await service.remove_account(b.id)

        assert await store.find_by_id(b.id) is None
        assert (await store.find_by_id(a.id)).child_ids == []

    @pytest.mark.asyncio
    async def test_remove_with_children_leaves_store_unmodified(self, create, service, store):
        a = await create("A")
        await create("B", parent_id=a.id)
        before = store.snapshot()

        with pytest.raises(HasChildrenError) as exc_info:
            await service.remove_account(a.id)

        assert exc_info.value.context["children_count"] == 1
        assert exc_info.value.http_status == 409
        assert store.snapshot() == before

    @pytest.mark.asyncio
    async def test_remove_blocked_by_parent_link_alone(self, create, service, store):
        a = await create("A")
        await create("B", parent_id=a.id)
        await store.pull_child(a.id, (await store.find(AccountQuery(parent_id=a.id)))[0].id)

        with pytest.raises(HasChildrenError):
            await service.remove_account(a.id)

    @pytest.mark.asyncio
    async def test_remove_missing(self, service):
        with pytest.raises(AccountNotFoundError):
            await service.remove_account("missing")


# ==============================================================================
# Queries and Statistics
# ==============================================================================

class TestQueries:
    """Tests for descendant, level and statistics queries."""

    @pytest.mark.asyncio
    async def test_find_descendants_is_unqualified_prefix(self, create, service):
        roots = [await create(f"R{i}") for i in range(1, 11)]
        child = await create("R1-child", parent_id=roots[0].id)
        tenth_child = await create("R10-child", parent_id=roots[9].id)
        other_tenant = await create("B-root", "client_b")

        result = await service.find_descendants(roots[0].id)
        ids = {a.id for a in result}

        assert roots[0].id not in ids
        assert child.id in ids
        # '1' textually prefixes '10' and '10.1', and B's root '1' too
        assert roots[9].id in ids
        assert tenth_child.id in ids
        assert other_tenant.id in ids

    @pytest.mark.asyncio
    async def test_find_descendants_strict(self, create, service):
        roots = [await create(f"R{i}") for i in range(1, 11)]
        child = await create("R1-child", parent_id=roots[0].id)
        grandchild = await create("R1-grandchild", parent_id=child.id)
        await create("R10-child", parent_id=roots[9].id)
        await create("B-root", "client_b")

        result = await service.find_descendants(roots[0].id, strict=True)

        assert [a.id for a in result] == [child.id, grandchild.id]

    @pytest.mark.asyncio
    async def test_find_descendants_missing(self, service):
        with pytest.raises(AccountNotFoundError):
            await service.find_descendants("missing")

    @pytest.mark.asyncio
    async def test_find_by_level(self, create, service):
        a = await create("A")
        b = await create("B", parent_id=a.id)
        await create("Other", "client_b")

        assert [x.id for x in await service.find_by_level(2, "client_a")] == [b.id]
        assert [x.id for x in await service.find_by_level(1, "client_a")] == [a.id]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", [0, 6, -1, "2", 2.0, True])
    async def test_find_by_level_rejects_out_of_range(self, service, level):
        with pytest.raises(InvalidLevelError):
            await service.find_by_level(level, "client_a")

    @pytest.mark.asyncio
    async def test_client_stats_example(self, create, service):
        a = await create("A")
        b1 = await create("B1", parent_id=a.id)
        await create("B2", parent_id=a.id)
        await create("C", parent_id=b1.id)

        stats = await service.get_client_stats("client_a")

        assert stats.total_accounts == 4
        assert [lc.model_dump() for lc in stats.level_breakdown] == [
            {"level": 1, "count": 1},
            {"level": 2, "count": 2},
            {"level": 3, "count": 1},
        ]

    @pytest.mark.asyncio
    async def test_client_stats_empty_tenant(self, service):
        stats = await service.get_client_stats("nobody")

        assert stats.total_accounts == 0
        assert stats.level_breakdown == []

    @pytest.mark.asyncio
    async def test_branch_stats_uses_dot_qualified_prefix(self, create, service):
        roots = [await create(f"R{i}") for i in range(1, 11)]
        c1 = await create("C1", parent_id=roots[0].id)
        await create("C2", parent_id=roots[0].id)
        await create("G1", parent_id=c1.id)
        await create("R10-child", parent_id=roots[9].id)
        await create("B-root", "client_b")

        stats = await service.get_branch_stats(roots[0].id)

        assert stats.parent_account.id == roots[0].id
        assert stats.total_descendants == 3
        assert stats.direct_children == 2
        assert [(lc.level, lc.count) for lc in stats.level_breakdown] == [(2, 2), (3, 1)]

    @pytest.mark.asyncio
    async def test_branch_stats_missing(self, service):
        with pytest.raises(AccountNotFoundError) as exc_info:
            await service.get_branch_stats("missing")
        assert exc_info.value.message == "Parent account not found"

    @pytest.mark.asyncio
    async def test_find_all_orders_by_path(self, create, service):
        a = await create("A")
        await create("B")
        a1 = await create("A1", parent_id=a.id)

        accounts = await service.find_all("client_a")

        assert [x.hierarchy_path for x in accounts] == ["1", "1.1", "2"]
        assert accounts[1].id == a1.id

    @pytest.mark.asyncio
    async def test_get_account(self, create, service):
        a = await create("A")
        assert (await service.get_account(a.id)).id == a.id
        with pytest.raises(AccountNotFoundError):
            await service.get_account("missing")

    @pytest.mark.asyncio
    async def test_hierarchy_missing_root(self, service):
        with pytest.raises(AccountNotFoundError):
            await service.get_account_hierarchy("missing")
        with pytest.raises(AccountNotFoundError):
            await service.get_account_hierarchy_optimized("missing")


# ==============================================================================
# Invariants and Telemetry
# ==============================================================================

class TestInvariantsAndTelemetry:
    """Mixed mutation sequences and telemetry emission."""

    @pytest.mark.asyncio
    async def test_invariants_hold_after_mixed_mutations(self, create, service, store):
        a = await create("A")
        b = await create("B")
        a1 = await create("A1", parent_id=a.id)
        a2 = await create("A2", parent_id=a.id)
        a11 = await create("A11", parent_id=a1.id)
        await create("B1", parent_id=b.id)

        await service.move_account(a1.id, MoveAccountRequest(new_parent_id=b.id))
        await service.remove_account(a2.id)
        await service.move_account(a11.id, MoveAccountRequest(new_parent_id=None))
        await create("A3", parent_id=a.id)

        assert_structurally_consistent(store)
        report = await service.check_integrity("client_a")
        assert report.is_consistent, report.violations

    @pytest.mark.asyncio
    async def test_success_and_failure_events(self, create, service, telemetry):
        a = await create("A")
        await create("B", parent_id=a.id)
        with pytest.raises(HasChildrenError):
            await service.remove_account(a.id)

        create_events = [e for e in telemetry.events if e.operation == "CREATE"]
        assert all(e.outcome == "success" for e in create_events)
        assert create_events[0].metadata["hierarchy_path"] == "1"
        assert create_events[0].response_time_ms is not None

        failure = telemetry.events[-1]
        assert failure.operation == "DELETE"
        assert failure.is_error
        assert failure.status_code == 409
        assert failure.metadata["error_code"] == "HAS_CHILDREN"

    @pytest.mark.asyncio
    async def test_telemetry_failure_does_not_affect_result(self, store):
        broken_sink = AsyncMock()
        broken_sink.emit.side_effect = RuntimeError("sink down")
        service = AccountHierarchyService(store=store, telemetry=broken_sink)

        account = await service.create_account(CreateAccountRequest(name="A", client_id="client_a"))

        assert account.hierarchy_path == "1"
        broken_sink.emit.assert_awaited_once()
