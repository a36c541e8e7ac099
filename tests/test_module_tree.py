"""
Module tree tests: coverage for:
  - create/rename/move/reorder/delete rules and error kinds
  - path invariant over the whole project after every cascade
  - cycle guard and cross-project moves
  - descendants, recursive counts, statistics and nested tree view
"""

import pytest

from testhub.core.exceptions import ConflictError, InvalidOperationError, NotFoundError
from testhub.models.testing import TestModule

PROJECT_ID = 1
OTHER_PROJECT_ID = 2


def _assert_paths_consistent(project_id=PROJECT_ID):
    """Every enabled module's depth/path derives from its parent."""
    modules = {m.id: m for m in TestModule.query_active().filter_by(project_id=project_id)}
    for m in modules.values():
        if m.parent_id is None:
            assert (m.depth, m.module_path) == (1, ""), m
        else:
            parent = modules[m.parent_id]
            assert m.depth == parent.depth + 1, m
            assert m.module_path == f"{parent.module_path}/{parent.name}", m


@pytest.fixture()
def abc(assets):
    """A ─ B ─ C chain."""
    a = assets.create_module(PROJECT_ID, "A")
    b = assets.create_module(PROJECT_ID, "B", parent_id=a.id)
    c = assets.create_module(PROJECT_ID, "C", parent_id=b.id)
    return a, b, c


# ═══════════════════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_chain_depth_and_paths(self, abc):
        a, b, c = abc
        assert (a.depth, a.module_path) == (1, "")
        assert (b.depth, b.module_path) == (2, "/A")
        assert (c.depth, c.module_path) == (3, "/A/B")
        _assert_paths_consistent()

    def test_sort_order_defaults_to_next_sibling(self, assets, root_module):
        first = assets.create_module(PROJECT_ID, "First", parent_id=root_module.id)
        second = assets.create_module(PROJECT_ID, "Second", parent_id=root_module.id)
        assert (first.sort_order, second.sort_order) == (1, 2)

    def test_explicit_sort_order(self, assets, root_module):
        m = assets.create_module(PROJECT_ID, "Tenth", parent_id=root_module.id, sort_order=10)
        assert m.sort_order == 10
        nxt = assets.create_module(PROJECT_ID, "Next", parent_id=root_module.id)
        assert nxt.sort_order == 11

    def test_duplicate_sort_order_conflicts(self, assets, root_module):
        assets.create_module(PROJECT_ID, "X", parent_id=root_module.id, sort_order=3)
        with pytest.raises(ConflictError):
            assets.create_module(PROJECT_ID, "Y", parent_id=root_module.id, sort_order=3)

    def test_duplicate_sibling_name_conflicts(self, assets, root_module):
        assets.create_module(PROJECT_ID, "SD", parent_id=root_module.id)
        with pytest.raises(ConflictError) as exc:
            assets.create_module(PROJECT_ID, "SD", parent_id=root_module.id)
        assert exc.value.field == "name"

    def test_same_name_under_different_parents(self, assets, abc):
        a, b, _ = abc
        assets.create_module(PROJECT_ID, "Shared", parent_id=a.id)
        assets.create_module(PROJECT_ID, "Shared", parent_id=b.id)

    def test_same_root_name_in_other_project(self, assets, root_module):
        other = assets.create_module(OTHER_PROJECT_ID, "Root")
        assert other.project_id == OTHER_PROJECT_ID

    def test_name_reusable_after_delete(self, assets, root_module):
        old = assets.create_module(PROJECT_ID, "Tmp", parent_id=root_module.id)
        assets.delete_module(old.id)
        again = assets.create_module(PROJECT_ID, "Tmp", parent_id=root_module.id)
        assert again.id != old.id

    def test_missing_parent(self, assets):
        with pytest.raises(NotFoundError):
            assets.create_module(PROJECT_ID, "Orphan", parent_id=9999)

    def test_parent_from_other_project(self, assets, root_module):
        with pytest.raises(NotFoundError):
            assets.create_module(OTHER_PROJECT_ID, "Child", parent_id=root_module.id)

    def test_name_with_separator_rejected(self, assets):
        with pytest.raises(InvalidOperationError):
            assets.create_module(PROJECT_ID, "a/b")

    def test_operator_recorded(self, assets):
        m = assets.create_module(PROJECT_ID, "Owned", operator_id=9)
        assert m.created_by == 9
        assert m.updated_by == 9


# ═══════════════════════════════════════════════════════════════════════════
# Rename
# ═══════════════════════════════════════════════════════════════════════════


class TestRename:
    def test_rename_cascades_to_descendants(self, assets, abc):
        a, b, c = abc
        d = assets.create_module(PROJECT_ID, "D", parent_id=c.id)
        assets.rename_module(a.id, "Alpha", operator_id=3)
        assert (a.name, a.module_path, a.depth) == ("Alpha", "", 1)
        assert b.module_path == "/Alpha"
        assert c.module_path == "/Alpha/B"
        assert d.module_path == "/Alpha/B/C"
        assert (b.depth, c.depth, d.depth) == (2, 3, 4)
        _assert_paths_consistent()

    def test_rename_leaves_siblings_with_common_prefix(self, assets):
        a = assets.create_module(PROJECT_ID, "A")
        ab = assets.create_module(PROJECT_ID, "AB")
        a_child = assets.create_module(PROJECT_ID, "X", parent_id=a.id)
        ab_child = assets.create_module(PROJECT_ID, "Y", parent_id=ab.id)
        assets.rename_module(a.id, "Z")
        assert a_child.module_path == "/Z"
        assert ab_child.module_path == "/AB"

    def test_rename_conflict_with_sibling(self, assets, root_module):
        assets.create_module(PROJECT_ID, "SD", parent_id=root_module.id)
        mm = assets.create_module(PROJECT_ID, "MM", parent_id=root_module.id)
        with pytest.raises(ConflictError):
            assets.rename_module(mm.id, "SD")
        assert mm.name == "MM"

    def test_rename_to_same_name_is_noop(self, assets, root_module):
        same = assets.rename_module(root_module.id, "Root")
        assert same.name == "Root"

    def test_update_description_and_name(self, assets, abc):
        a, b, _ = abc
        assets.update_module(a.id, name="Top", description="top level")
        assert a.description == "top level"
        assert b.module_path == "/Top"


# ═══════════════════════════════════════════════════════════════════════════
# Move
# ═══════════════════════════════════════════════════════════════════════════


class TestMove:
    def test_move_subtree_to_root(self, assets, abc):
        _, b, c = abc
        assets.move_module(b.id, None)
        assert (b.depth, b.module_path, b.parent_id) == (1, "", None)
        assert (c.depth, c.module_path) == (2, "/B")
        _assert_paths_consistent()

    def test_move_under_deeper_parent(self, assets, abc):
        a, b, c = abc
        x = assets.create_module(PROJECT_ID, "X")
        y = assets.create_module(PROJECT_ID, "Y", parent_id=x.id)
        assets.move_module(b.id, y.id)
        assert b.module_path == "/X/Y"
        assert c.module_path == "/X/Y/B"
        assert (b.depth, c.depth) == (3, 4)
        _assert_paths_consistent()

    def test_moved_module_goes_last_among_new_siblings(self, assets, abc):
        a, b, _ = abc
        other = assets.create_module(PROJECT_ID, "Other")
        assets.create_module(PROJECT_ID, "Existing", parent_id=other.id, sort_order=5)
        assets.move_module(b.id, other.id)
        assert b.sort_order == 6

    def test_move_under_descendant_is_cycle(self, assets, abc):
        a, _, c = abc
        with pytest.raises(InvalidOperationError, match="descendant"):
            assets.move_module(a.id, c.id)
        _assert_paths_consistent()
        assert a.parent_id is None

    def test_move_under_itself(self, assets, abc):
        a, _, _ = abc
        with pytest.raises(InvalidOperationError):
            assets.move_module(a.id, a.id)

    def test_move_to_missing_parent(self, assets, abc):
        _, b, _ = abc
        with pytest.raises(NotFoundError):
            assets.move_module(b.id, 9999)

    def test_move_to_disabled_parent(self, assets, abc):
        _, b, _ = abc
        gone = assets.create_module(PROJECT_ID, "Gone")
        assets.delete_module(gone.id)
        with pytest.raises(NotFoundError):
            assets.move_module(b.id, gone.id)

    def test_cross_project_move(self, assets, abc):
        _, b, _ = abc
        foreign = assets.create_module(OTHER_PROJECT_ID, "Foreign")
        with pytest.raises(InvalidOperationError, match="another project"):
            assets.move_module(b.id, foreign.id)

    def test_name_collision_at_destination(self, assets, abc):
        _, b, _ = abc
        assets.create_module(PROJECT_ID, "B")
        with pytest.raises(ConflictError):
            assets.move_module(b.id, None)

    def test_move_to_current_parent_is_noop(self, assets, abc):
        a, b, _ = abc
        before = b.sort_order
        assets.move_module(b.id, a.id)
        assert b.sort_order == before

    def test_failed_move_rolls_back(self, assets, abc):
        a, b, c = abc
        assets.create_module(PROJECT_ID, "B")
        with pytest.raises(ConflictError):
            assets.move_module(b.id, None)
        refreshed = assets.get_module(c.id)
        assert refreshed.module_path == "/A/B"

    def test_sequence_of_moves_keeps_invariant(self, assets, abc):
        a, b, c = abc
        d = assets.create_module(PROJECT_ID, "D", parent_id=a.id)
        assets.move_module(c.id, d.id)
        assets.move_module(d.id, None)
        assets.move_module(a.id, c.id)
        assert a.module_path == "/D/C"
        assert b.module_path == "/D/C/A"
        _assert_paths_consistent()


# ═══════════════════════════════════════════════════════════════════════════
# Reorder / delete
# ═══════════════════════════════════════════════════════════════════════════


class TestReorderDelete:
    def test_reorder(self, assets, root_module):
        x = assets.create_module(PROJECT_ID, "X", parent_id=root_module.id)
        assets.reorder_module(x.id, 20)
        assert x.sort_order == 20

    def test_reorder_conflict(self, assets, root_module):
        x = assets.create_module(PROJECT_ID, "X", parent_id=root_module.id)
        y = assets.create_module(PROJECT_ID, "Y", parent_id=root_module.id)
        with pytest.raises(ConflictError):
            assets.reorder_module(y.id, x.sort_order)

    def test_delete_leaf(self, assets, root_module):
        leaf = assets.create_module(PROJECT_ID, "Leaf", parent_id=root_module.id)
        assets.delete_module(leaf.id, operator_id=5)
        assert leaf.enabled is False
        with pytest.raises(NotFoundError):
            assets.get_module(leaf.id)

    def test_delete_with_children_refused(self, assets, abc):
        a, _, _ = abc
        with pytest.raises(InvalidOperationError, match="child"):
            assets.delete_module(a.id)
        assert a.enabled is True

    def test_delete_with_cases_refused(self, assets, root_module):
        assets.create_case(PROJECT_ID, root_module.id, {"title": "Case"})
        with pytest.raises(InvalidOperationError, match="test cases"):
            assets.delete_module(root_module.id)


# ═══════════════════════════════════════════════════════════════════════════
# Sibling-name index (check passed, concurrent writer committed first)
# ═══════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def stale_name_check(assets, monkeypatch):
    """Make every name check miss, as if a concurrent writer had not committed yet."""
    monkeypatch.setattr(assets.tree.modules, "name_taken", lambda *args, **kwargs: False)


class TestSiblingNameIndex:
    def test_duplicate_root_create_conflicts(self, assets, stale_name_check):
        assets.create_module(PROJECT_ID, "N")
        with pytest.raises(ConflictError) as exc:
            assets.create_module(PROJECT_ID, "N")
        assert exc.value.field == "name"
        assert [m.name for m in assets.module_roots(PROJECT_ID)] == ["N"]

    def test_duplicate_root_rename_conflicts(self, assets, stale_name_check):
        assets.create_module(PROJECT_ID, "N")
        other = assets.create_module(PROJECT_ID, "M")
        with pytest.raises(ConflictError):
            assets.rename_module(other.id, "N")
        assert assets.get_module(other.id).name == "M"

    def test_move_to_root_onto_taken_name_conflicts(self, assets, stale_name_check):
        assets.create_module(PROJECT_ID, "N")
        parent = assets.create_module(PROJECT_ID, "P")
        child = assets.create_module(PROJECT_ID, "N", parent_id=parent.id)
        with pytest.raises(ConflictError):
            assets.move_module(child.id, None)
        assert assets.get_module(child.id).parent_id == parent.id
        _assert_paths_consistent()

    def test_disabled_sibling_not_indexed(self, assets, stale_name_check):
        old = assets.create_module(PROJECT_ID, "N")
        assets.delete_module(old.id)
        assert assets.create_module(PROJECT_ID, "N").id != old.id


# ═══════════════════════════════════════════════════════════════════════════
# Reads
# ═══════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_descendants_ordered_by_depth_then_sort_order(self, assets, abc):
        a, b, c = abc
        b2 = assets.create_module(PROJECT_ID, "B2", parent_id=a.id, sort_order=0)
        names = [m.name for m in assets.module_descendants(a.id)]
        assert names == ["B2", "B", "C"]
        assert b2.depth == 2

    def test_descendants_is_lazy(self, assets, abc):
        a, _, _ = abc
        it = assets.module_descendants(a.id)
        assert iter(it) is it

    def test_descendants_of_missing_module_raises_before_iteration(self, assets):
        with pytest.raises(NotFoundError):
            assets.module_descendants(9999)

    def test_descendants_of_leaf_empty(self, assets, abc):
        _, _, c = abc
        assert list(assets.module_descendants(c.id)) == []

    def test_count_recursive(self, assets, abc):
        a, b, c = abc
        assets.create_case(PROJECT_ID, a.id, {"title": "on A"})
        assets.create_case(PROJECT_ID, c.id, {"title": "on C"})
        gone = assets.create_case(PROJECT_ID, c.id, {"title": "deleted"})
        assets.delete_case(gone.id)
        assert assets.count_test_cases_recursive(a.id) == 2
        assert assets.count_test_cases_recursive(b.id) == 1

    def test_statistics(self, assets, abc):
        a, b, _ = abc
        assets.create_module(PROJECT_ID, "B2", parent_id=a.id)
        assets.create_case(PROJECT_ID, a.id, {"title": "direct"})
        assets.create_case(PROJECT_ID, b.id, {"title": "nested"})
        stats = assets.module_statistics(a.id).to_dict()
        assert stats == {
            "module_id": a.id,
            "direct_test_case_count": 1,
            "total_test_case_count": 2,
            "child_module_count": 2,
        }

    def test_roots_and_children(self, assets, abc):
        a, b, _ = abc
        assert [m.name for m in assets.module_roots(PROJECT_ID)] == ["A"]
        assert [m.id for m in assets.module_children(a.id)] == [b.id]

    def test_nested_tree(self, assets, abc):
        assets.create_module(PROJECT_ID, "Second root")
        tree = assets.module_tree(PROJECT_ID)
        assert [n["name"] for n in tree] == ["A", "Second root"]
        c_node = tree[0]["children"][0]["children"][0]
        assert c_node["name"] == "C"
        assert c_node["full_path"] == "/A/B/C"
        assert c_node["children"] == []
