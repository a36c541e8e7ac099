"""
Test Hub
Module Tree

Per-project forest of test modules stored with materialized paths.

Write operations (create, rename, move, reorder, delete) keep four rules
true for every enabled module:
  - depth(child) == depth(parent) + 1, roots have depth 1
  - module_path(child) == module_path(parent) + sep + name(parent), roots ""
  - no module is its own ancestor
  - names and sort orders are unique among enabled siblings

Rename and move rewrite the paths of the whole subtree: the subtree is
loaded with one prefix scan, recomputed breadth-first in memory (parents
before children) and flushed inside the same unit of work.

Concurrency: rename/move/create lock the rows on the root-to-node paths they
depend on (ascending id order) and, within one process, serialize on a
per-project lock, so two cascades on overlapping subtrees never interleave.
Root siblings have no shared parent row to lock; the unique sibling-name
index on test_modules catches a duplicate that slips past the name check.

Usage:
    tree = ModuleTree(separator="/")
    root = tree.create(project_id=1, name="Root", operator_id=7)
    sd = tree.create(project_id=1, parent_id=root.id, name="SD")
    tree.move(sd.id, new_parent_id=None)
"""

import logging
import threading
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass

from sqlalchemy.exc import IntegrityError

from testhub.core.exceptions import ConflictError, InvalidOperationError, NotFoundError
from testhub.models.testing import SIBLING_NAME_INDEX, TestModule
from testhub.repositories.base import unit_of_work
from testhub.repositories.case_repository import TestCaseRepository
from testhub.repositories.module_repository import ModuleRepository
from testhub.services import path_builder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleStatistics:
    module_id: int
    direct_test_case_count: int
    total_test_case_count: int
    child_module_count: int

    def to_dict(self):
        return asdict(self)


class ModuleTree:
    """Owns every write to TestModule rows and the path fields they carry."""

    def __init__(self, separator: str = path_builder.DEFAULT_SEPARATOR, name_max_length: int = 100):
        self.separator = separator
        self.name_max_length = name_max_length
        self.modules = ModuleRepository()
        self.cases = TestCaseRepository()
        self._locks_guard = threading.Lock()
        self._project_locks: dict[int, threading.RLock] = {}

    # ── Locking ──────────────────────────────────────────────────────────

    @contextmanager
    def _project_lock(self, project_id: int):
        with self._locks_guard:
            lock = self._project_locks.setdefault(project_id, threading.RLock())
        with lock:
            yield

    def _lock_paths(self, *nodes) -> None:
        """Row-lock every module on the root-to-node path of each node."""
        ids = set()
        for node in nodes:
            if node is not None:
                ids.update(self.modules.ancestor_ids(node))
        self.modules.lock(ids)

    @contextmanager
    def _unique_name(self, name: str):
        """Report a lost sibling-name race as ConflictError.

        Root siblings share no lockable parent row, so two writers can both
        pass ``name_taken``; the unique index rejects the second flush.
        """
        try:
            yield
        except IntegrityError as exc:
            if SIBLING_NAME_INDEX not in str(exc.orig):
                raise
            raise ConflictError("TestModule", "name", name) from exc

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, module_id: int, project_id: int | None = None) -> TestModule:
        return self.modules.get_active(module_id, project_id=project_id)

    def roots(self, project_id: int) -> list[TestModule]:
        return self.modules.siblings(project_id, None)

    def children(self, module_id: int) -> list[TestModule]:
        module = self.get(module_id)
        return self.modules.siblings(module.project_id, module.id)

    def descendants(self, module_id: int):
        """Lazy iterator over every enabled descendant, ordered by depth then sort_order.

        The module itself is looked up eagerly, so a missing id raises here.
        """
        module = self.get(module_id)
        prefix = path_builder.subtree_prefix(module, self.separator)
        return self.modules.scan_by_prefix(module.project_id, prefix, self.separator)

    def count_test_cases_recursive(self, module_id: int) -> int:
        module_ids = [module_id] + [m.id for m in self.descendants(module_id)]
        return self.cases.count_active(module_ids)

    def statistics(self, module_id: int) -> ModuleStatistics:
        module = self.get(module_id)
        return ModuleStatistics(
            module_id=module.id,
            direct_test_case_count=self.cases.count_active([module.id]),
            total_test_case_count=self.count_test_cases_recursive(module.id),
            child_module_count=self.modules.count_children(module.id),
        )

    def tree(self, project_id: int) -> list[dict]:
        """Nested ``to_dict()`` view of the project's forest, siblings in sort order."""
        nodes = {}
        roots = []
        for module in self.modules.all_for_project(project_id):
            node = module.to_dict()
            node["full_path"] = path_builder.full_name(module, self.separator)
            node["children"] = []
            nodes[module.id] = node
            parent = nodes.get(module.parent_id)
            if parent is None:
                roots.append(node)
            else:
                parent["children"].append(node)
        return roots

    # ── Writes ───────────────────────────────────────────────────────────

    def create(
        self,
        project_id: int,
        name: str,
        parent_id: int | None = None,
        sort_order: int | None = None,
        description: str | None = None,
        operator_id: int | None = None,
    ) -> TestModule:
        name = path_builder.validate_name(name, self.separator, self.name_max_length)

        with self._project_lock(project_id), unit_of_work():
            parent = None
            if parent_id is not None:
                parent = self.modules.get_active(parent_id, project_id=project_id)
                self._lock_paths(parent)

            if self.modules.name_taken(project_id, parent_id, name):
                raise ConflictError("TestModule", "name", name)
            if sort_order is None:
                sort_order = self.modules.max_sort_order(project_id, parent_id) + 1
            elif self.modules.sort_order_taken(project_id, parent_id, sort_order):
                raise ConflictError("TestModule", "sort_order", sort_order)

            depth, module_path = path_builder.placement(parent, self.separator)
            with self._unique_name(name):
                module = self.modules.put(TestModule(
                    project_id=project_id,
                    parent_id=parent_id,
                    name=name,
                    description=description or "",
                    module_path=module_path,
                    depth=depth,
                    sort_order=sort_order,
                    created_by=operator_id,
                    updated_by=operator_id,
                ))

        logger.info("Module created: %s (depth=%d)", name, depth,
                    extra={"project_id": project_id, "module_id": module.id,
                           "operator_id": operator_id})
        return module

    def rename(self, module_id: int, new_name: str, operator_id: int | None = None) -> TestModule:
        module = self.get(module_id)
        new_name = path_builder.validate_name(new_name, self.separator, self.name_max_length, module_id)

        with self._project_lock(module.project_id), unit_of_work():
            self._lock_paths(module)
            module = self.get(module_id)
            if new_name == module.name:
                return module
            if self.modules.name_taken(module.project_id, module.parent_id, new_name,
                                       exclude_id=module.id):
                raise ConflictError("TestModule", "name", new_name)

            subtree = self._load_subtree(module)
            old_name = module.name
            module.name = new_name
            module.updated_by = operator_id
            touched = self._cascade(module, subtree)
            with self._unique_name(new_name):
                self.modules.flush()

        logger.info("Module renamed: %s -> %s (%d descendants updated)", old_name, new_name, touched,
                    extra={"project_id": module.project_id, "module_id": module.id,
                           "operator_id": operator_id})
        return module

    def update(
        self,
        module_id: int,
        name: str | None = None,
        description: str | None = None,
        operator_id: int | None = None,
    ) -> TestModule:
        """Update name and/or description; a name change cascades like rename."""
        with unit_of_work():
            module = self.get(module_id)
            if description is not None:
                module.description = description
                module.updated_by = operator_id
            if name is not None:
                module = self.rename(module_id, name, operator_id=operator_id)
        return module

    def move(self, module_id: int, new_parent_id: int | None = None,
             operator_id: int | None = None) -> TestModule:
        module = self.get(module_id)

        with self._project_lock(module.project_id), unit_of_work():
            new_parent = None
            if new_parent_id is not None:
                if new_parent_id == module_id:
                    raise InvalidOperationError("TestModule", module_id,
                                                "a module cannot be moved under itself")
                new_parent = self.modules.get(new_parent_id)
                if new_parent is None or not new_parent.enabled:
                    raise NotFoundError("TestModule", new_parent_id)
                if new_parent.project_id != module.project_id:
                    raise InvalidOperationError(
                        "TestModule", module_id,
                        f"target parent {new_parent_id} belongs to another project",
                    )

            self._lock_paths(module, new_parent)
            module = self.get(module_id)

            if new_parent is not None and self._is_ancestor(module.id, new_parent):
                raise InvalidOperationError(
                    "TestModule", module_id,
                    f"target parent {new_parent_id} is a descendant of the module",
                )
            if new_parent_id == module.parent_id:
                return module
            if self.modules.name_taken(module.project_id, new_parent_id, module.name,
                                       exclude_id=module.id):
                raise ConflictError("TestModule", "name", module.name)

            subtree = self._load_subtree(module)
            old_parent_id = module.parent_id
            module.sort_order = self.modules.max_sort_order(module.project_id, new_parent_id) + 1
            module.parent_id = new_parent_id
            module.depth, module.module_path = path_builder.placement(new_parent, self.separator)
            module.updated_by = operator_id
            touched = self._cascade(module, subtree)
            with self._unique_name(module.name):
                self.modules.flush()

        logger.info("Module moved: %s parent %s -> %s (%d descendants updated)",
                    module.name, old_parent_id, new_parent_id, touched,
                    extra={"project_id": module.project_id, "module_id": module.id,
                           "operator_id": operator_id})
        return module

    def reorder(self, module_id: int, new_sort_order: int, operator_id: int | None = None) -> TestModule:
        with unit_of_work():
            module = self.get(module_id)
            self.modules.lock([module.id])
            if module.sort_order == new_sort_order:
                return module
            if self.modules.sort_order_taken(module.project_id, module.parent_id, new_sort_order,
                                             exclude_id=module.id):
                raise ConflictError("TestModule", "sort_order", new_sort_order)
            module.sort_order = new_sort_order
            module.updated_by = operator_id

        logger.info("Module reordered: %s sort_order=%d", module.name, new_sort_order,
                    extra={"project_id": module.project_id, "module_id": module.id,
                           "operator_id": operator_id})
        return module

    def delete(self, module_id: int, operator_id: int | None = None) -> None:
        with unit_of_work():
            module = self.get(module_id)
            self.modules.lock([module.id])
            if self.modules.has_active_children(module.id):
                raise InvalidOperationError("TestModule", module_id, "module has child modules")
            if self.cases.has_active_cases(module.id):
                raise InvalidOperationError("TestModule", module_id, "module has test cases")
            module.soft_delete()
            module.updated_by = operator_id

        logger.info("Module deleted: %s", module.name,
                    extra={"project_id": module.project_id, "module_id": module.id,
                           "operator_id": operator_id})

    # ── Helpers ──────────────────────────────────────────────────────────

    def _is_ancestor(self, module_id: int, candidate: TestModule) -> bool:
        """True if ``module_id`` appears on candidate's chain up to the root."""
        return module_id in self.modules.ancestor_ids(candidate)

    def _load_subtree(self, module: TestModule) -> list[TestModule]:
        """Current descendants of ``module``; must run before its name/path change."""
        prefix = path_builder.subtree_prefix(module, self.separator)
        return list(self.modules.scan_by_prefix(module.project_id, prefix, self.separator))

    def _cascade(self, root: TestModule, subtree: list[TestModule]) -> int:
        """Recompute depth/path of every descendant of ``root``, parents first."""
        by_parent = defaultdict(list)
        for node in subtree:
            by_parent[node.parent_id].append(node)

        touched = 0
        queue = deque([root])
        while queue:
            parent = queue.popleft()
            for child in by_parent.pop(parent.id, ()):
                child.depth, child.module_path = path_builder.placement(parent, self.separator)
                touched += 1
                queue.append(child)

        if by_parent:
            # Prefix matched rows that are not linked to the subtree by parent_id.
            logger.warning("Module cascade skipped %d unrelated rows under %s",
                           sum(len(v) for v in by_parent.values()), root.name,
                           extra={"project_id": root.project_id, "module_id": root.id})
        return touched
