"""Repository for TestModule (project-scoped tree nodes)."""

from collections.abc import Iterator

from sqlalchemy import func, or_, select

from testhub.models import db
from testhub.models.testing import TestModule
from testhub.repositories.base import BaseRepository


class ModuleRepository(BaseRepository):
    """Data access for the module tree; no tree rules live here."""

    model = TestModule

    def _siblings_stmt(self, project_id: int, parent_id: int | None):
        stmt = select(TestModule).where(
            TestModule.project_id == project_id,
            TestModule.enabled.is_(True),
        )
        if parent_id is None:
            return stmt.where(TestModule.parent_id.is_(None))
        return stmt.where(TestModule.parent_id == parent_id)

    def siblings(self, project_id: int, parent_id: int | None) -> list[TestModule]:
        """Enabled modules under ``parent_id`` (roots when None), in display order."""
        stmt = self._siblings_stmt(project_id, parent_id).order_by(
            TestModule.sort_order, TestModule.id
        )
        return list(db.session.scalars(stmt))

    def name_taken(self, project_id, parent_id, name, *, exclude_id=None) -> bool:
        stmt = self._siblings_stmt(project_id, parent_id).where(TestModule.name == name)
        if exclude_id is not None:
            stmt = stmt.where(TestModule.id != exclude_id)
        return db.session.scalars(stmt.limit(1)).first() is not None

    def sort_order_taken(self, project_id, parent_id, sort_order, *, exclude_id=None) -> bool:
        stmt = self._siblings_stmt(project_id, parent_id).where(TestModule.sort_order == sort_order)
        if exclude_id is not None:
            stmt = stmt.where(TestModule.id != exclude_id)
        return db.session.scalars(stmt.limit(1)).first() is not None

    def max_sort_order(self, project_id: int, parent_id: int | None) -> int:
        """Highest sort_order among enabled siblings, 0 when there are none."""
        stmt = self._siblings_stmt(project_id, parent_id).with_only_columns(
            func.max(TestModule.sort_order)
        )
        return db.session.execute(stmt).scalar() or 0

    def has_active_children(self, module_id: int) -> bool:
        stmt = select(TestModule.id).where(
            TestModule.parent_id == module_id,
            TestModule.enabled.is_(True),
        ).limit(1)
        return db.session.execute(stmt).first() is not None

    def count_children(self, module_id: int) -> int:
        stmt = select(func.count(TestModule.id)).where(
            TestModule.parent_id == module_id,
            TestModule.enabled.is_(True),
        )
        return db.session.execute(stmt).scalar() or 0

    def scan_by_prefix(self, project_id: int, prefix: str, separator: str) -> Iterator[TestModule]:
        """Stream enabled modules whose module_path lies under ``prefix``.

        Matches the direct children (path == prefix) and every deeper level
        (path starts with prefix + separator), ordered by depth then
        sort_order, so a parent is always yielded before its children.
        """
        stmt = (
            select(TestModule)
            .where(
                TestModule.project_id == project_id,
                TestModule.enabled.is_(True),
                or_(
                    TestModule.module_path == prefix,
                    TestModule.module_path.startswith(prefix + separator, autoescape=True),
                ),
            )
            .order_by(TestModule.depth, TestModule.sort_order, TestModule.id)
            .execution_options(yield_per=200)
        )
        yield from db.session.scalars(stmt)

    def all_for_project(self, project_id: int) -> list[TestModule]:
        stmt = (
            select(TestModule)
            .where(TestModule.project_id == project_id, TestModule.enabled.is_(True))
            .order_by(TestModule.depth, TestModule.sort_order, TestModule.id)
        )
        return list(db.session.scalars(stmt))

    def ancestor_ids(self, module: TestModule) -> list[int]:
        """Ids from ``module`` up to its root, following parent_id.

        Bounded by the number of hops the stored depth allows (plus one) and
        by a visited set, so a corrupted chain can never loop forever.
        """
        ids = []
        seen = set()
        current = module
        max_hops = (module.depth or 1) + 1
        while current is not None and current.id not in seen and len(ids) <= max_hops:
            ids.append(current.id)
            seen.add(current.id)
            current = self.get(current.parent_id)
        return ids
