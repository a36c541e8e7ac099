"""Repository for TestCase."""

from sqlalchemy import func, select

from testhub.core.exceptions import NotFoundError
from testhub.models import db
from testhub.models.testing import TestCase
from testhub.repositories.base import BaseRepository


class TestCaseRepository(BaseRepository):
    """Data access for test cases."""

    __test__ = False

    model = TestCase

    def get_by_case_id(self, case_id: str) -> TestCase:
        row = db.session.scalars(
            select(TestCase).where(TestCase.case_id == case_id, TestCase.enabled.is_(True))
        ).first()
        if row is None:
            raise NotFoundError("TestCase", case_id)
        return row

    def case_ids_with_prefix(self, prefix: str) -> list[str]:
        """Every case_id starting with ``prefix``, disabled rows included."""
        stmt = select(TestCase.case_id).where(
            TestCase.case_id.startswith(prefix, autoescape=True)
        )
        return list(db.session.scalars(stmt))

    def max_sort_order(self, module_id: int) -> int:
        stmt = select(func.max(TestCase.sort_order)).where(
            TestCase.module_id == module_id,
            TestCase.enabled.is_(True),
        )
        return db.session.execute(stmt).scalar() or 0

    def count_active(self, module_ids) -> int:
        ids = list(module_ids)
        if not ids:
            return 0
        stmt = select(func.count(TestCase.id)).where(
            TestCase.module_id.in_(ids),
            TestCase.enabled.is_(True),
        )
        return db.session.execute(stmt).scalar() or 0

    def has_active_cases(self, module_id: int) -> bool:
        stmt = select(TestCase.id).where(
            TestCase.module_id == module_id,
            TestCase.enabled.is_(True),
        ).limit(1)
        return db.session.execute(stmt).first() is not None

    def count_by(self, project_id: int, column) -> dict:
        """Enabled case counts for one project grouped by ``column``."""
        stmt = (
            select(column, func.count(TestCase.id))
            .where(TestCase.project_id == project_id, TestCase.enabled.is_(True))
            .group_by(column)
        )
        return {key: count for key, count in db.session.execute(stmt)}
