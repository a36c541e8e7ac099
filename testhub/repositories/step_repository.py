"""Repository for TestStep."""

from sqlalchemy import func, select, update

from testhub.models import db
from testhub.models.testing import TestStep
from testhub.repositories.base import BaseRepository


class TestStepRepository(BaseRepository):
    """Data access for the steps of one test case."""

    __test__ = False

    model = TestStep

    def _active(self, test_case_id: int):
        return select(TestStep).where(
            TestStep.test_case_id == test_case_id,
            TestStep.enabled.is_(True),
        )

    def active_steps(self, test_case_id: int, **filters) -> list[TestStep]:
        stmt = self._active(test_case_id)
        for column, value in filters.items():
            stmt = stmt.where(getattr(TestStep, column) == value)
        return list(db.session.scalars(stmt.order_by(TestStep.step_order, TestStep.id)))

    def count_active(self, test_case_id: int) -> int:
        stmt = self._active(test_case_id).with_only_columns(func.count(TestStep.id))
        return db.session.execute(stmt).scalar() or 0

    def max_order(self, test_case_id: int) -> int:
        stmt = self._active(test_case_id).with_only_columns(func.max(TestStep.step_order))
        return db.session.execute(stmt).scalar() or 0

    def steps_in_range(self, test_case_id: int, low: int, high: int | None = None) -> list[TestStep]:
        """Enabled steps with ``low <= step_order <= high`` (open-ended when high is None)."""
        stmt = self._active(test_case_id).where(TestStep.step_order >= low)
        if high is not None:
            stmt = stmt.where(TestStep.step_order <= high)
        return list(db.session.scalars(stmt.order_by(TestStep.step_order)))

    def disable_all(self, test_case_id: int) -> int:
        """Soft-delete every step of a case in one statement; returns rows touched."""
        result = db.session.execute(
            update(TestStep)
            .where(TestStep.test_case_id == test_case_id, TestStep.enabled.is_(True))
            .values(enabled=False)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
