"""
Soft Delete Mixin

Adds an ``enabled`` flag and query helpers for soft delete. Test assets are
never physically removed: disabling a row hides it from every engine read
while keeping identifiers (module paths, case ids, step history) intact.

Usage:
    class MyModel(SoftDeleteMixin, db.Model):
        ...

    # Soft delete
    obj.soft_delete()

    # Query only active records
    MyModel.query_active().all()
"""

from testhub.models import db


class SoftDeleteMixin:
    """Mixin that adds ``enabled``-flag soft delete to any SQLAlchemy model."""

    enabled = db.Column(db.Boolean, nullable=False, default=True, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.enabled = False

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.enabled.is_(True))
