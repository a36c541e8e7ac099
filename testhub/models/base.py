"""
ProjectScopedModel: abstract base class for project-owned assets.

Modules and test cases both belong to exactly one project. This adds:
  - project_id column with index
  - created_by / updated_by operator columns
  - created_at / updated_at timestamps
"""

from datetime import datetime, timezone

from testhub.models import db


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProjectScopedModel(db.Model):
    """Abstract base for project-scoped tables."""
    __abstract__ = True

    project_id = db.Column(db.Integer, nullable=False, index=True)

    created_by = db.Column(db.Integer, nullable=True)
    updated_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

