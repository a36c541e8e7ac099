"""Base repository with common persistence operations.

Repositories handle data access only. Transaction boundaries are opened by
the engine components through ``unit_of_work``:

    with unit_of_work():
        ...   # every write inside commits or rolls back together

The outermost unit commits on success and rolls back on any exception.
A unit opened while another one is active becomes a SAVEPOINT, so a
component called from AssetService joins the caller's transaction instead
of committing half of a use case.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import select

from testhub.core.exceptions import NotFoundError
from testhub.models import db

logger = logging.getLogger(__name__)

_UOW_DEPTH = "testhub.uow_depth"


@contextmanager
def unit_of_work():
    """Run the enclosed block as one atomic transaction (savepoint when nested)."""
    session = db.session()
    depth = session.info.get(_UOW_DEPTH, 0)
    session.info[_UOW_DEPTH] = depth + 1
    try:
        if depth:
            with session.begin_nested():
                yield session
        else:
            try:
                yield session
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.debug("Unit of work rolled back: %s", exc)
                raise
    finally:
        session.info[_UOW_DEPTH] = depth


class BaseRepository:
    """Base repository providing point lookups, writes and row locks."""

    model = None

    @property
    def resource(self) -> str:
        return self.model.__name__

    def get(self, pk):
        """Get a record by its primary key (enabled or not)."""
        if pk is None:
            return None
        return db.session.get(self.model, pk)

    def get_active(self, pk, *, project_id: int | None = None):
        """Get an enabled record, optionally scoped to a project.

        Missing rows, disabled rows and rows from another project are
        indistinguishable to the caller: all raise NotFoundError.
        """
        row = self.get(pk)
        if row is None or not row.enabled:
            raise NotFoundError(self.resource, pk, project_id)
        if project_id is not None and getattr(row, "project_id", project_id) != project_id:
            raise NotFoundError(self.resource, pk, project_id)
        return row

    def put(self, entity):
        """Add entity to the session and flush so it receives its id."""
        db.session.add(entity)
        db.session.flush()
        return entity

    def put_all(self, entities):
        db.session.add_all(entities)
        db.session.flush()
        return entities

    def flush(self) -> None:
        db.session.flush()

    def lock(self, pks) -> list:
        """SELECT ... FOR UPDATE the given rows in ascending id order.

        A stable lock order keeps two writers that touch overlapping rows
        from deadlocking. Rows are refreshed from the database so callers see
        the committed state of a concurrent writer. SQLite ignores FOR UPDATE.
        """
        ids = sorted({pk for pk in pks if pk is not None})
        if not ids:
            return []
        stmt = (
            select(self.model)
            .where(self.model.id.in_(ids))
            .order_by(self.model.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(db.session.scalars(stmt))
