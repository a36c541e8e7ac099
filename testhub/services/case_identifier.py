"""
Test Hub
Case Identifier

Business keys for test cases: ``TC_{project_id}_{module_id}_{seq:03d}``.

The sequence is 1 + the highest numeric suffix among every identifier with
the same prefix, disabled cases included, so an identifier is never handed
out twice. Two writers computing the same value are resolved by the unique
constraint on ``test_cases.case_id``: the insert runs in a SAVEPOINT and a
unique violation rolls back just that savepoint, recomputes and retries.

Usage:
    ids = CaseIdentifier(max_retries=5)
    case = ids.insert_with_identifier(project_id, module_id, lambda cid: TestCase(case_id=cid, ...))
"""

import logging
from collections.abc import Callable

from sqlalchemy.exc import IntegrityError

from testhub.core.exceptions import ConflictError
from testhub.models import db
from testhub.models.testing import TestCase
from testhub.repositories.case_repository import TestCaseRepository

logger = logging.getLogger(__name__)

CASE_ID_PREFIX = "TC"


def case_id_prefix(project_id: int, module_id: int) -> str:
    return f"{CASE_ID_PREFIX}_{project_id}_{module_id}_"


def format_case_id(project_id: int, module_id: int, seq: int) -> str:
    return f"{case_id_prefix(project_id, module_id)}{seq:03d}"


def parse_sequence(case_id: str, prefix: str) -> int | None:
    """Numeric suffix of ``case_id`` after ``prefix``, None if not numeric."""
    if not case_id or not case_id.startswith(prefix):
        return None
    suffix = case_id[len(prefix):]
    return int(suffix) if suffix.isdigit() else None


class CaseIdentifier:
    """Collision-free case_id allocation per (project, module)."""

    def __init__(self, max_retries: int = 5):
        self.max_retries = max(1, max_retries)
        self.cases = TestCaseRepository()

    def max_sequence(self, project_id: int, module_id: int) -> int:
        prefix = case_id_prefix(project_id, module_id)
        seqs = [
            seq for seq in (parse_sequence(cid, prefix) for cid in self.cases.case_ids_with_prefix(prefix))
            if seq is not None
        ]
        return max(seqs, default=0)

    def next(self, project_id: int, module_id: int) -> str:
        """Next free identifier as seen by the current transaction."""
        return format_case_id(project_id, module_id, self.max_sequence(project_id, module_id) + 1)

    def insert_with_identifier(
        self,
        project_id: int,
        module_id: int,
        build: Callable[[str], TestCase],
    ) -> TestCase:
        """
        Insert the case produced by ``build(case_id)`` under a fresh identifier.

        ``build`` is called once per attempt and must return a new, unsaved
        TestCase carrying the given case_id.

        Raises:
            ConflictError: every attempt lost the race for its identifier
        """
        session = db.session()
        case_id = None
        for attempt in range(1, self.max_retries + 1):
            case_id = self.next(project_id, module_id)
            case = build(case_id)
            try:
                with session.begin_nested():
                    session.add(case)
                    session.flush()
            except IntegrityError:
                logger.warning(
                    "Case id %s already taken, retrying (%d/%d)",
                    case_id, attempt, self.max_retries,
                    extra={"project_id": project_id, "module_id": module_id,
                           "case_id": case_id, "attempt": attempt},
                )
                continue
            logger.debug("Assigned case id %s", case_id,
                         extra={"project_id": project_id, "module_id": module_id, "case_id": case_id})
            return case

        raise ConflictError(
            "TestCase", "case_id", case_id,
            reason=f"could not allocate a case id after {self.max_retries} attempts",
        )
