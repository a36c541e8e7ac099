"""
Test Hub
Step Sequencer

Keeps the enabled steps of a test case numbered 1..N without gaps or
duplicates. Every shift runs inside one unit of work with the owning
TestCase row locked, so concurrent edits of the same case serialize.

    append      step_order = max + 1
    insert_at   orders >= position shift up, new step takes position
    move_to     only the steps between the old and new position shift
    remove      soft delete, later steps shift down
    resequence  explicit permutation of every enabled step

The sequencer does not look at the case status; AssetService decides
whether the case is editable before calling in.
"""

import logging

from testhub.core.exceptions import ConflictError, InvalidOperationError
from testhub.models.testing import TestStep
from testhub.repositories.base import unit_of_work
from testhub.repositories.case_repository import TestCaseRepository
from testhub.repositories.step_repository import TestStepRepository

logger = logging.getLogger(__name__)

STEP_FIELDS = (
    "description",
    "test_data",
    "expected_result",
    "remark",
    "is_key_step",
    "automated",
    "automation_code",
    "estimated_time",
)


def _build_step(test_case_id: int, step_order: int, data: dict) -> TestStep:
    description = (data.get("description") or "").strip()
    if not description:
        raise InvalidOperationError("TestStep", None, "description is required")
    fields = {k: data[k] for k in STEP_FIELDS if k in data and data[k] is not None}
    fields["description"] = description
    return TestStep(test_case_id=test_case_id, step_order=step_order, **fields)


class StepSequencer:
    """Ordered steps within one test case."""

    def __init__(self):
        self.steps = TestStepRepository()
        self.cases = TestCaseRepository()

    def _lock_case(self, test_case_id: int):
        case = self.cases.get_active(test_case_id)
        self.cases.lock([case.id])
        return case

    # ── Reads ────────────────────────────────────────────────────────────

    def list_steps(self, test_case_id: int) -> list[TestStep]:
        self.cases.get_active(test_case_id)
        return self.steps.active_steps(test_case_id)

    def key_steps(self, test_case_id: int) -> list[TestStep]:
        return self.steps.active_steps(test_case_id, is_key_step=True)

    def automated_steps(self, test_case_id: int) -> list[TestStep]:
        return self.steps.active_steps(test_case_id, automated=True)

    def get(self, step_id: int) -> TestStep:
        return self.steps.get_active(step_id)

    # ── Writes ───────────────────────────────────────────────────────────

    def append(self, test_case_id: int, data: dict) -> TestStep:
        with unit_of_work():
            self._lock_case(test_case_id)
            step = self.steps.put(
                _build_step(test_case_id, self.steps.max_order(test_case_id) + 1, data)
            )
        logger.info("Step appended at %d", step.step_order,
                    extra={"test_case_id": test_case_id, "step_id": step.id})
        return step

    def append_many(self, test_case_id: int, items: list[dict]) -> list[TestStep]:
        with unit_of_work():
            self._lock_case(test_case_id)
            start = self.steps.max_order(test_case_id)
            created = self.steps.put_all([
                _build_step(test_case_id, start + offset, data)
                for offset, data in enumerate(items, start=1)
            ])
        logger.info("Appended %d steps", len(created), extra={"test_case_id": test_case_id})
        return created

    def insert_at(self, test_case_id: int, position: int, data: dict) -> TestStep:
        with unit_of_work():
            self._lock_case(test_case_id)
            count = self.steps.count_active(test_case_id)
            if position < 1 or position > count + 1:
                raise InvalidOperationError(
                    "TestStep", None, f"position {position} outside 1..{count + 1}"
                )
            for step in self.steps.steps_in_range(test_case_id, position):
                step.step_order += 1
            step = self.steps.put(_build_step(test_case_id, position, data))
        logger.info("Step inserted at %d", position,
                    extra={"test_case_id": test_case_id, "step_id": step.id})
        return step

    def move_to(self, step_id: int, new_order: int) -> TestStep:
        with unit_of_work():
            step = self.steps.get_active(step_id)
            self._lock_case(step.test_case_id)
            count = self.steps.count_active(step.test_case_id)
            if new_order < 1 or new_order > count:
                raise ConflictError(
                    "TestStep", "step_order", new_order,
                    reason=f"step_order {new_order} outside 1..{count}",
                )
            old_order = step.step_order
            if new_order == old_order:
                return step

            if old_order < new_order:
                # later position: (old, new] move one place earlier
                for other in self.steps.steps_in_range(step.test_case_id, old_order + 1, new_order):
                    other.step_order -= 1
            else:
                # earlier position: [new, old) move one place later
                for other in self.steps.steps_in_range(step.test_case_id, new_order, old_order - 1):
                    other.step_order += 1
            step.step_order = new_order
            self.steps.flush()

        logger.info("Step moved %d -> %d", old_order, new_order,
                    extra={"test_case_id": step.test_case_id, "step_id": step.id})
        return step

    def remove(self, step_id: int) -> None:
        with unit_of_work():
            step = self.steps.get_active(step_id)
            self._lock_case(step.test_case_id)
            removed_order = step.step_order
            step.soft_delete()
            for other in self.steps.steps_in_range(step.test_case_id, removed_order + 1):
                other.step_order -= 1
        logger.info("Step removed from %d", removed_order,
                    extra={"test_case_id": step.test_case_id, "step_id": step.id})

    def resequence(self, test_case_id: int, ordered_step_ids: list[int]) -> list[TestStep]:
        """Assign 1..N following ``ordered_step_ids``, which must list every enabled step once."""
        with unit_of_work():
            self._lock_case(test_case_id)
            current = {s.id: s for s in self.steps.active_steps(test_case_id)}
            if len(ordered_step_ids) != len(set(ordered_step_ids)) or set(ordered_step_ids) != set(current):
                raise InvalidOperationError(
                    "TestStep", None, "step ids must be a permutation of the case's enabled steps"
                )
            for order, step_id in enumerate(ordered_step_ids, start=1):
                current[step_id].step_order = order
            self.steps.flush()
        logger.info("Steps resequenced (%d)", len(ordered_step_ids),
                    extra={"test_case_id": test_case_id})
        return [current[i] for i in ordered_step_ids]

    def update(self, step_id: int, data: dict) -> TestStep:
        """Change step content; step_order is never written here."""
        with unit_of_work():
            step = self.steps.get_active(step_id)
            self._lock_case(step.test_case_id)
            for field in STEP_FIELDS:
                if field in data:
                    setattr(step, field, data[field])
            if not (step.description or "").strip():
                raise InvalidOperationError("TestStep", step_id, "description is required")
        logger.info("Step updated", extra={"test_case_id": step.test_case_id, "step_id": step.id})
        return step

    def copy_all(self, source_case_id: int, target_case_id: int) -> list[TestStep]:
        """Append copies of the source's enabled steps to the target case."""
        source = self.steps.active_steps(source_case_id)
        return self.append_many(
            target_case_id,
            [{field: getattr(s, field) for field in STEP_FIELDS} for s in source],
        ) if source else []

    def remove_all(self, test_case_id: int) -> int:
        with unit_of_work():
            disabled = self.steps.disable_all(test_case_id)
        logger.info("Disabled %d steps", disabled, extra={"test_case_id": test_case_id})
        return disabled
