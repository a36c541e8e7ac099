"""
Test Hub
Asset Service

Composition root of the engine. Every use case the controller layer needs
is a method here; each one runs in a single unit of work, so a failure
anywhere rolls back the whole use case.

Cross-component rules enforced here:
  - a case is created/moved only under an enabled module of its project
  - case body and steps change only while the case is editable
  - step edits bump the case version
  - a case under review cannot be deleted

Usage:
    from testhub.services.asset_service import get_asset_service

    assets = get_asset_service()
    module = assets.create_module(project_id=1, name="Order to Cash")
    case = assets.create_case(1, module.id, {"title": "Create order"}, operator_id=7)
    assets.submit_case(case.id, operator_id=7)
"""

import logging

from flask import Flask, current_app
from sqlalchemy import case as sa_case
from sqlalchemy import func, or_, select

from testhub.core.exceptions import AssetError, InvalidOperationError, InvalidStateError
from testhub.models import db
from testhub.models.testing import (
    PRIORITY_LEVELS,
    TestCase,
    TestCasePriority,
    TestCaseStatus,
    TestCaseType,
)
from testhub.repositories.base import unit_of_work
from testhub.repositories.case_repository import TestCaseRepository
from testhub.repositories.module_repository import ModuleRepository
from testhub.services import lifecycle
from testhub.services.case_identifier import CaseIdentifier
from testhub.services.module_tree import ModuleTree
from testhub.services.step_sequencer import StepSequencer

logger = logging.getLogger(__name__)

EXTENSION_KEY = "testhub.assets"

# Body fields a caller may set on create/update.
CASE_FIELDS = (
    "title", "description", "preconditions", "test_data", "expected_result",
    "postconditions", "type", "priority", "automated", "automation_script",
    "estimated_time", "requirement_id",
)

_COPY_FIELDS = CASE_FIELDS[1:] + ("tags",)

# Body fields backed by NOT NULL columns; omit them to keep the current value.
_REQUIRED_FIELDS = ("type", "priority", "automated")

_ORDERINGS = {
    "sort_order": (TestCase.sort_order, TestCase.id),
    "created_at": (TestCase.created_at.desc(), TestCase.id),
    "case_id": (TestCase.case_id,),
    "title": (TestCase.title, TestCase.id),
    "priority": (
        sa_case({p.value: level for p, level in PRIORITY_LEVELS.items()}, value=TestCase.priority),
        TestCase.sort_order,
        TestCase.id,
    ),
}


def _check_enum(enum_cls, value, field: str, resource_id=None) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        raise InvalidOperationError(
            "TestCase", resource_id, f"invalid {field} '{value}'"
        ) from None


def _clean_case_data(data: dict, resource_id=None) -> dict:
    fields = {k: data[k] for k in CASE_FIELDS if k in data}
    if "title" in fields:
        fields["title"] = (fields["title"] or "").strip()
        if not fields["title"]:
            raise InvalidOperationError("TestCase", resource_id, "title is required")
    for field in _REQUIRED_FIELDS:
        if field in fields and fields[field] is None:
            raise InvalidOperationError("TestCase", resource_id, f"{field} cannot be null")
    if fields.get("type") is not None:
        fields["type"] = _check_enum(TestCaseType, fields["type"], "type", resource_id)
    if fields.get("priority") is not None:
        fields["priority"] = _check_enum(TestCasePriority, fields["priority"], "priority", resource_id)
    return fields


def _tag_filter(tag: str):
    column = TestCase.tags
    return or_(
        column == tag,
        column.startswith(tag + ",", autoescape=True),
        column.endswith("," + tag, autoescape=True),
        column.contains("," + tag + ",", autoescape=True),
    )


class AssetService:
    """Test asset hierarchy and lifecycle use cases."""

    def __init__(self, separator: str = "/", name_max_length: int = 100, case_id_max_retries: int = 5):
        self.tree = ModuleTree(separator=separator, name_max_length=name_max_length)
        self.steps = StepSequencer()
        self.identifiers = CaseIdentifier(max_retries=case_id_max_retries)
        self.modules = ModuleRepository()
        self.cases = TestCaseRepository()

    @classmethod
    def from_config(cls, config) -> "AssetService":
        return cls(
            separator=config.get("MODULE_PATH_SEPARATOR", "/"),
            name_max_length=config.get("MODULE_NAME_MAX_LENGTH", 100),
            case_id_max_retries=config.get("CASE_ID_MAX_RETRIES", 5),
        )

    # ═════════════════════════════════════════════════════════════════════
    # MODULES
    # ═════════════════════════════════════════════════════════════════════

    def create_module(self, project_id, name, parent_id=None, sort_order=None,
                      description=None, operator_id=None):
        return self.tree.create(project_id, name, parent_id=parent_id, sort_order=sort_order,
                                description=description, operator_id=operator_id)

    def rename_module(self, module_id, new_name, operator_id=None):
        return self.tree.rename(module_id, new_name, operator_id=operator_id)

    def update_module(self, module_id, name=None, description=None, operator_id=None):
        return self.tree.update(module_id, name=name, description=description, operator_id=operator_id)

    def move_module(self, module_id, new_parent_id=None, operator_id=None):
        return self.tree.move(module_id, new_parent_id, operator_id=operator_id)

    def reorder_module(self, module_id, new_sort_order, operator_id=None):
        return self.tree.reorder(module_id, new_sort_order, operator_id=operator_id)

    def delete_module(self, module_id, operator_id=None):
        return self.tree.delete(module_id, operator_id=operator_id)

    def get_module(self, module_id, project_id=None):
        return self.tree.get(module_id, project_id)

    def module_roots(self, project_id):
        return self.tree.roots(project_id)

    def module_children(self, module_id):
        return self.tree.children(module_id)

    def module_descendants(self, module_id):
        return self.tree.descendants(module_id)

    def module_tree(self, project_id):
        return self.tree.tree(project_id)

    def module_statistics(self, module_id):
        return self.tree.statistics(module_id)

    def count_test_cases_recursive(self, module_id):
        return self.tree.count_test_cases_recursive(module_id)

    # ═════════════════════════════════════════════════════════════════════
    # TEST CASES
    # ═════════════════════════════════════════════════════════════════════

    def _editable_case(self, test_case_id: int, project_id: int | None = None) -> TestCase:
        case = self.cases.get_active(test_case_id, project_id=project_id)
        lifecycle.ensure_editable(case)
        return case

    def create_case(self, project_id: int, module_id: int, data: dict,
                    steps: list[dict] | None = None, operator_id: int | None = None) -> TestCase:
        """
        Create a DRAFT case (version 1) under an enabled module of the project.

        Args:
            data: case body, ``title`` required; ``tags`` may be a list or a
                comma-separated string; ``sort_order`` optional
            steps: optional initial steps, appended in order
        """
        fields = _clean_case_data(data)
        if not fields.get("title"):
            raise InvalidOperationError("TestCase", None, "title is required")

        with unit_of_work():
            module = self.modules.get_active(module_id, project_id=project_id)
            sort_order = data.get("sort_order")
            if sort_order is None:
                sort_order = self.cases.max_sort_order(module.id) + 1

            def build(case_id):
                case = TestCase(
                    case_id=case_id,
                    project_id=project_id,
                    module_id=module.id,
                    sort_order=sort_order,
                    status=TestCaseStatus.DRAFT.value,
                    version=1,
                    created_by=operator_id,
                    updated_by=operator_id,
                    **fields,
                )
                case.tag_list = _as_tag_list(data.get("tags"))
                return case

            case = self.identifiers.insert_with_identifier(project_id, module.id, build)
            if steps:
                self.steps.append_many(case.id, steps)

        logger.info("Test case created: %s", case.case_id,
                    extra={"project_id": project_id, "module_id": module_id,
                           "test_case_id": case.id, "case_id": case.case_id,
                           "operator_id": operator_id})
        return case

    def get_case(self, test_case_id: int, project_id: int | None = None) -> TestCase:
        return self.cases.get_active(test_case_id, project_id=project_id)

    def get_case_by_case_id(self, case_id: str) -> TestCase:
        return self.cases.get_by_case_id(case_id)

    def update_case(self, test_case_id: int, data: dict, operator_id: int | None = None,
                    project_id: int | None = None) -> TestCase:
        """Update the case body; only DRAFT/REJECTED cases, version += 1."""
        with unit_of_work():
            case = self._editable_case(test_case_id, project_id)
            for field, value in _clean_case_data(data, case.id).items():
                setattr(case, field, value)
            if "tags" in data:
                case.tag_list = _as_tag_list(data["tags"])
            if data.get("sort_order") is not None:
                case.sort_order = data["sort_order"]
            case.version += 1
            case.updated_by = operator_id

        logger.info("Test case updated: %s (v%d)", case.case_id, case.version,
                    extra={"test_case_id": case.id, "case_id": case.case_id, "operator_id": operator_id})
        return case

    def delete_case(self, test_case_id: int, operator_id: int | None = None,
                    project_id: int | None = None) -> None:
        """Soft-delete a case and its steps; refused while UNDER_REVIEW."""
        with unit_of_work():
            case = self.cases.get_active(test_case_id, project_id=project_id)
            if case.status == TestCaseStatus.UNDER_REVIEW.value:
                raise InvalidStateError("TestCase", case.id, current=case.status, action="delete")
            case.soft_delete()
            case.updated_by = operator_id
            self.steps.remove_all(case.id)

        logger.info("Test case deleted: %s", case.case_id,
                    extra={"test_case_id": case.id, "case_id": case.case_id, "operator_id": operator_id})

    def copy_case(self, test_case_id: int, new_title: str | None = None,
                  operator_id: int | None = None) -> TestCase:
        """Copy a case and its steps into the same module as a new DRAFT."""
        with unit_of_work():
            source = self.cases.get_active(test_case_id)
            data = {f: getattr(source, f) for f in _COPY_FIELDS}
            data["title"] = (new_title or f"Copy of {source.title}")[:300]
            data["tags"] = source.tag_list
            copy = self.create_case(source.project_id, source.module_id, data,
                                    operator_id=operator_id)
            self.steps.copy_all(source.id, copy.id)

        logger.info("Test case copied: %s -> %s", source.case_id, copy.case_id,
                    extra={"test_case_id": copy.id, "case_id": copy.case_id, "operator_id": operator_id})
        return copy

    def move_case(self, test_case_id: int, target_module_id: int,
                  operator_id: int | None = None) -> TestCase:
        """Re-home a case under another module of the same project; case_id is kept."""
        with unit_of_work():
            case = self.cases.get_active(test_case_id)
            target = self.modules.get_active(target_module_id, project_id=case.project_id)
            if target.id == case.module_id:
                return case
            previous_module_id = case.module_id
            case.module_id = target.id
            case.sort_order = self.cases.max_sort_order(target.id) + 1
            case.updated_by = operator_id

        logger.info("Test case moved: %s module %s -> %s", case.case_id, previous_module_id, target.id,
                    extra={"test_case_id": case.id, "case_id": case.case_id, "operator_id": operator_id})
        return case

    def list_cases(
        self,
        project_id: int,
        *,
        module_id: int | None = None,
        recursive: bool = False,
        status: str | None = None,
        type: str | None = None,
        priority: str | None = None,
        automated: bool | None = None,
        tag: str | None = None,
        keyword: str | None = None,
        order_by: str = "sort_order",
        limit: int | None = None,
        offset: int = 0,
    ) -> dict:
        """
        Filtered, paginated case listing for one project.

        Returns:
            {"items": [TestCase, ...], "total": int, "limit": int|None, "offset": int}
        """
        stmt = select(TestCase).where(
            TestCase.project_id == project_id,
            TestCase.enabled.is_(True),
        )
        if module_id is not None:
            module_ids = [module_id]
            if recursive:
                module_ids += [m.id for m in self.tree.descendants(module_id)]
            stmt = stmt.where(TestCase.module_id.in_(module_ids))
        if status:
            stmt = stmt.where(TestCase.status == _check_enum(TestCaseStatus, status, "status"))
        if type:
            stmt = stmt.where(TestCase.type == _check_enum(TestCaseType, type, "type"))
        if priority:
            stmt = stmt.where(TestCase.priority == _check_enum(TestCasePriority, priority, "priority"))
        if automated is not None:
            stmt = stmt.where(TestCase.automated.is_(bool(automated)))
        if tag:
            stmt = stmt.where(_tag_filter(tag.strip()))
        if keyword:
            pattern = f"%{keyword.strip()}%"
            stmt = stmt.where(or_(
                TestCase.title.ilike(pattern),
                TestCase.description.ilike(pattern),
                TestCase.case_id.ilike(pattern),
            ))

        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar() or 0

        ordering = _ORDERINGS.get(order_by)
        if ordering is None:
            raise InvalidOperationError("TestCase", None, f"unsupported order_by '{order_by}'")
        stmt = stmt.order_by(*ordering).offset(max(offset, 0))
        if limit is not None:
            stmt = stmt.limit(limit)

        items = list(db.session.scalars(stmt))
        logger.debug("Listed %d/%d test cases", len(items), total, extra={"project_id": project_id})
        return {"items": items, "total": total, "limit": limit, "offset": offset}

    def case_statistics(self, project_id: int) -> dict:
        by_status = self.cases.count_by(project_id, TestCase.status)
        by_type = self.cases.count_by(project_id, TestCase.type)
        by_priority = self.cases.count_by(project_id, TestCase.priority)
        automated = self.cases.count_by(project_id, TestCase.automated).get(True, 0)
        total = sum(by_status.values())
        return {
            "project_id": project_id,
            "total": total,
            "automated": automated,
            "automation_rate": round(automated / total * 100, 1) if total else 0.0,
            "by_status": by_status,
            "by_type": by_type,
            "by_priority": by_priority,
        }

    # ═════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═════════════════════════════════════════════════════════════════════

    def transition_case(self, test_case_id: int, action: str, operator_id: int | None = None,
                        comment: str | None = None, project_id: int | None = None) -> dict:
        """
        Apply a lifecycle action to one case.

        Returns:
            {"test_case_id", "case_id", "previous_status", "new_status", "action"}

        Raises:
            InvalidStateError: action not allowed from the current status
        """
        with unit_of_work():
            case = self.cases.get_active(test_case_id, project_id=project_id)
            self.cases.lock([case.id])
            return lifecycle.apply_transition(case, action, operator_id=operator_id, comment=comment)

    def submit_case(self, test_case_id, operator_id=None):
        return self.transition_case(test_case_id, "submit", operator_id)

    def resubmit_case(self, test_case_id, operator_id=None):
        return self.transition_case(test_case_id, "resubmit", operator_id)

    def claim_case(self, test_case_id, reviewer_id):
        return self.transition_case(test_case_id, "claim", reviewer_id)

    def approve_case(self, test_case_id, reviewer_id, comment=None):
        return self.transition_case(test_case_id, "approve", reviewer_id, comment)

    def reject_case(self, test_case_id, reviewer_id, comment=None):
        return self.transition_case(test_case_id, "reject", reviewer_id, comment)

    def activate_case(self, test_case_id, operator_id=None):
        return self.transition_case(test_case_id, "activate", operator_id)

    def deprecate_case(self, test_case_id, operator_id=None):
        return self.transition_case(test_case_id, "deprecate", operator_id)

    def archive_case(self, test_case_id, operator_id=None):
        return self.transition_case(test_case_id, "archive", operator_id)

    def batch_transition(self, test_case_ids: list[int], action: str, operator_id: int | None = None,
                         comment: str | None = None) -> dict:
        """
        Batch transition for multiple cases. Partial success allowed.

        Each case runs in its own savepoint: a failed item leaves the others
        applied.

        Returns:
            {"success": [...], "errors": [...]}
        """
        results = {"success": [], "errors": []}
        with unit_of_work():
            for test_case_id in test_case_ids:
                try:
                    results["success"].append(
                        self.transition_case(test_case_id, action, operator_id, comment)
                    )
                except AssetError as e:
                    results["errors"].append({
                        "test_case_id": test_case_id,
                        "error": str(e),
                        "error_type": e.kind,
                    })
        logger.info("Batch %s: %d ok, %d failed", action, len(results["success"]), len(results["errors"]),
                    extra={"operator_id": operator_id})
        return results

    def available_actions(self, test_case_id: int) -> list[str]:
        case = self.cases.get_active(test_case_id)
        return lifecycle.available_actions(case.status)

    def ensure_executable(self, test_case_id: int) -> TestCase:
        case = self.cases.get_active(test_case_id)
        lifecycle.ensure_executable(case)
        return case

    # ═════════════════════════════════════════════════════════════════════
    # STEPS
    # ═════════════════════════════════════════════════════════════════════

    def _bump_version(self, case: TestCase, operator_id) -> None:
        case.version += 1
        case.updated_by = operator_id

    def add_step(self, test_case_id: int, data: dict, operator_id: int | None = None):
        with unit_of_work():
            case = self._editable_case(test_case_id)
            step = self.steps.append(case.id, data)
            self._bump_version(case, operator_id)
        return step

    def add_steps(self, test_case_id: int, items: list[dict], operator_id: int | None = None):
        with unit_of_work():
            case = self._editable_case(test_case_id)
            created = self.steps.append_many(case.id, items)
            self._bump_version(case, operator_id)
        return created

    def insert_step(self, test_case_id: int, position: int, data: dict, operator_id: int | None = None):
        with unit_of_work():
            case = self._editable_case(test_case_id)
            step = self.steps.insert_at(case.id, position, data)
            self._bump_version(case, operator_id)
        return step

    def update_step(self, step_id: int, data: dict, operator_id: int | None = None):
        with unit_of_work():
            step = self.steps.get(step_id)
            case = self._editable_case(step.test_case_id)
            step = self.steps.update(step_id, data)
            self._bump_version(case, operator_id)
        return step

    def move_step(self, step_id: int, new_order: int, operator_id: int | None = None):
        with unit_of_work():
            step = self.steps.get(step_id)
            case = self._editable_case(step.test_case_id)
            step = self.steps.move_to(step_id, new_order)
            self._bump_version(case, operator_id)
        return step

    def remove_step(self, step_id: int, operator_id: int | None = None) -> None:
        with unit_of_work():
            step = self.steps.get(step_id)
            case = self._editable_case(step.test_case_id)
            self.steps.remove(step_id)
            self._bump_version(case, operator_id)

    def reorder_steps(self, test_case_id: int, ordered_step_ids: list[int], operator_id: int | None = None):
        with unit_of_work():
            case = self._editable_case(test_case_id)
            steps = self.steps.resequence(case.id, ordered_step_ids)
            self._bump_version(case, operator_id)
        return steps

    def list_steps(self, test_case_id: int):
        return self.steps.list_steps(test_case_id)

    def key_steps(self, test_case_id: int):
        return self.steps.key_steps(test_case_id)

    def automated_steps(self, test_case_id: int):
        return self.steps.automated_steps(test_case_id)


def _as_tag_list(tags) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        return tags.split(",")
    return list(tags)


def init_app(app: Flask) -> AssetService:
    """Build the engine from app config and register it on the app."""
    service = AssetService.from_config(app.config)
    app.extensions[EXTENSION_KEY] = service
    logger.info("AssetService initialized (separator=%r)", service.tree.separator)
    return service


def get_asset_service() -> AssetService:
    """AssetService registered on the current Flask app."""
    return current_app.extensions[EXTENSION_KEY]
