"""
Test Hub
Test asset models.

Models:
    - TestModule:  node in the per-project module forest (materialized path)
    - TestCase:    unit of test design, owned by one module
    - TestStep:    ordered step within a test case

Architecture ref:
    Project ──1:N──▶ Test Module ──1:N──▶ Test Module (children)
    Test Module ──1:N──▶ Test Case ──1:N──▶ Test Step

Ownership:
    A module owns the path fields of its whole subtree. A case references its
    module by id only (a module must be empty before it can be deleted). Steps
    are owned by their case and cascade with it.
"""

from enum import Enum

from testhub.models import db
from testhub.models.base import ProjectScopedModel, utc_now
from testhub.models.soft_delete import SoftDeleteMixin


# ── Enumerations ─────────────────────────────────────────────────────────────

class TestCaseStatus(str, Enum):
    """Closed set of review/lifecycle states. Transitions live in services.lifecycle."""

    __test__ = False

    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACTIVE = "ACTIVE"
    DEPRECATED = "DEPRECATED"
    ARCHIVED = "ARCHIVED"


class TestCaseType(str, Enum):
    __test__ = False

    FUNCTIONAL = "FUNCTIONAL"
    API = "API"
    PERFORMANCE = "PERFORMANCE"
    SECURITY = "SECURITY"
    COMPATIBILITY = "COMPATIBILITY"
    USABILITY = "USABILITY"
    REGRESSION = "REGRESSION"
    SMOKE = "SMOKE"


class TestCasePriority(str, Enum):
    __test__ = False

    BLOCKER = "BLOCKER"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    TRIVIAL = "TRIVIAL"


# Lower level = more urgent.
PRIORITY_LEVELS = {
    TestCasePriority.BLOCKER: 1,
    TestCasePriority.HIGH: 2,
    TestCasePriority.MEDIUM: 3,
    TestCasePriority.LOW: 4,
    TestCasePriority.TRIVIAL: 5,
}


# ═════════════════════════════════════════════════════════════════════════════
# TEST MODULE
# ═════════════════════════════════════════════════════════════════════════════

class TestModule(SoftDeleteMixin, ProjectScopedModel):
    """
    Node in a project's module tree.

    ``module_path`` encodes the names of all ancestors joined by the path
    separator ("" for roots); the module's own name is not part of it. The
    path of every descendant therefore starts with ``module_path + sep + name``
    which turns subtree reads into prefix scans.
    """

    __test__ = False
    __tablename__ = "test_modules"
    __table_args__ = (
        db.Index("ix_test_modules_project_parent", "project_id", "parent_id"),
        db.Index("ix_test_modules_project_path", "project_id", "module_path"),
    )

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("test_modules.id", ondelete="RESTRICT"),
        nullable=True, index=True, comment="NULL for root modules",
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")

    # ── Hierarchy (derived, maintained by ModuleTree)
    module_path = db.Column(
        db.String(2000), nullable=False, default="",
        comment="Ancestor names joined by separator, '' for roots",
    )
    depth = db.Column(db.Integer, nullable=False, default=1, comment="1 for roots")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "description": self.description,
            "module_path": self.module_path,
            "depth": self.depth,
            "sort_order": self.sort_order,
            "enabled": self.enabled,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<TestModule {self.id}: {self.module_path}/{self.name} depth={self.depth}>"


# Enabled siblings never share a name; roots are grouped under parent 0.
SIBLING_NAME_INDEX = "uq_test_modules_sibling_name"

db.Index(
    SIBLING_NAME_INDEX,
    TestModule.project_id,
    db.func.coalesce(TestModule.parent_id, 0),
    TestModule.name,
    unique=True,
    postgresql_where=TestModule.enabled.is_(True),
    sqlite_where=TestModule.enabled.is_(True),
)


# ═════════════════════════════════════════════════════════════════════════════
# TEST CASE
# ═════════════════════════════════════════════════════════════════════════════

class TestCase(SoftDeleteMixin, ProjectScopedModel):
    """
    Individual test case in the catalog.

    ``case_id`` is the human-readable business key (TC_{project}_{module}_{seq}).
    It is assigned once at creation, never renumbered, and unique across the
    whole table including disabled rows.
    """

    __test__ = False
    __tablename__ = "test_cases"
    __table_args__ = (
        db.Index("ix_test_cases_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(64), nullable=False, unique=True)
    module_id = db.Column(
        db.Integer, db.ForeignKey("test_modules.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    requirement_id = db.Column(db.Integer, nullable=True, comment="Linked requirement for traceability")

    # ── Body
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    preconditions = db.Column(db.Text, default="")
    test_data = db.Column(db.Text, default="")
    expected_result = db.Column(db.Text, default="")
    postconditions = db.Column(db.Text, default="")
    type = db.Column(db.String(30), nullable=False, default=TestCaseType.FUNCTIONAL.value)
    priority = db.Column(db.String(20), nullable=False, default=TestCasePriority.MEDIUM.value)
    automated = db.Column(db.Boolean, nullable=False, default=False)
    automation_script = db.Column(db.Text, nullable=True)
    tags = db.Column(db.String(500), nullable=True, comment="Comma-separated tag list")
    estimated_time = db.Column(db.Integer, default=5, comment="Minutes")

    # ── Ordering / lifecycle
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default=TestCaseStatus.DRAFT.value)
    version = db.Column(db.Integer, nullable=False, default=1, comment="Monotonic edit counter")

    # ── Review
    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    review_comment = db.Column(db.Text, nullable=True)

    @property
    def tag_list(self) -> list[str]:
        if not self.tags or not self.tags.strip():
            return []
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    @tag_list.setter
    def tag_list(self, values):
        cleaned = [str(v).strip() for v in (values or []) if str(v).strip()]
        self.tags = ",".join(cleaned) if cleaned else None

    def has_tag(self, tag: str) -> bool:
        return tag in self.tag_list

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "case_id": self.case_id,
            "project_id": self.project_id,
            "module_id": self.module_id,
            "requirement_id": self.requirement_id,
            "title": self.title,
            "description": self.description,
            "preconditions": self.preconditions,
            "test_data": self.test_data,
            "expected_result": self.expected_result,
            "postconditions": self.postconditions,
            "type": self.type,
            "priority": self.priority,
            "automated": self.automated,
            "automation_script": self.automation_script,
            "tags": self.tag_list,
            "estimated_time": self.estimated_time,
            "sort_order": self.sort_order,
            "status": self.status,
            "version": self.version,
            "enabled": self.enabled,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "review_comment": self.review_comment,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_steps:
            steps = (
                TestStep.query_active()
                .filter_by(test_case_id=self.id)
                .order_by(TestStep.step_order)
                .all()
            )
            d["steps"] = [s.to_dict() for s in steps]
        return d

    def __repr__(self):
        return f"<TestCase {self.case_id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# TEST STEP
# ═════════════════════════════════════════════════════════════════════════════

class TestStep(SoftDeleteMixin, db.Model):
    """
    Ordered step within a test case.

    ``step_order`` is 1-based and contiguous among the enabled steps of a case;
    StepSequencer is the only writer of that column.
    """

    __test__ = False
    __tablename__ = "test_steps"
    __table_args__ = (
        db.Index("ix_test_steps_case_order", "test_case_id", "step_order"),
    )

    id = db.Column(db.Integer, primary_key=True)
    test_case_id = db.Column(
        db.Integer, db.ForeignKey("test_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order = db.Column(db.Integer, nullable=False, comment="1-based, contiguous per case")
    description = db.Column(db.Text, nullable=False, comment="Action to perform")
    test_data = db.Column(db.Text, default="")
    expected_result = db.Column(db.Text, default="")
    remark = db.Column(db.Text, default="")
    is_key_step = db.Column(db.Boolean, nullable=False, default=False)
    automated = db.Column(db.Boolean, nullable=False, default=False)
    automation_code = db.Column(db.Text, nullable=True)
    estimated_time = db.Column(db.Integer, default=30, comment="Seconds")

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    def to_dict(self):
        return {
            "id": self.id,
            "test_case_id": self.test_case_id,
            "step_order": self.step_order,
            "description": self.description,
            "test_data": self.test_data,
            "expected_result": self.expected_result,
            "remark": self.remark,
            "is_key_step": self.is_key_step,
            "automated": self.automated,
            "automation_code": self.automation_code,
            "estimated_time": self.estimated_time,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<TestStep {self.id}: case#{self.test_case_id} step#{self.step_order}>"
