"""
Test Hub
Test Case Lifecycle

Review/approval state machine for a single test case.

    DRAFT ──submit──▶ PENDING_REVIEW ──claim──▶ UNDER_REVIEW ──reject──▶ REJECTED
    REJECTED ──resubmit──▶ PENDING_REVIEW
    PENDING_REVIEW | UNDER_REVIEW ──approve──▶ APPROVED ──activate──▶ ACTIVE
    any non-terminal ──deprecate──▶ DEPRECATED, ──archive──▶ ARCHIVED (both terminal)

The table below is the only source of truth; every predicate is derived
from it. Functions here mutate the TestCase row only and never commit:
the caller owns the transaction.

Usage:
    from testhub.services.lifecycle import apply_transition

    result = apply_transition(case, "approve", operator_id=7, comment="LGTM")
"""

import logging

from testhub.core.exceptions import InvalidOperationError, InvalidStateError
from testhub.models.base import utc_now
from testhub.models.testing import TestCaseStatus as S

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({S.DEPRECATED, S.ARCHIVED})
NON_TERMINAL_STATES = [s for s in S if s not in TERMINAL_STATES]
EDITABLE_STATES = frozenset({S.DRAFT, S.REJECTED})
EXECUTABLE_STATES = frozenset({S.APPROVED, S.ACTIVE})

# Test case transition rules
CASE_TRANSITIONS = {
    "submit": {"from": [S.DRAFT], "to": S.PENDING_REVIEW},
    "resubmit": {"from": [S.REJECTED], "to": S.PENDING_REVIEW},
    "claim": {"from": [S.PENDING_REVIEW], "to": S.UNDER_REVIEW},
    "approve": {"from": [S.PENDING_REVIEW, S.UNDER_REVIEW], "to": S.APPROVED},
    "reject": {"from": [S.UNDER_REVIEW], "to": S.REJECTED},
    "activate": {"from": [S.APPROVED], "to": S.ACTIVE},
    "deprecate": {"from": NON_TERMINAL_STATES, "to": S.DEPRECATED},
    "archive": {"from": NON_TERMINAL_STATES, "to": S.ARCHIVED},
}

# status -> {target: action}
ALLOWED_TRANSITIONS = {
    state: {
        rule["to"]: action
        for action, rule in CASE_TRANSITIONS.items()
        if state in rule["from"]
    }
    for state in S
}


def _status(value) -> S:
    return value if isinstance(value, S) else S(value)


def is_terminal(status) -> bool:
    return _status(status) in TERMINAL_STATES


def can_edit(status) -> bool:
    """Case body and steps may change only while DRAFT or REJECTED."""
    return _status(status) in EDITABLE_STATES


def can_execute(status) -> bool:
    return _status(status) in EXECUTABLE_STATES


def is_transition_allowed(current, target) -> bool:
    return _status(target) in ALLOWED_TRANSITIONS[_status(current)]


def allowed_targets(status) -> list[S]:
    return list(ALLOWED_TRANSITIONS[_status(status)])


def available_actions(status) -> list[str]:
    """Actions valid from ``status``, in table order."""
    current = _status(status)
    return [action for action, rule in CASE_TRANSITIONS.items() if current in rule["from"]]


def validate_transition(case, action: str) -> dict:
    """Validate whether an action is valid for the case's current status."""
    rule = CASE_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": case.status, "to": None,
                "reason": f"Unknown action: {action}"}

    if _status(case.status) not in rule["from"]:
        return {"valid": False, "from": case.status, "to": rule["to"].value,
                "reason": f"Cannot '{action}' from status '{case.status}'"}

    return {"valid": True, "from": case.status, "to": rule["to"].value, "reason": None}


def ensure_editable(case) -> None:
    if not can_edit(case.status):
        raise InvalidStateError("TestCase", case.id, current=case.status)


def ensure_executable(case) -> None:
    if not can_execute(case.status):
        raise InvalidStateError("TestCase", case.id, current=case.status, action="execute")


def apply_transition(
    case,
    action: str,
    *,
    operator_id: int | None = None,
    comment: str | None = None,
) -> dict:
    """
    Execute a lifecycle transition on ``case``.

    Args:
        case: TestCase row (already loaded, and locked by the caller if needed)
        action: One of the keys of CASE_TRANSITIONS
        operator_id: Who performs the action (recorded as reviewer where relevant)
        comment: Review comment for approve/reject

    Returns:
        {"test_case_id", "case_id", "previous_status", "new_status", "action"}

    Raises:
        InvalidStateError: the action is not allowed from the current status
        InvalidOperationError: the action is unknown
    """
    validation = validate_transition(case, action)
    if validation["to"] is None:
        raise InvalidOperationError("TestCase", case.id, validation["reason"])
    if not validation["valid"]:
        raise InvalidStateError(
            "TestCase", case.id, current=case.status, target=validation["to"], action=action,
        )

    previous_status = case.status
    case.status = validation["to"]
    case.updated_by = operator_id

    # Side effects
    if action in ("submit", "resubmit"):
        case.reviewed_by = None
        case.reviewed_at = None
        case.review_comment = None

    elif action == "claim":
        case.reviewed_by = operator_id
        case.reviewed_at = utc_now()

    elif action in ("approve", "reject"):
        case.reviewed_by = operator_id
        case.reviewed_at = utc_now()
        case.review_comment = comment

    elif action in ("deprecate", "archive"):
        case.soft_delete()

    logger.info(
        "Test case %s: %s -> %s (%s)", case.case_id, previous_status, case.status, action,
        extra={"test_case_id": case.id, "case_id": case.case_id, "operator_id": operator_id,
               "from_status": previous_status, "to_status": case.status},
    )

    return {
        "test_case_id": case.id,
        "case_id": case.case_id,
        "previous_status": previous_status,
        "new_status": case.status,
        "action": action,
    }


def transition_to(case, target, *, operator_id: int | None = None, comment: str | None = None) -> dict:
    """Move ``case`` to ``target`` through whichever action the table allows."""
    current = _status(case.status)
    action = ALLOWED_TRANSITIONS[current].get(_status(target))
    if action is None:
        raise InvalidStateError("TestCase", case.id, current=current.value, target=_status(target).value)
    return apply_transition(case, action, operator_id=operator_id, comment=comment)
