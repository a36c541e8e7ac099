"""
Engine-wide exception hierarchy.

Every component of the asset engine raises one of the four kinds below, so the
controller layer can register a single handler per kind and get consistent
HTTP status codes everywhere:

    NotFoundError          → 404  entity missing or disabled
    ConflictError          → 409  name / identifier / order collision
    InvalidOperationError  → 422  structural violation (cycle, non-empty delete)
    InvalidStateError      → 409  illegal lifecycle transition or edit

None of them is retried by the engine: they are business-rule violations,
not transient faults.

Usage:
    from testhub.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="TestModule", resource_id=42)
    raise InvalidStateError("TestCase", 7, current="ACTIVE", target="REJECTED")
"""


class AssetError(Exception):
    """Base class for every failure the asset engine reports to callers."""

    kind = "ASSET_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self), "details": self.details}


class NotFoundError(AssetError):
    """Raised when a referenced module, case or step does not exist or is disabled.

    Args:
        resource: Human-readable entity name (e.g. "TestModule", "TestCase").
        resource_id: The key that was looked up.
        project_id: Optional scope that was enforced.
    """

    kind = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(
            msg, details={"resource": resource, "resource_id": resource_id, "project_id": project_id}
        )


class ConflictError(AssetError):
    """Raised when an operation would duplicate a unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    kind = "CONFLICT"
    status_code = 409

    def __init__(self, resource: str, field: str, value=None, reason: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = reason or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg, details={"resource": resource, "field": field, "value": value})


class InvalidOperationError(AssetError):
    """Raised when a request would break the structure of the asset tree.

    Examples: moving a module under its own descendant, deleting a module that
    still has children, inserting a step outside ``1..count+1``.
    """

    kind = "INVALID_OPERATION"
    status_code = 422

    def __init__(self, resource: str, resource_id, reason: str) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.reason = reason
        super().__init__(
            f"Invalid operation on {resource} id={resource_id}: {reason}",
            details={"resource": resource, "resource_id": resource_id},
        )


class InvalidStateError(AssetError):
    """Raised for an illegal lifecycle transition or an edit in a locked state.

    ``current`` is the stored status; ``target`` is the requested status, or
    ``None`` when the failed action was an edit rather than a transition.
    """

    kind = "INVALID_STATE"
    status_code = 409

    def __init__(
        self,
        resource: str,
        resource_id,
        *,
        current: str,
        target: str | None = None,
        action: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.current = current
        self.target = target
        self.action = action
        if target is not None:
            msg = f"{resource} id={resource_id} cannot move from {current} to {target}"
        else:
            msg = f"{resource} id={resource_id} cannot be modified in status {current}"
        if action:
            msg += f" (action={action})"
        super().__init__(
            msg,
            details={
                "resource": resource,
                "resource_id": resource_id,
                "current": current,
                "target": target,
                "action": action,
            },
        )
