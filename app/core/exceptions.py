"""
Platform-wide exception hierarchy.

Services raise these types; blueprints map them to HTTP responses once via
``app.utils.errors.register_error_handlers`` and get consistent status codes
and stable machine-readable error codes everywhere.

Every workflow error carries:
  - ``code``: stable string, safe to branch on from API clients
  - ``retryable``: whether an automated caller may retry the same request

Usage:
    from app.core.exceptions import InvalidTransitionError, NotFoundError

    raise NotFoundError(resource="DataRequest", resource_id=42)
    raise InvalidTransitionError("request_item", 7, "not_received", "approve")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist."""

    code = "ERR_NOT_FOUND"
    retryable = False

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.
    """

    code = "ERR_VALIDATION_INVALID"
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint. Maps to HTTP 409."""

    code = "ERR_CONFLICT_DUPLICATE"
    retryable = False

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


# ── Workflow taxonomy ────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for request/task lifecycle errors."""

    code = "ERR_WORKFLOW"
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(WorkflowError):
    """A state machine rule was violated. The entity was not mutated."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id, current: str, action: str,
                 reason: str | None = None) -> None:
        msg = f"Cannot '{action}' {entity_type} {entity_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "current_status": current,
            "action": action,
        })
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current
        self.action = action
        self.reason = reason


class InvalidScheduleError(WorkflowError):
    """A recurrence rule is malformed or contradictory."""

    code = "ERR_INVALID_SCHEDULE"


class RequestClosedError(WorkflowError):
    """Mutation attempted on a cancelled or completed data request."""

    code = "ERR_REQUEST_CLOSED"

    def __init__(self, request_id, status: str) -> None:
        super().__init__(
            f"Data request {request_id} is {status}; no further changes are accepted",
            details={"request_id": request_id, "status": status},
        )
        self.request_id = request_id
        self.status = status


class ConcurrentModificationError(WorkflowError):
    """An atomic update lost a race. Safe to retry."""

    code = "ERR_CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, entity_type: str, entity_id) -> None:
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently; reload and retry",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class DispatchFailure(WorkflowError):
    """A channel sender could not deliver a message. Retryable by the reminder engine."""

    code = "ERR_DISPATCH_FAILED"
    retryable = True

    def __init__(self, channel: str, message: str, *, provider_status: int | None = None) -> None:
        super().__init__(f"{channel} dispatch failed: {message}", details={
            "channel": channel,
            "provider_status": provider_status,
        })
        self.channel = channel
        self.provider_status = provider_status


class AlreadyReviewedError(WorkflowError):
    """An approval decision was attempted on an approval that already has one."""

    code = "ERR_ALREADY_REVIEWED"

    def __init__(self, approval_id, action: str | None = None) -> None:
        super().__init__(
            f"Approval {approval_id} has already been reviewed"
            + (f" (action={action})" if action else ""),
            details={"approval_id": approval_id, "action": action},
        )
        self.approval_id = approval_id


class MissingRemarksError(WorkflowError):
    """Rejecting or re-requesting requires non-empty remarks."""

    code = "ERR_MISSING_REMARKS"


class PermissionDenied(WorkflowError):
    """The actor's role does not allow the action in this organization."""

    code = "ERR_FORBIDDEN"

    def __init__(self, user_id, action: str, reason: str | None = None) -> None:
        msg = f"User {user_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"user_id": user_id, "action": action})
        self.user_id = user_id
        self.action = action
