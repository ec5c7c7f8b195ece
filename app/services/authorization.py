"""
Role-based authorization for workflow operations.

Every state-transition entry point calls ``authorize`` before reading or
mutating anything. Organization scope is always an explicit argument; there
is no ambient "current organization".

Usage:
    from app.services.authorization import authorize

    authorize(actor, "request_send", request.organization_id)
    authorize(actor, "item_submit", item.organization_id, owner_id=request.client_id)
"""

from app.core.exceptions import PermissionDenied
from app.core.roles import Role

_STAFF_ACTIONS = {
    "template_view",
    "task_view",
    "task_transition",
    "occurrence_update",
    "request_view",
    "request_create",
    "request_edit",
    "request_send",
    "item_submit",
    "item_review",
    "approval_submit",
    "approval_view",
    "reminder_view",
    "reminder_manage",
    "verification_record",
}

_MANAGEMENT_ACTIONS = _STAFF_ACTIONS | {
    "template_manage",
    "task_manage",
    "occurrence_skip",
    "request_cancel",
    "approval_decide",
    "client_manage",
}

_ADMIN_ACTIONS = _MANAGEMENT_ACTIONS | {"job_run"}

PERMISSION_MATRIX: dict[Role, frozenset[str]] = {
    Role.SUPER_ADMIN: frozenset(_ADMIN_ACTIONS),
    Role.ADMIN: frozenset(_ADMIN_ACTIONS),
    Role.MANAGER: frozenset(_MANAGEMENT_ACTIONS),
    Role.TEAM_MEMBER: frozenset(_STAFF_ACTIONS),
    Role.CLIENT: frozenset({"request_view", "item_submit"}),
}


def has_permission(actor, action: str, organization_id: int | None, *, owner_id: int | None = None) -> bool:
    """Boolean form of ``authorize``."""
    try:
        authorize(actor, action, organization_id, owner_id=owner_id)
    except PermissionDenied:
        return False
    return True


def authorize(actor, action: str, organization_id: int | None, *, owner_id: int | None = None) -> None:
    """
    Assert that ``actor`` may perform ``action`` inside ``organization_id``.

    Args:
        actor: app.core.roles.Actor performing the operation.
        action: Key from PERMISSION_MATRIX.
        organization_id: Organization that owns the target entity.
        owner_id: Client user that owns the target request; clients may only
            act on their own requests.

    Raises:
        PermissionDenied: role lacks the action, organization mismatch, or a
            client acting on someone else's request.
    """
    if actor is None:
        raise PermissionDenied(None, action, "no authenticated actor")

    if action not in PERMISSION_MATRIX.get(actor.role, frozenset()):
        raise PermissionDenied(actor.user_id, action, f"role {actor.role.value} is not allowed")

    if actor.role != Role.SUPER_ADMIN and actor.organization_id != organization_id:
        raise PermissionDenied(actor.user_id, action, "entity belongs to another organization")

    if actor.role == Role.CLIENT and owner_id != actor.user_id:
        raise PermissionDenied(actor.user_id, action, "clients may only act on their own requests")
