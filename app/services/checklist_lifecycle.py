"""
Checklist Item Lifecycle Service.

Manages status transitions for RequestChecklistItem:
    not_received → received → under_review → approved / rejected / re_requested
    re_requested → not_received  (internal reset, runs immediately)

Two kinds of actors drive it: the client submits, a reviewer decides.
Every applied transition:
    - touches the parent request row, so two writers on the same request
      serialise on its version counter
    - writes an audit row (best effort)
    - emits ``item_status_changed``; the request lifecycle, reminder engine
      and approval workflow subscribe to it

When an item has a pending maker-checker Approval, reviewer decisions are
routed through the approval workflow instead of being applied directly.
"""

import logging

from flask import current_app

from app.core import events
from app.core.exceptions import (
    InvalidTransitionError,
    MissingRemarksError,
    NotFoundError,
    RequestClosedError,
)
from app.models import db
from app.models.request import (
    CLIENT_ITEM_ACTIONS,
    CLOSED_REQUEST_STATUSES,
    ITEM_TRANSITIONS,
    REVIEW_ITEM_ACTIONS,
    RequestChecklistItem,
)
from app.services import approval_service
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.utils.helpers import atomic, utcnow

logger = logging.getLogger(__name__)

# Reviewer action → approval decision, and back
_DECISION_BY_ACTION = {"approve": "approved", "reject": "rejected", "re_request": "re_request"}
_ACTION_BY_DECISION = {v: k for k, v in _DECISION_BY_ACTION.items()}

_REMARKS_REQUIRED = {"reject", "re_request"}
_AWAITING_SUBMISSION = {"not_received", "re_requested"}


def validate_transition(item: RequestChecklistItem, action: str) -> dict:
    """
    Check whether a transition is valid for the item's current status.

    Returns:
        {"valid": bool, "to": str | None, "reason": str | None}
    """
    rule = ITEM_TRANSITIONS.get(action)
    if rule is None:
        return {"valid": False, "to": None, "reason": f"Unknown action '{action}'"}
    if item.status not in rule["from"]:
        return {
            "valid": False,
            "to": None,
            "reason": f"'{action}' is allowed from {', '.join(rule['from'])}",
        }
    return {"valid": True, "to": rule["to"], "reason": None}


def get_available_actions(item: RequestChecklistItem) -> list[str]:
    """Public actions whose from-states include the item's current status."""
    return [
        action for action, rule in ITEM_TRANSITIONS.items()
        if action != "reset" and item.status in rule["from"]
    ]


def _get_item(item_id) -> RequestChecklistItem:
    item = db.session.get(RequestChecklistItem, item_id)
    if item is None:
        raise NotFoundError(resource="RequestChecklistItem", resource_id=item_id)
    return item


# ═════════════════════════════════════════════════════════════════════════════
# Public entry point
# ═════════════════════════════════════════════════════════════════════════════


def transition_item(
    item_id: int,
    action: str,
    actor,
    *,
    comments: str | None = None,
    internal_comments: str | None = None,
) -> dict:
    """
    Apply one client or reviewer action to a checklist item and commit.

    Args:
        item_id: RequestChecklistItem id.
        action: submit | start_review | approve | reject | re_request.
        actor: Actor performing the action.
        comments: Client-facing comment; required for reject / re_request.
        internal_comments: Staff-only note.

    Returns:
        The item's dict after the transition and all its follow-ups.

    Raises:
        PermissionDenied, InvalidTransitionError, RequestClosedError,
        MissingRemarksError, AlreadyReviewedError, ConcurrentModificationError.
    """
    if action not in CLIENT_ITEM_ACTIONS | REVIEW_ITEM_ACTIONS:
        raise InvalidTransitionError("request_item", item_id, "?", action, "unknown or internal action")

    with atomic("request_item", item_id):
        item = _get_item(item_id)
        request = item.request
        permission = "item_submit" if action in CLIENT_ITEM_ACTIONS else "item_review"
        authorize(actor, permission, item.organization_id, owner_id=request.client_id)

        pending = None
        if action in _DECISION_BY_ACTION:
            pending = approval_service.pending_for("request_item", item.id, item.organization_id)

        if pending is not None:
            # Routed through maker-checker; the approval_decided receiver
            # below applies the item transition in this same transaction.
            _check_open(item)
            authorize(actor, "approval_decide", item.organization_id)
            approval_service.apply_decision(
                pending, _DECISION_BY_ACTION[action], actor, remarks=comments,
            )
            if internal_comments:
                item.internal_comments = internal_comments
        else:
            apply_item_transition(
                item, action, actor, comments=comments, internal_comments=internal_comments,
            )

    logger.info(
        "Checklist item %s: %s", action, item.status,
        extra={"organization_id": item.organization_id, "entity_type": "request_item", "entity_id": item.id},
    )
    return item.to_dict(include_internal=actor.is_staff)


# ═════════════════════════════════════════════════════════════════════════════
# Internal transition (flush only; caller owns the transaction)
# ═════════════════════════════════════════════════════════════════════════════


def _check_open(item):
    request = item.request
    if request.status in CLOSED_REQUEST_STATUSES:
        raise RequestClosedError(request.id, request.status)
    if request.status == "draft":
        raise InvalidTransitionError("request_item", item.id, item.status, "?",
                                     "the request has not been sent yet")


def apply_item_transition(
    item: RequestChecklistItem,
    action: str,
    actor,
    *,
    comments: str | None = None,
    internal_comments: str | None = None,
    now=None,
) -> RequestChecklistItem:
    """Validate and apply one transition, then run its follow-ups."""
    now = now or utcnow()
    request = item.request
    _check_open(item)

    validation = validate_transition(item, action)
    if not validation["valid"]:
        raise InvalidTransitionError("request_item", item.id, item.status, action, validation["reason"])

    if action == "submit" and item.dependency_item_id:
        dependency = db.session.get(RequestChecklistItem, item.dependency_item_id)
        if dependency is not None and dependency.status in _AWAITING_SUBMISSION:
            raise InvalidTransitionError(
                "request_item", item.id, item.status, action,
                f"depends on item {dependency.id} which has not been received",
            )

    if action in _REMARKS_REQUIRED and not (comments or "").strip():
        raise MissingRemarksError(f"Remarks are required to {action.replace('_', '-')} an item")

    if action in ("approve", "reject") and actor is None:
        raise InvalidTransitionError("request_item", item.id, item.status, action, "a reviewer is required")

    previous = item.status
    old_values = {"status": previous, "submitted_at": item.submitted_at, "request_cycle": item.request_cycle}
    item.status = validation["to"]

    if action == "submit":
        item.submitted_at = now
    elif action in ("approve", "reject"):
        item.reviewed_by = actor.user_id
        item.reviewed_at = now
    elif action == "re_request":
        item.submitted_at = None
        item.request_cycle = (item.request_cycle or 0) + 1
        if actor is not None:
            item.reviewed_by = actor.user_id
            item.reviewed_at = now

    if comments:
        item.client_comments = comments
    if internal_comments:
        item.internal_comments = internal_comments

    request.last_activity_at = now
    db.session.flush()

    record_audit(
        "request_item", item.id, f"request_item.{action}",
        performed_by=actor.user_id if actor else None,
        old_values=old_values,
        new_values={"status": item.status, "submitted_at": item.submitted_at, "request_cycle": item.request_cycle},
        organization_id=item.organization_id,
    )

    events.item_status_changed.send(
        __name__, item=item, request=request, old_status=previous,
        new_status=item.status, action=action, actor=actor,
    )

    # ── Follow-ups ──────────────────────────────────────────────────────
    if action == "re_request":
        apply_item_transition(item, "reset", actor, now=now)
    elif action == "reject" and current_app.config.get("REJECT_TRIGGERS_RE_REQUEST", True):
        apply_item_transition(item, "re_request", actor, comments=comments, now=now)
    elif action == "submit":
        short_circuit_review(item, now)

    return item


def short_circuit_review(item, now):
    """Move a received item to under_review when the AI producer reported a match."""
    if not current_app.config.get("AI_AUTO_APPROVE_ON_MATCH"):
        return
    if item.status != "received":
        return
    from app.services.verification_service import latest_match_status

    if latest_match_status(item.id) == "match":
        logger.info(
            "AI match on item %s, moving to review", item.id,
            extra={"organization_id": item.organization_id, "event_type": "ai.short_circuit"},
        )
        apply_item_transition(item, "start_review", None, now=now)


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.approval_decided.connect
def _on_approval_decided(sender, approval, action, reviewer, remarks=None, **_):
    if approval.approval_type != "request_item":
        return
    item = db.session.get(RequestChecklistItem, approval.related_id)
    if item is None:
        logger.warning("Approval %s refers to missing item %s", approval.id, approval.related_id)
        return
    if item.organization_id != approval.organization_id:
        raise NotFoundError(resource="RequestChecklistItem", resource_id=item.id,
                            organization_id=approval.organization_id)
    apply_item_transition(item, _ACTION_BY_DECISION[action], reviewer, comments=remarks)
