"""
Approval Workflow Service: maker-checker gate.

A pending Approval is opened when a gated entity becomes ready for review
(which types are gated is configuration: ``APPROVAL_REQUIRED_FOR``). A
reviewer then approves, rejects or re-requests it. Decisions:

    - are applied with one conditional UPDATE ``WHERE action IS NULL``, so of
      two concurrent reviewers exactly one wins; the other gets
      AlreadyReviewedError
    - require a reviewer different from the submitter
    - require remarks unless the decision is ``approved``
    - emit ``approval_decided``; the owning state machine subscribes and
      advances its own entity inside the same transaction

An approval can only be opened for an entity of the approval's own
organization (``get_gated_entity``).

Business rules live here, not in blueprints.
"""

import logging

from flask import current_app
from sqlalchemy import select, update

from app.core import events
from app.core.exceptions import (
    AlreadyReviewedError,
    MissingRemarksError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from app.models import db
from app.models.approval import APPROVAL_TYPES, DECISION_ACTIONS, Approval
from app.models.request import DataRequest, RequestChecklistItem
from app.models.task import Task
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.utils.helpers import atomic, utcnow

logger = logging.getLogger(__name__)

# Gated entity per approval type; documents live outside this service.
GATED_MODELS = {
    "request_item": RequestChecklistItem,
    "request": DataRequest,
    "task": Task,
}


def requires_approval(approval_type: str) -> bool:
    """Whether ``approval_type`` transitions are gated by maker-checker review."""
    return approval_type in (current_app.config.get("APPROVAL_REQUIRED_FOR") or [])


def pending_for(approval_type: str, related_id: int, organization_id: int) -> Approval | None:
    return (
        Approval.query
        .filter_by(organization_id=organization_id, approval_type=approval_type, related_id=related_id)
        .filter(Approval.action.is_(None))
        .order_by(Approval.id)
        .first()
    )


def has_approved(approval_type: str, related_id: int, organization_id: int) -> bool:
    return db.session.scalar(
        select(Approval.id).where(
            Approval.organization_id == organization_id,
            Approval.approval_type == approval_type,
            Approval.related_id == related_id,
            Approval.action == "approved",
        ).limit(1)
    ) is not None


def get_gated_entity(approval_type: str, related_id: int, organization_id: int):
    """Load the entity an approval gates, scoped to ``organization_id``.

    Returns None for ``document`` approvals. Raises NotFoundError when the
    entity is missing or belongs to another organization.
    """
    model = GATED_MODELS.get(approval_type)
    if model is None:
        return None
    entity = db.session.get(model, related_id)
    if entity is None or entity.organization_id != organization_id:
        raise NotFoundError(resource=model.__name__, resource_id=related_id, organization_id=organization_id)
    return entity


def _get_approval(approval_id) -> Approval:
    approval = db.session.get(Approval, approval_id)
    if approval is None:
        raise NotFoundError(resource="Approval", resource_id=approval_id)
    return approval


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


def open_approval(organization_id, approval_type, related_id, submitted_by, now=None) -> Approval:
    """Create the pending approval for an entity, or return the one already open (flush only)."""
    if approval_type not in APPROVAL_TYPES:
        raise ValidationError(
            f"Invalid approval_type '{approval_type}'",
            details={"allowed": sorted(APPROVAL_TYPES)},
        )
    get_gated_entity(approval_type, related_id, organization_id)
    existing = pending_for(approval_type, related_id, organization_id)
    if existing is not None:
        return existing

    approval = Approval(
        organization_id=organization_id,
        approval_type=approval_type,
        related_id=related_id,
        submitted_by=submitted_by,
        submitted_at=now or utcnow(),
    )
    db.session.add(approval)
    db.session.flush()
    record_audit(
        "approval", approval.id, f"approval.submit.{approval_type}",
        performed_by=submitted_by,
        new_values={"approval_type": approval_type, "related_id": related_id},
        organization_id=organization_id,
    )
    return approval


def submit_for_approval(organization_id: int, approval_type: str, related_id: int, actor) -> dict:
    """Explicitly open a maker-checker review; idempotent while one is pending."""
    with atomic("approval", related_id):
        authorize(actor, "approval_submit", organization_id)
        approval = open_approval(organization_id, approval_type, related_id, actor.user_id)
    return approval.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════════════


def apply_decision(approval: Approval, decision: str, reviewer, remarks: str | None = None, now=None) -> Approval:
    """
    Record a decision with compare-and-swap and emit ``approval_decided`` (flush only).

    Raises:
        MissingRemarksError: rejected / re_request without remarks.
        PermissionDenied: reviewer is the submitter.
        AlreadyReviewedError: the approval already carries a decision.
    """
    if decision not in DECISION_ACTIONS:
        raise ValidationError(f"Invalid decision '{decision}'", details={"allowed": sorted(DECISION_ACTIONS)})
    remarks = (remarks or "").strip() or None
    if decision != "approved" and remarks is None:
        raise MissingRemarksError(f"Remarks are required to {decision.replace('_', '-')} an approval")
    if approval.action is not None:
        raise AlreadyReviewedError(approval.id, approval.action)
    if approval.submitted_by is not None and reviewer.user_id == approval.submitted_by:
        raise PermissionDenied(reviewer.user_id, "approval_decide",
                               "the reviewer must be a different user than the submitter")

    now = now or utcnow()
    result = db.session.execute(
        update(Approval)
        .where(Approval.id == approval.id, Approval.action.is_(None))
        .values(action=decision, reviewer_id=reviewer.user_id, reviewed_at=now, remarks=remarks)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyReviewedError(approval.id)
    db.session.refresh(approval)

    record_audit(
        "approval", approval.id, f"approval.{decision}",
        performed_by=reviewer.user_id,
        old_values={"action": None},
        new_values={"action": decision, "remarks": remarks},
        organization_id=approval.organization_id,
    )
    logger.info(
        "Approval %s: %s", approval.id, decision,
        extra={"organization_id": approval.organization_id, "entity_type": approval.approval_type,
               "entity_id": approval.related_id},
    )
    events.approval_decided.send(
        __name__, approval=approval, action=decision, reviewer=reviewer, remarks=remarks,
    )
    return approval


def _decide(approval_id, decision, reviewer, remarks=None) -> dict:
    with atomic("approval", approval_id):
        approval = _get_approval(approval_id)
        authorize(reviewer, "approval_decide", approval.organization_id)
        apply_decision(approval, decision, reviewer, remarks)
    return approval.to_dict()


def approve(approval_id: int, reviewer) -> dict:
    return _decide(approval_id, "approved", reviewer)


def reject(approval_id: int, reviewer, remarks: str) -> dict:
    if not (remarks or "").strip():
        raise MissingRemarksError("Remarks are required to reject an approval")
    return _decide(approval_id, "rejected", reviewer, remarks)


def re_request(approval_id: int, reviewer, remarks: str) -> dict:
    if not (remarks or "").strip():
        raise MissingRemarksError("Remarks are required to re-request")
    return _decide(approval_id, "re_request", reviewer, remarks)


def withdraw_pending(organization_id, approval_type, related_ids, actor, reason, now=None) -> int:
    """Close pending approvals whose entity went away (flush only). Returns the count."""
    if not related_ids or actor is None:
        return 0
    result = db.session.execute(
        update(Approval)
        .where(
            Approval.organization_id == organization_id,
            Approval.approval_type == approval_type,
            Approval.related_id.in_(list(related_ids)),
            Approval.action.is_(None),
        )
        .values(action="withdrawn", reviewer_id=actor.user_id, reviewed_at=now or utcnow(), remarks=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_pending(organization_id: int, actor, approval_type: str | None = None) -> list[dict]:
    authorize(actor, "approval_view", organization_id)
    stmt = select(Approval).where(Approval.organization_id == organization_id, Approval.action.is_(None))
    if approval_type:
        stmt = stmt.where(Approval.approval_type == approval_type)
    return [a.to_dict() for a in db.session.scalars(stmt.order_by(Approval.submitted_at, Approval.id))]


def history_for(organization_id: int, approval_type: str, related_id: int) -> list[dict]:
    rows = (
        Approval.query
        .filter_by(organization_id=organization_id, approval_type=approval_type, related_id=related_id)
        .order_by(Approval.id)
        .all()
    )
    return [a.to_dict() for a in rows]


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.item_status_changed.connect
def _on_item_status_changed(sender, item, request, new_status, actor=None, **_):
    if new_status != "received" or not requires_approval("request_item"):
        return
    submitted_by = actor.user_id if actor is not None else request.client_id
    open_approval(item.organization_id, "request_item", item.id, submitted_by)


@events.request_status_changed.connect
def _on_request_status_changed(sender, request, new_status, actor=None, **_):
    if new_status == "cancelled":
        reason = request.cancel_reason or "Request cancelled"
        withdraw_pending(request.organization_id, "request_item", [i.id for i in request.items], actor, reason)
        withdraw_pending(request.organization_id, "request", [request.id], actor, reason)
