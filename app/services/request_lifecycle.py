"""
Data Request Lifecycle Service.

A request's status is derived from its checklist items and recomputed every
time one of them changes:

    draft        not yet sent
    sent         sent, no item has progressed yet
    in_progress  sent, some item moved past not_received or was re-requested
    completed    every mandatory item approved (all items when none is mandatory)
                 and, when ``request`` is in APPROVAL_REQUIRED_FOR, a sign-off approved
    cancelled    explicit terminal action

Only two transitions are caller-driven: ``send_request`` (draft → sent) and
``cancel_request``. Completion is never set directly.

Overdue is not a status: ``overdue_requests`` lists open requests whose due
date has passed, and the request overdue sweep notifies on them.
"""

import logging
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import func, select

from app.core import events
from app.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    RequestClosedError,
    ValidationError,
)
from app.models import db
from app.models.auth import User
from app.models.request import (
    CLOSED_REQUEST_STATUSES,
    REQUEST_CHANNEL_FLAGS,
    REQUEST_STATUSES,
    DataRequest,
    RequestChecklistItem,
)
from app.models.template import DOCUMENT_TYPES, PRIORITIES, Template
from app.services import approval_service
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.utils.helpers import atomic, parse_date, utcnow

logger = logging.getLogger(__name__)

OPEN_REQUEST_STATUSES = ("sent", "in_progress")


# ── Request number ───────────────────────────────────────────────────────────

def generate_request_number(now=None) -> str:
    """``REQ-YYYYMMDD-XXXXXX`` with a random hex suffix, checked for collisions."""
    now = now or utcnow()
    for _ in range(5):
        candidate = f"REQ-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"
        exists = db.session.scalar(select(DataRequest.id).where(DataRequest.request_number == candidate))
        if exists is None:
            return candidate
    raise RuntimeError("Could not allocate a unique request number")


# ── Status derivation ────────────────────────────────────────────────────────

def derive_status(request: DataRequest, items) -> str:
    """Pure status rule over a request and its items."""
    if request.status in CLOSED_REQUEST_STATUSES:
        return request.status
    if request.status == "draft":
        return "draft"

    items = list(items)
    gate = [i for i in items if i.is_mandatory] or items
    if gate and all(i.status == "approved" for i in gate):
        return "completed"
    if any(i.status != "not_received" or (i.request_cycle or 0) > 0 for i in items):
        return "in_progress"
    return "sent"


def recompute_status(request: DataRequest, actor=None, now=None) -> str:
    """Re-derive and persist the request status; emits ``request_status_changed`` on change.

    With request sign-off gated, a request whose items would complete it stays
    ``in_progress`` and gets a pending sign-off approval until one is approved.
    """
    previous = request.status
    derived = derive_status(request, request.items)
    if derived == "completed" and not _signed_off(request):
        approval_service.open_approval(request.organization_id, "request", request.id,
                                       actor.user_id if actor is not None else None, now)
        derived = "in_progress"
    if derived == previous:
        return previous

    request.status = derived
    if derived == "completed":
        request.completed_at = now or utcnow()
    db.session.flush()
    _emit_status_change(request, previous, actor)
    return derived


def _signed_off(request) -> bool:
    if not approval_service.requires_approval("request"):
        return True
    return approval_service.has_approved("request", request.id, request.organization_id)


def _emit_status_change(request, previous, actor):
    record_audit(
        "request", request.id, f"request.status.{request.status}",
        performed_by=actor.user_id if actor is not None else None,
        old_values={"status": previous},
        new_values={"status": request.status},
        organization_id=request.organization_id,
    )
    logger.info(
        "Request %s: %s → %s", request.request_number, previous, request.status,
        extra={"organization_id": request.organization_id, "entity_type": "request", "entity_id": request.id},
    )
    events.request_status_changed.send(
        __name__, request=request, old_status=previous, new_status=request.status, actor=actor,
    )


# ── Lookups ──────────────────────────────────────────────────────────────────

def _get_request(request_id) -> DataRequest:
    request = db.session.get(DataRequest, request_id)
    if request is None:
        raise NotFoundError(resource="DataRequest", resource_id=request_id)
    return request


def get_request(request_id: int, actor) -> dict:
    request = _get_request(request_id)
    authorize(actor, "request_view", request.organization_id, owner_id=request.client_id)
    data = request.to_dict()
    data["items"] = [i.to_dict(include_internal=actor.is_staff) for i in request.items]
    return data


def list_requests(organization_id: int, actor, *, status=None, client_id=None):
    """Return a query of the organization's requests (clients only see their own)."""
    authorize(actor, "request_view", organization_id,
              owner_id=actor.user_id if not actor.is_staff else None)
    q = DataRequest.query_for_org(organization_id)
    if not actor.is_staff:
        q = q.filter_by(client_id=actor.user_id)
    elif client_id:
        q = q.filter_by(client_id=client_id)
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"allowed": sorted(REQUEST_STATUSES)})
        q = q.filter_by(status=status)
    return q.order_by(DataRequest.created_at.desc(), DataRequest.id.desc())


# ── Creation ─────────────────────────────────────────────────────────────────

def _validate_item_payload(data: dict) -> dict:
    particular = (data.get("particular") or "").strip()
    if not particular:
        raise ValidationError("Checklist item 'particular' is required")
    document_type = data.get("document_type") or "other"
    if document_type not in DOCUMENT_TYPES:
        raise ValidationError(f"Invalid document_type '{document_type}'",
                              details={"allowed": sorted(DOCUMENT_TYPES)})
    return {
        "particular": particular,
        "instructions": (data.get("instructions") or "").strip() or None,
        "document_type": document_type,
        "is_mandatory": bool(data.get("is_mandatory", True)),
        "allow_multiple_uploads": bool(data.get("allow_multiple_uploads", False)),
    }


def _channel_flags(channels) -> dict:
    if channels is None:
        return {}
    unknown = set(channels) - set(REQUEST_CHANNEL_FLAGS.values())
    if unknown:
        raise ValidationError(f"Unknown channel(s): {', '.join(sorted(unknown))}",
                              details={"allowed": sorted(REQUEST_CHANNEL_FLAGS.values())})
    return {flag: channel in channels for flag, channel in REQUEST_CHANNEL_FLAGS.items()}


def build_request(organization_id, *, client_id, title, created_by=None, description=None,
                  due_date=None, priority="medium", channels=None, template=None,
                  task_id=None, occurrence_id=None, items=None, now=None) -> DataRequest:
    """Create a draft request with its items (flush only)."""
    client = db.session.get(User, client_id) if client_id else None
    if client is None or client.organization_id != organization_id or client.role != "client":
        raise ValidationError("client_id must reference a client of this organization",
                              details={"client_id": client_id})
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'", details={"allowed": sorted(PRIORITIES)})

    request = DataRequest(
        organization_id=organization_id,
        client_id=client_id,
        request_number=generate_request_number(now),
        title=title,
        description=description,
        due_date=parse_date(due_date),
        priority=priority,
        task_id=task_id,
        occurrence_id=occurrence_id,
        created_by=created_by,
        status="draft",
        **_channel_flags(channels),
    )
    if template is not None:
        request.template_id = template.id
        request.template_version = template.version
        request.pre_due_reminders = list(template.pre_due_reminders or []) or None
        if not request.due_date:
            sla = template.default_sla_days or current_app.config.get("DEFAULT_SLA_DAYS", 7)
            request.due_date = (now or utcnow()).date() + timedelta(days=sla)
    db.session.add(request)
    db.session.flush()

    if template is not None:
        _copy_template_items(request, template)
    for idx, payload in enumerate(items or [], start=len(request.items)):
        fields = _validate_item_payload(payload)
        request.items.append(RequestChecklistItem(
            organization_id=organization_id, sort_order=payload.get("sort_order", idx), **fields,
        ))
    db.session.flush()
    return request


def _copy_template_items(request, template):
    """Copy template checklist items, remapping dependencies onto the new rows."""
    mapping = {}
    for t_item in template.checklist_items:
        item = RequestChecklistItem(
            organization_id=request.organization_id,
            template_item_id=t_item.id,
            sort_order=t_item.sort_order,
            particular=t_item.particular,
            document_type=t_item.document_type,
            is_mandatory=t_item.is_mandatory,
            allow_multiple_uploads=t_item.allow_multiple_uploads,
            instructions=t_item.instructions,
        )
        request.items.append(item)
        mapping[t_item.id] = item
    db.session.flush()
    for t_item in template.checklist_items:
        if t_item.dependency_item_id in mapping:
            mapping[t_item.id].dependency_item_id = mapping[t_item.dependency_item_id].id


def create_request(organization_id: int, actor, *, client_id, title, description=None,
                   due_date=None, priority="medium", channels=None, template_id=None,
                   items=None) -> dict:
    """
    Create a draft data request, optionally from a template.

    A template contributes its checklist items, its version, and (when no
    due date is given) a due date of today + default SLA days.
    """
    with atomic("request"):
        authorize(actor, "request_create", organization_id)
        template = None
        if template_id is not None:
            template = db.session.get(Template, template_id)
            if template is None or template.organization_id != organization_id:
                raise NotFoundError(resource="Template", resource_id=template_id)
            if template.status != "active":
                raise ValidationError(f"Template {template_id} is {template.status}")
        request = build_request(
            organization_id, client_id=client_id, title=title, created_by=actor.user_id,
            description=description, due_date=due_date, priority=priority, channels=channels,
            template=template, items=items,
        )
        record_audit(
            "request", request.id, "request.create", performed_by=actor.user_id,
            new_values={"request_number": request.request_number, "template_id": template_id,
                        "items": len(request.items)},
            organization_id=organization_id,
        )
    return request.to_dict(include_items=True)


# ── Draft edits ──────────────────────────────────────────────────────────────

def _require_draft(request, action):
    if request.status in CLOSED_REQUEST_STATUSES:
        raise RequestClosedError(request.id, request.status)
    if request.status != "draft":
        raise InvalidTransitionError("request", request.id, request.status, action,
                                     "only draft requests can be edited")


def add_item(request_id: int, actor, data: dict) -> dict:
    with atomic("request", request_id):
        request = _get_request(request_id)
        authorize(actor, "request_edit", request.organization_id)
        _require_draft(request, "add_item")
        fields = _validate_item_payload(data)
        dependency_id = data.get("dependency_item_id")
        if dependency_id is not None and dependency_id not in {i.id for i in request.items}:
            raise ValidationError("dependency_item_id must reference an item of the same request")
        item = RequestChecklistItem(
            organization_id=request.organization_id,
            sort_order=data.get("sort_order", len(request.items)),
            dependency_item_id=dependency_id,
            **fields,
        )
        request.items.append(item)
        request.last_activity_at = utcnow()
        db.session.flush()
        record_audit("request", request.id, "request.add_item", performed_by=actor.user_id,
                     new_values={"item_id": item.id, "particular": item.particular},
                     organization_id=request.organization_id)
    return item.to_dict()


def update_channels(request_id: int, actor, channels) -> dict:
    with atomic("request", request_id):
        request = _get_request(request_id)
        authorize(actor, "request_edit", request.organization_id)
        _require_draft(request, "update_channels")
        old = request.enabled_channels
        for flag, value in _channel_flags(channels).items():
            setattr(request, flag, value)
        db.session.flush()
        record_audit("request", request.id, "request.update_channels", performed_by=actor.user_id,
                     old_values={"channels": old}, new_values={"channels": request.enabled_channels},
                     organization_id=request.organization_id)
    return request.to_dict()


# ── Caller-driven transitions ────────────────────────────────────────────────

def apply_send(request: DataRequest, actor, now=None) -> DataRequest:
    """draft → sent, then schedule the first reminders (flush only)."""
    from app.services import reminder_service

    now = now or utcnow()
    if request.status in CLOSED_REQUEST_STATUSES:
        raise RequestClosedError(request.id, request.status)
    if request.status != "draft":
        raise InvalidTransitionError("request", request.id, request.status, "send",
                                     "only draft requests can be sent")
    if not request.enabled_channels:
        raise InvalidTransitionError("request", request.id, request.status, "send",
                                     "at least one communication channel must be enabled")
    if not request.items:
        raise InvalidTransitionError("request", request.id, request.status, "send",
                                     "the request has no checklist items")

    request.status = "sent"
    request.sent_at = now
    request.last_activity_at = now
    db.session.flush()

    scheduled = 0
    for item in request.items:
        if item.is_mandatory and item.status != "approved":
            scheduled += len(reminder_service.schedule_item_reminders(request, item, at=now))
    scheduled += len(reminder_service.schedule_pre_due_reminders(request, now=now))
    logger.info("Scheduled %d reminders for %s", scheduled, request.request_number,
                extra={"organization_id": request.organization_id, "entity_type": "request",
                       "entity_id": request.id})

    _emit_status_change(request, "draft", actor)
    return request


def send_request(request_id: int, actor, now=None) -> dict:
    with atomic("request", request_id):
        request = _get_request(request_id)
        authorize(actor, "request_send", request.organization_id)
        apply_send(request, actor, now)
    return request.to_dict()


def cancel_request(request_id: int, actor, reason: str | None = None, now=None) -> dict:
    """Terminal cancel; reminders and pending approvals are closed by the receivers."""
    now = now or utcnow()
    with atomic("request", request_id):
        request = _get_request(request_id)
        authorize(actor, "request_cancel", request.organization_id)
        if request.status in CLOSED_REQUEST_STATUSES:
            raise RequestClosedError(request.id, request.status)
        previous = request.status
        request.status = "cancelled"
        request.cancelled_at = now
        request.cancel_reason = (reason or "").strip() or None
        request.last_activity_at = now
        db.session.flush()
        _emit_status_change(request, previous, actor)
    return request.to_dict()


# ── Overdue & summary ────────────────────────────────────────────────────────

def overdue_requests(organization_id: int, today) -> list[DataRequest]:
    """Open (sent / in_progress) requests whose due date is before ``today``."""
    return list(db.session.scalars(
        select(DataRequest)
        .where(
            DataRequest.organization_id == organization_id,
            DataRequest.status.in_(OPEN_REQUEST_STATUSES),
            DataRequest.due_date.is_not(None),
            DataRequest.due_date < today,
        )
        .order_by(DataRequest.due_date, DataRequest.id)
    ))


def request_summary(organization_id: int, actor, today=None) -> dict:
    authorize(actor, "request_view", organization_id)
    today = today or utcnow().date()
    counts = dict(db.session.execute(
        select(DataRequest.status, func.count(DataRequest.id))
        .where(DataRequest.organization_id == organization_id)
        .group_by(DataRequest.status)
    ).all())
    return {
        "total": sum(counts.values()),
        "by_status": {s: counts.get(s, 0) for s in sorted(REQUEST_STATUSES)},
        "overdue": len(overdue_requests(organization_id, today)),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.item_status_changed.connect
def _on_item_status_changed(sender, request, actor=None, **_):
    recompute_status(request, actor)


@events.approval_decided.connect
def _on_approval_decided(sender, approval, action, reviewer, **_):
    if approval.approval_type != "request":
        return
    request = db.session.get(DataRequest, approval.related_id)
    if request is None:
        logger.warning("Approval %s refers to missing request %s", approval.id, approval.related_id)
        return
    if request.organization_id != approval.organization_id:
        raise NotFoundError(resource="DataRequest", resource_id=request.id,
                            organization_id=approval.organization_id)
    if action == "approved":
        recompute_status(request, reviewer)
    else:
        logger.info(
            "Sign-off of %s sent back: %s", request.request_number, action,
            extra={"organization_id": request.organization_id, "entity_type": "request", "entity_id": request.id},
        )
