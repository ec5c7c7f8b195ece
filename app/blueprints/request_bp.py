"""
Data Request & Checklist Blueprint.

Routes:
  GET    /requests                          – list (clients see their own)
  POST   /requests                          – create draft (optionally from template)
  GET    /requests/summary                  – counts by status + overdue
  GET    /requests/overdue                  – open requests past due date
  GET    /requests/<rid>                    – request with checklist items
  POST   /requests/<rid>/items              – add item (draft only)
  PUT    /requests/<rid>/channels           – { channels: [email, sms, whatsapp] } (draft only)
  POST   /requests/<rid>/send               – draft → sent
  POST   /requests/<rid>/cancel             – → cancelled, { reason? }
  POST   /items/<iid>/transition            – { action, comments?, internal_comments? }
  GET    /items/<iid>/actions               – actions valid from the item's status
  GET    /clients                           – organization clients
  POST   /clients                           – idempotent create by email
"""

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import json_body, organization_id, paginate_query, paginated
from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.request import RequestChecklistItem
from app.services import checklist_lifecycle, client_service, request_lifecycle
from app.services.authorization import authorize
from app.utils.helpers import parse_date, today_utc

request_bp = Blueprint("request_bp", __name__, url_prefix="/api/v1")


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@request_bp.route("/requests", methods=["GET"])
def list_requests():
    q = request_lifecycle.list_requests(
        organization_id(), current_actor(),
        status=request.args.get("status"), client_id=request.args.get("client_id", type=int),
    )
    items, total = paginate_query(q)
    return jsonify(paginated(items, total))


@request_bp.route("/requests", methods=["POST"])
def create_request():
    """Body: { client_id, title, description?, due_date?, priority?, channels?, template_id?, items? }"""
    data = json_body()
    if not data.get("client_id"):
        raise ValidationError("client_id is required")
    created = request_lifecycle.create_request(
        organization_id(), current_actor(),
        client_id=data["client_id"],
        title=data.get("title"),
        description=data.get("description"),
        due_date=parse_date(data.get("due_date")),
        priority=data.get("priority", "medium"),
        channels=data.get("channels"),
        template_id=data.get("template_id"),
        items=data.get("items"),
    )
    return jsonify(created), 201


@request_bp.route("/requests/summary", methods=["GET"])
def request_summary():
    return jsonify(request_lifecycle.request_summary(organization_id(), current_actor()))


@request_bp.route("/requests/overdue", methods=["GET"])
def overdue_requests():
    org_id = organization_id()
    authorize(current_actor(), "request_view", org_id)
    today = parse_date(request.args.get("as_of")) or today_utc()
    rows = request_lifecycle.overdue_requests(org_id, today)
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows), "as_of": today.isoformat()})


@request_bp.route("/requests/<int:rid>", methods=["GET"])
def get_request(rid):
    return jsonify(request_lifecycle.get_request(rid, current_actor()))


@request_bp.route("/requests/<int:rid>/items", methods=["POST"])
def add_item(rid):
    return jsonify(request_lifecycle.add_item(rid, current_actor(), json_body())), 201


@request_bp.route("/requests/<int:rid>/channels", methods=["PUT"])
def update_channels(rid):
    channels = json_body().get("channels")
    if not isinstance(channels, list):
        raise ValidationError("channels must be a list")
    return jsonify(request_lifecycle.update_channels(rid, current_actor(), channels))


@request_bp.route("/requests/<int:rid>/send", methods=["POST"])
def send_request(rid):
    return jsonify(request_lifecycle.send_request(rid, current_actor()))


@request_bp.route("/requests/<int:rid>/cancel", methods=["POST"])
def cancel_request(rid):
    return jsonify(request_lifecycle.cancel_request(rid, current_actor(), json_body().get("reason")))


# ═════════════════════════════════════════════════════════════════════════════
# CHECKLIST ITEMS
# ═════════════════════════════════════════════════════════════════════════════

@request_bp.route("/items/<int:iid>/transition", methods=["POST"])
def transition_item(iid):
    data = json_body()
    action = data.get("action")
    if not action:
        raise ValidationError("action is required")
    return jsonify(checklist_lifecycle.transition_item(
        iid, action, current_actor(),
        comments=data.get("comments"),
        internal_comments=data.get("internal_comments"),
    ))


@request_bp.route("/items/<int:iid>/actions", methods=["GET"])
def item_actions(iid):
    item = db.session.get(RequestChecklistItem, iid)
    if item is None:
        raise NotFoundError(resource="RequestChecklistItem", resource_id=iid)
    authorize(current_actor(), "request_view", item.organization_id, owner_id=item.request.client_id)
    return jsonify({"item_id": item.id, "status": item.status,
                    "actions": checklist_lifecycle.get_available_actions(item)})


# ═════════════════════════════════════════════════════════════════════════════
# CLIENTS
# ═════════════════════════════════════════════════════════════════════════════

@request_bp.route("/clients", methods=["GET"])
def list_clients():
    clients = client_service.list_clients(organization_id(), current_actor())
    return jsonify({"items": [c.to_dict() for c in clients], "total": len(clients)})


@request_bp.route("/clients", methods=["POST"])
def create_client():
    data = json_body()
    client, created = client_service.create_client(
        organization_id(), current_actor(),
        email=data.get("email"), full_name=data.get("full_name"), phone=data.get("phone"),
    )
    return jsonify({**client, "created": created}), 201 if created else 200
