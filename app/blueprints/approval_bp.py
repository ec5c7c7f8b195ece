"""
Approval (maker-checker) Blueprint.

Routes:
  GET    /approvals/pending                           – open approvals (?approval_type)
  POST   /approvals/submit                            – { approval_type, related_id }
  POST   /approvals/<aid>/approve                     – approve
  POST   /approvals/<aid>/reject                      – { remarks }
  POST   /approvals/<aid>/re-request                  – { remarks }
  GET    /approvals/history/<approval_type>/<eid>     – every approval for an entity
"""

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import json_body, organization_id
from app.core.exceptions import ValidationError
from app.models.approval import APPROVAL_TYPES
from app.services import approval_service
from app.services.authorization import authorize

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")


def _approval_type(value):
    if value not in APPROVAL_TYPES:
        raise ValidationError(f"approval_type must be one of {sorted(APPROVAL_TYPES)}")
    return value


@approval_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    approval_type = request.args.get("approval_type")
    if approval_type:
        _approval_type(approval_type)
    items = approval_service.list_pending(organization_id(), current_actor(), approval_type)
    return jsonify({"items": items, "total": len(items)})


@approval_bp.route("/approvals/submit", methods=["POST"])
def submit_for_approval():
    data = json_body()
    related_id = data.get("related_id")
    if not isinstance(related_id, int):
        raise ValidationError("related_id must be an integer")
    approval = approval_service.submit_for_approval(
        organization_id(), _approval_type(data.get("approval_type")), related_id, current_actor(),
    )
    return jsonify(approval), 201


@approval_bp.route("/approvals/<int:aid>/approve", methods=["POST"])
def approve(aid):
    return jsonify(approval_service.approve(aid, current_actor()))


@approval_bp.route("/approvals/<int:aid>/reject", methods=["POST"])
def reject(aid):
    return jsonify(approval_service.reject(aid, current_actor(), json_body().get("remarks")))


@approval_bp.route("/approvals/<int:aid>/re-request", methods=["POST"])
def re_request(aid):
    return jsonify(approval_service.re_request(aid, current_actor(), json_body().get("remarks")))


@approval_bp.route("/approvals/history/<approval_type>/<int:eid>", methods=["GET"])
def approval_history(approval_type, eid):
    org_id = organization_id()
    authorize(current_actor(), "approval_view", org_id)
    return jsonify(approval_service.history_for(org_id, _approval_type(approval_type), eid))
