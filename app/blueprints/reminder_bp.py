"""
Reminder Blueprint.

Routes:
  GET    /reminders                    – list (?status, ?request_id, ?item_id)
  GET    /reminders/<rid>              – reminder with its delivery attempts
  POST   /reminders/<rid>/cancel       – cancel one pending reminder
  POST   /reminders/<rid>/retry        – re-arm a failed reminder (new row, retry_count 0)
  POST   /reminders/<rid>/dispatch     – attempt delivery now (if due)
  POST   /reminders/dispatch           – sweep the organization's due reminders
"""

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import organization_id
from app.core.exceptions import NotFoundError
from app.models import db
from app.models.reminder import Reminder
from app.services import reminder_service
from app.services.authorization import authorize

reminder_bp = Blueprint("reminder_bp", __name__, url_prefix="/api/v1")


@reminder_bp.route("/reminders", methods=["GET"])
def list_reminders():
    rows = reminder_service.list_reminders(
        organization_id(), current_actor(),
        status=request.args.get("status"),
        request_id=request.args.get("request_id", type=int),
        item_id=request.args.get("item_id", type=int),
    )
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})


@reminder_bp.route("/reminders/<int:rid>", methods=["GET"])
def get_reminder(rid):
    return jsonify(reminder_service.get_reminder(rid, current_actor()))


@reminder_bp.route("/reminders/<int:rid>/cancel", methods=["POST"])
def cancel_reminder(rid):
    return jsonify(reminder_service.cancel_reminder(rid, current_actor()))


@reminder_bp.route("/reminders/<int:rid>/retry", methods=["POST"])
def retry_reminder(rid):
    return jsonify(reminder_service.retry_failed_reminder(rid, current_actor())), 201


@reminder_bp.route("/reminders/<int:rid>/dispatch", methods=["POST"])
def dispatch_reminder(rid):
    reminder = db.session.get(Reminder, rid)
    if reminder is None:
        raise NotFoundError(resource="Reminder", resource_id=rid)
    authorize(current_actor(), "reminder_manage", reminder.organization_id)
    return jsonify(reminder_service.dispatch(rid).to_dict())


@reminder_bp.route("/reminders/dispatch", methods=["POST"])
def dispatch_due():
    org_id = organization_id()
    authorize(current_actor(), "reminder_manage", org_id)
    return jsonify(reminder_service.dispatch_due_reminders(org_id))
