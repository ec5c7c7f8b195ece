"""
Collection Workflow Platform
Notification & Scheduling Blueprint.

Provides:
    - In-app notifications of the calling user (list, read, read-all)
    - Scheduled sweep management (list, trigger, toggle)
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import json_body
from app.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from app.models import db
from app.models.notification import Notification
from app.services.authorization import authorize
from app.services.notification import NotificationService
from app.services.scheduler_service import SchedulerService
from app.utils.helpers import db_commit_or_error

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════════════════

@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Notifications of the calling user, newest first (?unread_only, ?limit, ?offset)."""
    actor = current_actor()
    items, total = NotificationService.list_for_user(
        actor.user_id,
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=min(request.args.get("limit", 50, type=int), 200),
        offset=max(request.args.get("offset", 0, type=int), 0),
    )
    unread = Notification.query.filter_by(user_id=actor.user_id, is_read=False).count()
    return jsonify({"items": [n.to_dict() for n in items], "total": total, "unread_count": unread})


@notification_bp.route("/notifications/<int:nid>/read", methods=["PATCH", "POST"])
def mark_read(nid):
    actor = current_actor()
    notif = db.session.get(Notification, nid)
    if notif is None:
        raise NotFoundError(resource="Notification", resource_id=nid)
    if notif.user_id != actor.user_id:
        raise PermissionDenied(actor.user_id, "notification_read", "not the recipient")
    notif.mark_read()
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    actor = current_actor()
    unread = Notification.query.filter_by(user_id=actor.user_id, is_read=False).all()
    for notif in unread:
        notif.mark_read()
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"marked_read": len(unread)})


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULED JOBS
# ═══════════════════════════════════════════════════════════════════════════

def _authorize_jobs():
    actor = current_actor()
    authorize(actor, "job_run", actor.organization_id)
    return actor


@notification_bp.route("/scheduler/jobs", methods=["GET"])
def list_jobs():
    _authorize_jobs()
    return jsonify(SchedulerService.list_jobs())


@notification_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    actor = _authorize_jobs()
    logger.info("Manual run of %s by user %s", job_name, actor.user_id, extra={"job_name": job_name})
    result = SchedulerService.run_job(job_name)
    if result["status"] == "error":
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(result)


@notification_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    _authorize_jobs()
    enabled = json_body().get("enabled")
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean")
    record = SchedulerService.toggle_job(job_name, enabled)
    if record is None:
        raise NotFoundError(resource="ScheduledJob", resource_id=job_name)
    return jsonify(record)
