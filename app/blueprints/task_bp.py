"""
Task & Occurrence Blueprint.

Routes:
  GET    /tasks                               – list tasks
  POST   /tasks                               – create one-time / recurring task
  GET    /tasks/<tid>                         – task detail
  POST   /tasks/<tid>/transition              – { action: start|wait_on_client|resume|complete|cancel }
  GET    /tasks/<tid>/occurrences             – generated occurrences
  POST   /occurrences/<oid>/start             – pending → in_progress
  POST   /occurrences/<oid>/complete          – → completed
  POST   /occurrences/<oid>/skip              – operator skip, { reason }
  POST   /schedules/preview                   – next N occurrence dates for a rule
"""

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import json_body, organization_id, paginate_query, paginated
from app.core.exceptions import ValidationError
from app.services import task_service
from app.services.authorization import authorize
from app.services.schedule_calculator import ScheduleRule, due_date_for, occurrences_between
from app.utils.helpers import parse_date, today_utc

task_bp = Blueprint("task_bp", __name__, url_prefix="/api/v1")

_TASK_FIELDS = (
    "name", "description", "task_type", "schedule_frequency", "schedule_day_rule",
    "schedule_start_date", "schedule_end_date", "sla_days", "pre_due_reminders",
    "priority", "due_date", "client_id", "task_manager_id",
)


@task_bp.route("/tasks", methods=["GET"])
def list_tasks():
    q = task_service.list_tasks(
        organization_id(), current_actor(),
        status=request.args.get("status"), task_type=request.args.get("task_type"),
    )
    items, total = paginate_query(q)
    return jsonify(paginated(items, total))


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    data = json_body()
    fields = {k: data[k] for k in _TASK_FIELDS if k in data}
    return jsonify(task_service.create_task(organization_id(), current_actor(), **fields)), 201


@task_bp.route("/tasks/<int:tid>", methods=["GET"])
def get_task(tid):
    return jsonify(task_service.get_task(tid, current_actor()))


@task_bp.route("/tasks/<int:tid>/transition", methods=["POST"])
def transition_task(tid):
    action = json_body().get("action")
    if not action:
        raise ValidationError("action is required")
    return jsonify(task_service.transition_task(tid, action, current_actor()))


@task_bp.route("/tasks/<int:tid>/occurrences", methods=["GET"])
def list_occurrences(tid):
    return jsonify(task_service.list_occurrences(tid, current_actor()))


@task_bp.route("/occurrences/<int:oid>/start", methods=["POST"])
def start_occurrence(oid):
    return jsonify(task_service.start_occurrence(oid, current_actor()))


@task_bp.route("/occurrences/<int:oid>/complete", methods=["POST"])
def complete_occurrence(oid):
    return jsonify(task_service.complete_occurrence(oid, current_actor(), json_body().get("notes")))


@task_bp.route("/occurrences/<int:oid>/skip", methods=["POST"])
def skip_occurrence(oid):
    return jsonify(task_service.skip_occurrence(oid, current_actor(), json_body().get("reason")))


@task_bp.route("/schedules/preview", methods=["POST"])
def preview_schedule():
    """Body: { frequency, day_rule?, start_date, end_date?, after?, count?, sla_days? }"""
    authorize(current_actor(), "template_view", organization_id())
    data = json_body()
    rule = ScheduleRule.recurring(
        data.get("frequency"), data.get("day_rule"),
        parse_date(data.get("start_date")), parse_date(data.get("end_date")),
    )
    after = parse_date(data.get("after")) or today_utc()
    count = max(1, min(int(data.get("count", 6)), 100))
    dates = list(occurrences_between(rule, after, after.replace(year=after.year + 50), limit=count))
    sla = data.get("sla_days")
    return jsonify({
        "occurrences": [
            {"occurrence_date": d.isoformat(), "due_date": due_date_for(d, sla).isoformat()} for d in dates
        ],
    })
