"""
Template Blueprint.

Routes:
  GET    /templates                     – list templates
  POST   /templates                     – create template (+ checklist items)
  GET    /templates/<tid>               – template with checklist items
  PUT    /templates/<tid>               – edit (bumps version)
  POST   /templates/<tid>/tasks         – instantiate a task from the template
"""

from flask import Blueprint, jsonify, request

from app.auth import current_actor
from app.blueprints import json_body, organization_id, paginate_query, paginated
from app.services import task_service, template_service

template_bp = Blueprint("template_bp", __name__, url_prefix="/api/v1")


@template_bp.route("/templates", methods=["GET"])
def list_templates():
    q = template_service.list_templates(
        organization_id(), current_actor(),
        status=request.args.get("status"), task_type=request.args.get("task_type"),
    )
    items, total = paginate_query(q)
    return jsonify(paginated(items, total))


@template_bp.route("/templates", methods=["POST"])
def create_template():
    return jsonify(template_service.create_template(organization_id(), current_actor(), json_body())), 201


@template_bp.route("/templates/<int:tid>", methods=["GET"])
def get_template(tid):
    return jsonify(template_service.get_template(tid, current_actor()))


@template_bp.route("/templates/<int:tid>", methods=["PUT"])
def update_template(tid):
    return jsonify(template_service.update_template(tid, current_actor(), json_body()))


@template_bp.route("/templates/<int:tid>/tasks", methods=["POST"])
def create_task_from_template(tid):
    """Body: { client_id?, task_manager_id?, name? }"""
    data = json_body()
    task = task_service.create_task_from_template(
        tid, current_actor(),
        client_id=data.get("client_id"),
        task_manager_id=data.get("task_manager_id"),
        name=data.get("name"),
    )
    return jsonify(task), 201
