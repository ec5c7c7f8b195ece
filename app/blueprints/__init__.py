"""
Collection Workflow Platform
Blueprint registry and shared view helpers.
"""

from flask import g, request

from app.core.exceptions import ValidationError
from app.core.roles import Role


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit: max items (default 200, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def paginated(items, total, **serialize_kwargs):
    return {"items": [i.to_dict(**serialize_kwargs) for i in items], "total": total}


def organization_id():
    """The organization a request targets: the actor's own, or ?organization_id= for super admins."""
    actor = g.actor
    if actor.role is Role.SUPER_ADMIN and request.args.get("organization_id"):
        return request.args.get("organization_id", type=int)
    return actor.organization_id


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def register_blueprints(app):
    from app.blueprints.approval_bp import approval_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.notification_bp import notification_bp
    from app.blueprints.reminder_bp import reminder_bp
    from app.blueprints.request_bp import request_bp
    from app.blueprints.task_bp import task_bp
    from app.blueprints.template_bp import template_bp
    from app.blueprints.verification_bp import verification_bp

    for bp in (health_bp, template_bp, task_bp, request_bp, reminder_bp, approval_bp,
               verification_bp, notification_bp):
        app.register_blueprint(bp)
