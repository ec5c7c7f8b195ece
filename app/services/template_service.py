"""
Template Service: reusable collection definitions.

Every edit bumps ``Template.version``. Tasks and requests copy what they need
at creation and keep the version they were created from, so an edit never
reaches back into existing instances.
"""

import logging

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.template import (
    DOCUMENT_TYPES,
    PRIORITIES,
    TASK_TYPES,
    TEMPLATE_STATUSES,
    VISIBILITIES,
    Template,
    TemplateChecklistItem,
)
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.services.schedule_calculator import ScheduleRule
from app.utils.helpers import atomic, parse_date

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = (
    "name", "description", "task_type", "schedule_frequency", "schedule_day_rule",
    "pre_due_reminders", "task_manager_id", "priority", "default_sla_days", "visibility", "status",
)
_DATE_FIELDS = ("schedule_start_date", "schedule_end_date")


def _get_template(template_id) -> Template:
    template = db.session.get(Template, template_id)
    if template is None:
        raise NotFoundError(resource="Template", resource_id=template_id)
    return template


def _check_choice(field, value, allowed):
    if value is not None and value not in allowed:
        raise ValidationError(f"Invalid {field} '{value}'", details={"allowed": sorted(allowed)})


def _validate(template: Template):
    if not (template.name or "").strip():
        raise ValidationError("name is required")
    _check_choice("task_type", template.task_type, TASK_TYPES)
    _check_choice("priority", template.priority, PRIORITIES)
    _check_choice("visibility", template.visibility, VISIBILITIES)
    _check_choice("status", template.status, TEMPLATE_STATUSES)
    if template.default_sla_days is not None and template.default_sla_days < 0:
        raise ValidationError("default_sla_days cannot be negative")
    offsets = template.pre_due_reminders or []
    if any(not isinstance(o, int) or o < 0 for o in offsets):
        raise ValidationError("pre_due_reminders must be non-negative day offsets")

    if template.task_type == "recurring":
        # Raises InvalidScheduleError for malformed rules; custom rules are opaque here
        ScheduleRule.from_entity(template).validate()
    else:
        template.schedule_frequency = None
        template.schedule_day_rule = None
        template.schedule_start_date = None
        template.schedule_end_date = None


def _replace_items(template: Template, items: list[dict]):
    """Rebuild checklist items; ``depends_on`` is the index of another item in the list."""
    template.checklist_items.clear()
    db.session.flush()
    rows = []
    for idx, data in enumerate(items):
        particular = (data.get("particular") or "").strip()
        if not particular:
            raise ValidationError(f"Checklist item {idx}: 'particular' is required")
        document_type = data.get("document_type") or "other"
        _check_choice("document_type", document_type, DOCUMENT_TYPES)
        row = TemplateChecklistItem(
            sort_order=data.get("sort_order", idx),
            particular=particular,
            document_type=document_type,
            is_mandatory=bool(data.get("is_mandatory", True)),
            allow_multiple_uploads=bool(data.get("allow_multiple_uploads", False)),
            instructions=data.get("instructions"),
        )
        template.checklist_items.append(row)
        rows.append(row)
    db.session.flush()

    for idx, data in enumerate(items):
        depends_on = data.get("depends_on")
        if depends_on is None:
            continue
        if not isinstance(depends_on, int) or not 0 <= depends_on < len(rows) or depends_on == idx:
            raise ValidationError(f"Checklist item {idx}: depends_on must reference another item index")
        rows[idx].dependency_item_id = rows[depends_on].id


def create_template(organization_id: int, actor, data: dict) -> dict:
    with atomic("template"):
        authorize(actor, "template_manage", organization_id)
        template = Template(organization_id=organization_id, created_by=actor.user_id, version=1)
        for field in _SCALAR_FIELDS:
            if field in data:
                setattr(template, field, data[field])
        for field in _DATE_FIELDS:
            if field in data:
                setattr(template, field, parse_date(data[field]))
        template.task_type = template.task_type or "one_time"
        template.status = template.status or "active"
        _validate(template)
        db.session.add(template)
        db.session.flush()
        _replace_items(template, data.get("checklist_items") or [])
        record_audit("template", template.id, "template.create", performed_by=actor.user_id,
                     new_values={"name": template.name, "version": 1,
                                 "items": len(template.checklist_items)},
                     organization_id=organization_id)
    return template.to_dict(include_items=True)


def update_template(template_id: int, actor, data: dict) -> dict:
    """Apply an edit and bump the version; a no-op payload leaves the version alone."""
    with atomic("template", template_id):
        template = _get_template(template_id)
        authorize(actor, "template_manage", template.organization_id)
        old = template.to_dict(include_items=True)

        for field in _SCALAR_FIELDS:
            if field in data:
                setattr(template, field, data[field])
        for field in _DATE_FIELDS:
            if field in data:
                setattr(template, field, parse_date(data[field]))
        _validate(template)
        if "checklist_items" in data:
            _replace_items(template, data["checklist_items"] or [])

        new = template.to_dict(include_items=True)
        changed = {k for k in new if k not in ("version", "updated_at") and new[k] != old.get(k)}
        if changed:
            template.version = (template.version or 1) + 1
            db.session.flush()
            record_audit("template", template.id, "template.update", performed_by=actor.user_id,
                         old_values={k: old.get(k) for k in changed} | {"version": old["version"]},
                         new_values={k: new[k] for k in changed} | {"version": template.version},
                         organization_id=template.organization_id)
    logger.info("Template %s now at v%s", template.id, template.version,
                extra={"organization_id": template.organization_id, "entity_type": "template",
                       "entity_id": template.id})
    return template.to_dict(include_items=True)


def get_template(template_id: int, actor) -> dict:
    template = _get_template(template_id)
    authorize(actor, "template_view", template.organization_id)
    return template.to_dict(include_items=True)


def list_templates(organization_id: int, actor, *, status=None, task_type=None):
    authorize(actor, "template_view", organization_id)
    q = Template.query_for_org(organization_id)
    if status:
        _check_choice("status", status, TEMPLATE_STATUSES)
        q = q.filter_by(status=status)
    if task_type:
        _check_choice("task_type", task_type, TASK_TYPES)
        q = q.filter_by(task_type=task_type)
    return q.order_by(Template.name, Template.id)
