"""
Task & Occurrence Generator Service.

Tasks
    not_started → in_progress ⇄ waiting_on_client → completed / cancelled
    any open status → overdue  (task overdue sweep, due_date passed)

Occurrences of recurring tasks
    pending → in_progress → completed
    pending / in_progress → overdue  (occurrence overdue sweep)
    any open status → skipped        (operator action only)

Generation is replay-safe. ``generate_occurrence`` advances
``next_run_date`` with a compare-and-swap UPDATE and inserts the occurrence
under the (task_id, occurrence_date) unique constraint inside a savepoint.
A second sweep that saw the same ``next_run_date`` loses the CAS, and a
replayed insert hits the constraint; both are no-ops.
"""

import logging

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.core import events
from app.core.exceptions import (
    ConcurrentModificationError,
    InvalidScheduleError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.task import (
    OCCURRENCE_TRANSITIONS,
    OPEN_OCCURRENCE_STATUSES,
    TASK_STATUSES,
    TASK_TRANSITIONS,
    Task,
    TaskOccurrence,
)
from app.models.template import PRIORITIES, TASK_TYPES, Template
from app.services import approval_service
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.services.escalation import EscalationService
from app.services.schedule_calculator import (
    ScheduleRule,
    due_date_for,
    first_occurrence_on_or_after,
    next_occurrence,
)
from app.utils.helpers import atomic, parse_date, utcnow

logger = logging.getLogger(__name__)

OPEN_TASK_STATUSES = ("not_started", "in_progress", "waiting_on_client")


def _get_task(task_id) -> Task:
    task = db.session.get(Task, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def _get_occurrence(occurrence_id) -> TaskOccurrence:
    occurrence = db.session.get(TaskOccurrence, occurrence_id)
    if occurrence is None:
        raise NotFoundError(resource="TaskOccurrence", resource_id=occurrence_id)
    return occurrence


def _sla(value):
    sla = current_app.config.get("DEFAULT_SLA_DAYS", 7) if value is None else int(value)
    if sla < 0:
        raise ValidationError("sla_days cannot be negative", details={"sla_days": sla})
    return sla


# ═════════════════════════════════════════════════════════════════════════════
# Creation
# ═════════════════════════════════════════════════════════════════════════════


def build_task(organization_id, *, name, task_type="one_time", schedule_frequency=None,
               schedule_day_rule=None, schedule_start_date=None, schedule_end_date=None,
               sla_days=None, pre_due_reminders=None, priority="medium", due_date=None,
               client_id=None, task_manager_id=None, description=None, template=None,
               created_by=None, today=None) -> Task:
    """Validate and add a Task (flush only). Recurring tasks get their first next_run_date."""
    today = today or utcnow().date()
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if task_type not in TASK_TYPES:
        raise ValidationError(f"Invalid task_type '{task_type}'", details={"allowed": sorted(TASK_TYPES)})
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'", details={"allowed": sorted(PRIORITIES)})
    sla = _sla(sla_days)

    task = Task(
        organization_id=organization_id,
        template_id=template.id if template is not None else None,
        template_version=template.version if template is not None else None,
        client_id=client_id,
        task_manager_id=task_manager_id,
        name=name,
        description=description,
        task_type=task_type,
        sla_days=sla,
        pre_due_reminders=list(pre_due_reminders or []),
        priority=priority,
        status="not_started",
        created_by=created_by,
    )

    if task_type == "recurring":
        task.schedule_frequency = schedule_frequency
        task.schedule_day_rule = schedule_day_rule
        task.schedule_start_date = parse_date(schedule_start_date) or today
        task.schedule_end_date = parse_date(schedule_end_date)
        rule = ScheduleRule.from_entity(task)
        task.next_run_date = first_occurrence_on_or_after(rule, max(rule.start_date, today))
    else:
        # One-time tasks never carry schedule state
        task.due_date = parse_date(due_date) or due_date_for(today, sla)

    db.session.add(task)
    db.session.flush()
    return task


def create_task(organization_id: int, actor, *, today=None, **fields) -> dict:
    """Create a one-time or recurring task."""
    with atomic("task"):
        authorize(actor, "task_manage", organization_id)
        task = build_task(organization_id, created_by=actor.user_id, today=today, **fields)
        record_audit("task", task.id, "task.create", performed_by=actor.user_id,
                     new_values={"name": task.name, "task_type": task.task_type,
                                 "next_run_date": task.next_run_date},
                     organization_id=organization_id)
    logger.info("Task %s created (%s), next run %s", task.id, task.task_type, task.next_run_date,
                extra={"organization_id": organization_id, "entity_type": "task", "entity_id": task.id})
    return task.to_dict()


def create_task_from_template(template_id: int, actor, *, client_id=None, task_manager_id=None,
                              name=None, today=None) -> dict:
    """Instantiate a task from a template, copying its schedule, SLA and version."""
    with atomic("task"):
        template = db.session.get(Template, template_id)
        if template is None:
            raise NotFoundError(resource="Template", resource_id=template_id)
        authorize(actor, "task_manage", template.organization_id)
        if template.status != "active":
            raise ValidationError(f"Template {template_id} is {template.status}")
        task = build_task(
            template.organization_id,
            name=name or template.name,
            description=template.description,
            task_type=template.task_type,
            schedule_frequency=template.schedule_frequency,
            schedule_day_rule=template.schedule_day_rule,
            schedule_start_date=template.schedule_start_date,
            schedule_end_date=template.schedule_end_date,
            sla_days=template.default_sla_days,
            pre_due_reminders=template.pre_due_reminders,
            priority=template.priority or "medium",
            client_id=client_id,
            task_manager_id=task_manager_id or template.task_manager_id,
            template=template,
            created_by=actor.user_id,
            today=today,
        )
        record_audit("task", task.id, "task.create_from_template", performed_by=actor.user_id,
                     new_values={"template_id": template.id, "template_version": template.version,
                                 "next_run_date": task.next_run_date},
                     organization_id=template.organization_id)
    return task.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Occurrence generation
# ═════════════════════════════════════════════════════════════════════════════


def _insert_occurrence(task, occurrence_date):
    """Insert inside a savepoint; a duplicate (task, date) returns None."""
    try:
        with db.session.begin_nested():
            occurrence = TaskOccurrence(
                organization_id=task.organization_id,
                task_id=task.id,
                occurrence_date=occurrence_date,
                due_date=due_date_for(occurrence_date, task.sla_days),
                status="pending",
            )
            db.session.add(occurrence)
            db.session.flush()
    except IntegrityError:
        logger.info("Occurrence %s@%s already exists", task.id, occurrence_date,
                    extra={"organization_id": task.organization_id, "entity_type": "task", "entity_id": task.id})
        return None
    return occurrence


def _maybe_create_request(task, occurrence):
    """Draft data request for the occurrence when the task has a template checklist and a client."""
    if task.template_id is None or task.client_id is None:
        return None
    template = db.session.get(Template, task.template_id)
    if template is None or not template.checklist_items:
        return None
    from app.services.request_lifecycle import build_request

    return build_request(
        task.organization_id,
        client_id=task.client_id,
        title=f"{task.name} ({occurrence.occurrence_date.isoformat()})",
        created_by=task.created_by,
        due_date=occurrence.due_date,
        priority=task.priority or "medium",
        template=template,
        task_id=task.id,
        occurrence_id=occurrence.id,
    )


def generate_occurrence(task: Task, now=None) -> list[TaskOccurrence]:
    """
    Materialise every occurrence of ``task`` due by ``now`` (flush only).

    One occurrence per missed period, bounded by ``OCCURRENCE_MAX_CATCH_UP``
    per call; the next sweep continues where this one stopped.

    Returns:
        The occurrences this call created (empty on replay).
    """
    now = now or utcnow()
    today = now.date()
    max_catch_up = current_app.config.get("OCCURRENCE_MAX_CATCH_UP", 12)
    if not task.is_recurring or task.status in ("completed", "cancelled"):
        return []

    created = []
    for _ in range(max_catch_up):
        run_date = task.next_run_date
        if run_date is None or run_date > today:
            break
        following = next_occurrence(ScheduleRule.from_entity(task), run_date)

        advanced = db.session.execute(
            update(Task)
            .where(Task.id == task.id, Task.next_run_date == run_date)
            .values(next_run_date=following)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.refresh(task, ["next_run_date"])
        if advanced != 1:
            logger.info("Task %s already advanced past %s by another sweep", task.id, run_date,
                        extra={"organization_id": task.organization_id, "entity_type": "task",
                               "entity_id": task.id})
            break

        occurrence = _insert_occurrence(task, run_date)
        if occurrence is None:
            continue
        _maybe_create_request(task, occurrence)
        created.append(occurrence)
        record_audit("occurrence", occurrence.id, "occurrence.generate", performed_by=None,
                     new_values={"task_id": task.id, "occurrence_date": run_date,
                                 "due_date": occurrence.due_date},
                     organization_id=task.organization_id)
        events.occurrence_generated.send(__name__, occurrence=occurrence, task=task, now=now)

    if created:
        logger.info("Generated %d occurrence(s) for task %s, next run %s", len(created), task.id,
                    task.next_run_date,
                    extra={"organization_id": task.organization_id, "entity_type": "task", "entity_id": task.id})
    return created


def generate_due_occurrences(organization_id: int, now=None, *, limit=None) -> dict:
    """Sweep: generate occurrences for every due recurring task of one organization."""
    now = now or utcnow()
    limit = limit or current_app.config.get("SWEEP_BATCH_SIZE", 100)
    task_ids = list(db.session.scalars(
        select(Task.id)
        .where(
            Task.organization_id == organization_id,
            Task.task_type == "recurring",
            Task.status.notin_(("completed", "cancelled")),
            Task.next_run_date.is_not(None),
            Task.next_run_date <= now.date(),
        )
        .order_by(Task.next_run_date, Task.id)
        .limit(limit)
    ))

    summary = {"tasks": len(task_ids), "occurrences": 0, "errors": 0}
    for task_id in task_ids:
        try:
            with atomic("task", task_id):
                task = _get_task(task_id)
                summary["occurrences"] += len(generate_occurrence(task, now))
        except (InvalidScheduleError, ValidationError) as exc:
            summary["errors"] += 1
            logger.error("Task %s could not generate occurrences: %s", task_id, exc,
                         extra={"organization_id": organization_id, "entity_type": "task", "entity_id": task_id})
    return summary


# ═════════════════════════════════════════════════════════════════════════════
# Occurrence transitions
# ═════════════════════════════════════════════════════════════════════════════


def apply_occurrence_transition(occurrence, action, actor=None, *, notes=None, now=None):
    """Validate and apply one occurrence transition with a CAS on status (flush only)."""
    rule = OCCURRENCE_TRANSITIONS.get(action)
    if rule is None or occurrence.status not in rule["from"]:
        reason = f"'{action}' is allowed from {', '.join(rule['from'])}" if rule else "unknown action"
        raise InvalidTransitionError("occurrence", occurrence.id, occurrence.status, action, reason)

    now = now or utcnow()
    previous = occurrence.status
    values = {"status": rule["to"]}
    if action == "start":
        values["started_at"] = now
    elif action == "complete":
        values["completed_at"] = now
    elif action == "skip":
        values["skipped_by"] = actor.user_id if actor is not None else None
    if notes:
        values["notes"] = notes

    result = db.session.execute(
        update(TaskOccurrence)
        .where(TaskOccurrence.id == occurrence.id, TaskOccurrence.status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError("occurrence", occurrence.id)
    db.session.refresh(occurrence)

    if rule["to"] in ("completed", "skipped"):
        from app.services.reminder_service import cancel_reminders_for_occurrence

        cancel_reminders_for_occurrence(occurrence.id, now=now)

    record_audit("occurrence", occurrence.id, f"occurrence.{action}",
                 performed_by=actor.user_id if actor is not None else None,
                 old_values={"status": previous}, new_values={"status": occurrence.status},
                 organization_id=occurrence.organization_id)
    return occurrence


def _transition_occurrence(occurrence_id, action, actor, permission, notes=None):
    with atomic("occurrence", occurrence_id):
        occurrence = _get_occurrence(occurrence_id)
        authorize(actor, permission, occurrence.organization_id)
        apply_occurrence_transition(occurrence, action, actor, notes=notes)
    return occurrence.to_dict()


def start_occurrence(occurrence_id: int, actor) -> dict:
    return _transition_occurrence(occurrence_id, "start", actor, "occurrence_update")


def complete_occurrence(occurrence_id: int, actor, notes=None) -> dict:
    return _transition_occurrence(occurrence_id, "complete", actor, "occurrence_update", notes)


def skip_occurrence(occurrence_id: int, actor, reason: str) -> dict:
    if not (reason or "").strip():
        raise ValidationError("A reason is required to skip an occurrence")
    return _transition_occurrence(occurrence_id, "skip", actor, "occurrence_skip", reason.strip())


def mark_overdue_occurrences(organization_id: int, today=None) -> int:
    """Sweep: pending / in_progress occurrences past their due date become overdue."""
    today = today or utcnow().date()
    candidates = db.session.scalars(
        select(TaskOccurrence).where(
            TaskOccurrence.organization_id == organization_id,
            TaskOccurrence.status.in_(OPEN_OCCURRENCE_STATUSES),
            TaskOccurrence.due_date < today,
        )
    ).all()

    marked = 0
    for occurrence in candidates:
        result = db.session.execute(
            update(TaskOccurrence)
            .where(TaskOccurrence.id == occurrence.id,
                   TaskOccurrence.status.in_(OPEN_OCCURRENCE_STATUSES))
            .values(status="overdue")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        db.session.refresh(occurrence)
        marked += 1
        EscalationService.alert_overdue_occurrence(occurrence, today)
    db.session.commit()
    if marked:
        logger.info("Marked %d occurrence(s) overdue", marked, extra={"organization_id": organization_id})
    return marked


# ═════════════════════════════════════════════════════════════════════════════
# Task transitions
# ═════════════════════════════════════════════════════════════════════════════


def apply_task_transition(task, action, actor=None, now=None):
    rule = TASK_TRANSITIONS.get(action)
    if rule is None or task.status not in rule["from"]:
        reason = f"'{action}' is allowed from {', '.join(rule['from'])}" if rule else "unknown action"
        raise InvalidTransitionError("task", task.id, task.status, action, reason)

    previous = task.status
    values = {"status": rule["to"]}
    if action == "complete":
        values["completed_at"] = now or utcnow()
    if action in ("complete", "cancel") and task.is_recurring:
        values["next_run_date"] = None

    result = db.session.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == previous)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModificationError("task", task.id)
    db.session.refresh(task)
    record_audit("task", task.id, f"task.{action}",
                 performed_by=actor.user_id if actor is not None else None,
                 old_values={"status": previous}, new_values={"status": task.status},
                 organization_id=task.organization_id)
    return task


def transition_task(task_id: int, action: str, actor) -> dict:
    """
    Apply a task status action. When task completion is gated by
    maker-checker review, ``complete`` opens an Approval instead and the task
    completes once a different user approves it.
    """
    with atomic("task", task_id):
        task = _get_task(task_id)
        authorize(actor, "task_manage" if action == "cancel" else "task_transition", task.organization_id)
        pending = None
        if action == "complete" and approval_service.requires_approval("task"):
            rule = TASK_TRANSITIONS["complete"]
            if task.status not in rule["from"]:
                raise InvalidTransitionError("task", task.id, task.status, action,
                                             f"'complete' is allowed from {', '.join(rule['from'])}")
            pending = approval_service.open_approval(task.organization_id, "task", task.id, actor.user_id)
        else:
            apply_task_transition(task, action, actor)
    data = task.to_dict()
    if pending is not None:
        data["pending_approval"] = pending.to_dict()
    return data


def mark_overdue_tasks(organization_id: int, today=None) -> int:
    """Sweep: open tasks with a due date before ``today`` become overdue."""
    today = today or utcnow().date()
    candidates = db.session.scalars(
        select(Task).where(
            Task.organization_id == organization_id,
            Task.status.in_(OPEN_TASK_STATUSES),
            Task.due_date.is_not(None),
            Task.due_date < today,
        )
    ).all()

    marked = 0
    for task in candidates:
        result = db.session.execute(
            update(Task)
            .where(Task.id == task.id, Task.status.in_(OPEN_TASK_STATUSES))
            .values(status="overdue")
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        db.session.refresh(task)
        marked += 1
        EscalationService.alert_overdue_task(task, today)
    db.session.commit()
    return marked


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_task(task_id: int, actor) -> dict:
    task = _get_task(task_id)
    authorize(actor, "task_view", task.organization_id)
    return task.to_dict()


def list_tasks(organization_id: int, actor, *, status=None, task_type=None):
    authorize(actor, "task_view", organization_id)
    q = Task.query_for_org(organization_id)
    if status:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"allowed": sorted(TASK_STATUSES)})
        q = q.filter_by(status=status)
    if task_type:
        q = q.filter_by(task_type=task_type)
    return q.order_by(Task.id)


def list_occurrences(task_id: int, actor) -> list[dict]:
    task = _get_task(task_id)
    authorize(actor, "task_view", task.organization_id)
    return [o.to_dict() for o in task.occurrences]


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.request_status_changed.connect
def _on_request_status_changed(sender, request, new_status, actor=None, **_):
    if request.occurrence_id is None:
        return
    occurrence = db.session.get(TaskOccurrence, request.occurrence_id)
    if occurrence is None:
        return
    if new_status == "in_progress" and occurrence.status in OCCURRENCE_TRANSITIONS["start"]["from"]:
        apply_occurrence_transition(occurrence, "start", actor)
    elif new_status == "completed" and occurrence.status in OCCURRENCE_TRANSITIONS["complete"]["from"]:
        apply_occurrence_transition(occurrence, "complete", actor)


@events.approval_decided.connect
def _on_approval_decided(sender, approval, action, reviewer, **_):
    if approval.approval_type != "task":
        return
    task = db.session.get(Task, approval.related_id)
    if task is None:
        logger.warning("Approval %s refers to missing task %s", approval.id, approval.related_id)
        return
    if task.organization_id != approval.organization_id:
        raise NotFoundError(resource="Task", resource_id=task.id, organization_id=approval.organization_id)
    if action == "approved":
        apply_task_transition(task, "complete", reviewer)
    else:
        logger.info("Completion of task %s sent back: %s", task.id, action,
                    extra={"organization_id": task.organization_id, "entity_type": "task", "entity_id": task.id})
