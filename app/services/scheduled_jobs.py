"""
Collection Workflow Platform
Scheduled Jobs.

Periodic sweeps, each run once per active organization. A failure in one
organization is logged and counted; the sweep moves on to the next one.

Jobs:
    - occurrence_generator: materialise due occurrences of recurring tasks
    - occurrence_overdue_sweep: pending / in_progress occurrences past due → overdue
    - task_overdue_sweep: open tasks past due → overdue
    - request_overdue_sweep: alert managers about open requests past due
    - reminder_dispatch: send due reminders, retry failures, escalate exhausted ones
    - pre_due_reminders: schedule pre-due reminders missing on open requests
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from app.models import db
from app.models.auth import Organization
from app.services.scheduler_service import register_job
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _for_each_organization(job_name: str, fn: Callable[[int], Any]) -> dict[str, Any]:
    results: dict[str, Any] = {"organizations": 0, "errors": 0, "per_organization": {}}
    org_ids = [o.id for o in Organization.query.filter_by(is_active=True).order_by(Organization.id)]
    for org_id in org_ids:
        try:
            results["per_organization"][org_id] = fn(org_id)
            results["organizations"] += 1
        except Exception as exc:
            db.session.rollback()
            results["errors"] += 1
            logger.error("%s failed for organization %s: %s", job_name, org_id, exc,
                         exc_info=True, extra={"organization_id": org_id, "job_name": job_name})
    logger.info("%s: %d organization(s), %d error(s)", job_name, results["organizations"], results["errors"],
                extra={"job_name": job_name})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Occurrence generator
# ═══════════════════════════════════════════════════════════════════════════

@register_job("occurrence_generator", interval_seconds=3600)
def run_occurrence_generator(app) -> dict[str, Any]:
    """Generate task occurrences whose next run date has been reached."""
    from app.services.task_service import generate_due_occurrences

    now = utcnow()
    return _for_each_organization("occurrence_generator", lambda org_id: generate_due_occurrences(org_id, now))


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2-3: Overdue sweeps
# ═══════════════════════════════════════════════════════════════════════════

@register_job("occurrence_overdue_sweep", interval_seconds=3600)
def run_occurrence_overdue_sweep(app) -> dict[str, Any]:
    """Mark occurrences overdue once their due date has passed."""
    from app.services.task_service import mark_overdue_occurrences

    today = utcnow().date()
    return _for_each_organization("occurrence_overdue_sweep",
                                  lambda org_id: {"marked": mark_overdue_occurrences(org_id, today)})


@register_job("task_overdue_sweep", interval_seconds=3600)
def run_task_overdue_sweep(app) -> dict[str, Any]:
    """Mark open tasks overdue once their due date has passed."""
    from app.services.task_service import mark_overdue_tasks

    today = utcnow().date()
    return _for_each_organization("task_overdue_sweep",
                                  lambda org_id: {"marked": mark_overdue_tasks(org_id, today)})


@register_job("request_overdue_sweep", interval_seconds=6 * 3600)
def run_request_overdue_sweep(app) -> dict[str, Any]:
    """Alert managers about sent / in-progress requests past their due date."""
    from app.services.escalation import EscalationService

    today = utcnow().date()

    def sweep(org_id):
        summary = EscalationService.alert_overdue_requests(org_id, today)
        db.session.commit()
        return summary

    return _for_each_organization("request_overdue_sweep", sweep)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4-5: Reminders
# ═══════════════════════════════════════════════════════════════════════════

@register_job("reminder_dispatch", interval_seconds=60)
def run_reminder_dispatch(app) -> dict[str, Any]:
    """Dispatch due reminders through their channel senders."""
    from app.services.reminder_service import default_worker_id, dispatch_due_reminders

    now = utcnow()
    worker_id = default_worker_id()
    return _for_each_organization(
        "reminder_dispatch", lambda org_id: dispatch_due_reminders(org_id, now, worker_id=worker_id),
    )


@register_job("pre_due_reminders", interval_seconds=6 * 3600)
def run_pre_due_reminders(app) -> dict[str, Any]:
    """Schedule pre-due reminders that open requests are still missing."""
    from app.services.reminder_service import top_up_pre_due_reminders

    now = utcnow()
    return _for_each_organization("pre_due_reminders",
                                  lambda org_id: {"scheduled": top_up_pre_due_reminders(org_id, now)})
