"""
Escalation & Alert Service.

Turns engine events into in-app alerts for an organization's managers:
    - a reminder exhausted its retries (``reminder_escalated``)
    - a request passed its due date while still open (request overdue sweep)
    - an occurrence or task went overdue (occurrence / task overdue sweeps)

Every alert carries a deterministic dedup key, so replays of the same event
or repeated sweeps on the same day never spam the same manager twice.

Usage:
    from app.services.escalation import EscalationService
    EscalationService.alert_overdue_requests(organization_id=1, today=date(2024, 2, 9))
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date

from app.core import events
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Dedup
# ═════════════════════════════════════════════════════════════════════════════

def _dedup_key(organization_id: int, alert_type: str, entity_id: str = "", day: date | None = None) -> str:
    """Deterministic key: same organization, alert, entity and day → same key."""
    raw = f"esc-{organization_id}-{alert_type}-{entity_id}-{day.isoformat() if day else ''}"
    return hashlib.md5(raw.encode()).hexdigest()[:16]


def _notify_managers(organization_id, alert_type, entity_type, entity_id, *, title, message,
                     severity="warning", day=None, extra_user_ids=()) -> list:
    recipients = list(dict.fromkeys([*NotificationService.manager_ids(organization_id), *extra_user_ids]))
    recipients = [uid for uid in recipients if uid is not None]
    if not recipients:
        logger.warning(
            "No managers to notify for %s on %s %s", alert_type, entity_type, entity_id,
            extra={"organization_id": organization_id, "event_type": f"escalation.{alert_type}"},
        )
        return []
    return NotificationService.broadcast(
        organization_id=organization_id,
        user_ids=recipients,
        title=title,
        message=message,
        category="escalation",
        severity=severity,
        entity_type=entity_type,
        entity_id=entity_id,
        dedup_prefix=_dedup_key(organization_id, alert_type, str(entity_id), day),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════

class EscalationService:
    """Manager alerts for exhausted reminders and overdue work (flush only)."""

    @staticmethod
    def alert_reminder_exhausted(reminder) -> list:
        target = f"request {reminder.request_id}" if reminder.request_id else f"task {reminder.task_id}"
        return _notify_managers(
            reminder.organization_id, "reminder_failed", "reminder", reminder.id,
            title=f"ESCALATION: {reminder.channel} reminder failed {reminder.retry_count} times",
            message=(
                f"Reminder {reminder.id} for {target} could not be delivered after "
                f"{reminder.retry_count} attempt(s). Last error: {reminder.last_error or 'unknown'}"
            ),
            severity="error",
        )

    @staticmethod
    def alert_overdue_requests(organization_id: int, today: date) -> dict:
        from app.services.request_lifecycle import overdue_requests

        generated = 0
        overdue = overdue_requests(organization_id, today)
        for request in overdue:
            days = (today - request.due_date).days
            generated += len(_notify_managers(
                organization_id, "request_overdue", "request", request.id,
                title=f"OVERDUE: {request.request_number} is {days} day(s) past due",
                message=f"'{request.title}' was due {request.due_date.isoformat()} and is still {request.status}.",
                day=today,
                extra_user_ids=[request.created_by],
            ))
        return {"overdue": len(overdue), "alerts_generated": generated}

    @staticmethod
    def alert_overdue_occurrence(occurrence, today: date) -> list:
        task = occurrence.task
        return _notify_managers(
            occurrence.organization_id, "occurrence_overdue", "occurrence", occurrence.id,
            title=f"OVERDUE: {task.name} ({occurrence.occurrence_date.isoformat()})",
            message=f"Occurrence due {occurrence.due_date.isoformat()} has not been completed.",
            day=today,
            extra_user_ids=[task.task_manager_id],
        )

    @staticmethod
    def alert_overdue_task(task, today: date) -> list:
        return _notify_managers(
            task.organization_id, "task_overdue", "task", task.id,
            title=f"OVERDUE: {task.name}",
            message=f"Task was due {task.due_date.isoformat() if task.due_date else '?'} and is overdue.",
            day=today,
            extra_user_ids=[task.task_manager_id],
        )


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.reminder_escalated.connect
def _on_reminder_escalated(sender, reminder, **_):
    alerts = EscalationService.alert_reminder_exhausted(reminder)
    logger.warning(
        "Reminder %s escalated to %d manager(s)", reminder.id, len(alerts),
        extra={"organization_id": reminder.organization_id, "entity_type": "reminder",
               "entity_id": reminder.id, "event_type": "reminder.escalated"},
    )
