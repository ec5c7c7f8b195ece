"""
Reminder & Retry Engine.

Scheduling
    - send time: one reminder per enabled channel for every mandatory item
      that is not approved yet
    - pre-due: again at ``due_date - N days`` (09:00 UTC) for each configured
      offset still in the future
    - re-request: a fresh cycle (new rows, retry_count 0) for the item

Dispatch (``dispatch``)
    1. claim the reminder with a conditional UPDATE (``locked_by`` +
       ``lease_expires_at``); a reminder held by a live lease is left alone
    2. write the ReminderAttempt row (``in_flight``) and commit, so no
       database lock is held while the sender is on the network
    3. re-check status and relevance; late cancellations are honoured here
    4. call the channel sender with ``CHANNEL_SEND_TIMEOUT``
    5. record the outcome with a conditional UPDATE on ``locked_by``

Failure handling
    retry_count += 1; below ``max_retries`` the reminder is rescheduled by the
    configured BackoffPolicy and stays ``pending``; at ``max_retries`` it
    becomes ``failed`` and ``reminder_escalated`` is emitted exactly once
    (``escalated_at`` guards the emit).

A cancellation that lands between the re-check in step 3 and the sender
call is not caught; that window is accepted as best effort.
"""

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from flask import current_app
from sqlalchemy import func, or_, select, update

from app.core import events
from app.core.exceptions import (
    DispatchFailure,
    InvalidTransitionError,
    NotFoundError,
    RequestClosedError,
    ValidationError,
)
from app.models import db
from app.models.auth import User
from app.models.reminder import REMINDER_STATUSES, Reminder, ReminderAttempt
from app.models.request import DataRequest, RequestChecklistItem
from app.models.task import OPEN_OCCURRENCE_STATUSES, TaskOccurrence
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.services.channels import Recipient, get_sender
from app.utils.helpers import as_utc, atomic, utcnow

logger = logging.getLogger(__name__)

PRE_DUE_SEND_TIME = time(9, 0)
_AWAITING_SUBMISSION = ("not_received", "re_requested")
_RELEVANT_OCCURRENCE_STATUSES = (*OPEN_OCCURRENCE_STATUSES, "overdue")


# ═════════════════════════════════════════════════════════════════════════════
# Policy & result types
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay before the next attempt after the n-th failure."""

    kind: str = "exponential"
    base_seconds: int = 300
    max_seconds: int = 86400

    @classmethod
    def from_config(cls, config=None):
        cfg = config if config is not None else current_app.config
        policy = cls(
            kind=cfg.get("REMINDER_BACKOFF_POLICY", "exponential"),
            base_seconds=int(cfg.get("REMINDER_BACKOFF_SECONDS", 300)),
            max_seconds=int(cfg.get("REMINDER_BACKOFF_MAX_SECONDS", 86400)),
        )
        if policy.kind not in ("fixed", "exponential"):
            raise ValueError(f"Unknown REMINDER_BACKOFF_POLICY '{policy.kind}'")
        return policy

    def delay(self, failures: int) -> timedelta:
        if self.kind == "fixed":
            return timedelta(seconds=self.base_seconds)
        exponent = max(failures - 1, 0)
        return timedelta(seconds=min(self.base_seconds * 2 ** exponent, self.max_seconds))


@dataclass(frozen=True)
class DispatchResult:
    reminder_id: int
    outcome: str  # sent | failed | skipped
    status: str | None = None
    retry_count: int = 0
    receipt_id: str | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None
    escalated: bool = False

    @property
    def ok(self):
        return self.outcome == "sent"

    def to_dict(self):
        return {
            "reminder_id": self.reminder_id,
            "outcome": self.outcome,
            "status": self.status,
            "retry_count": self.retry_count,
            "receipt_id": self.receipt_id,
            "error": self.error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "escalated": self.escalated,
        }


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# ═════════════════════════════════════════════════════════════════════════════
# Scheduling (flush only; the caller owns the transaction)
# ═════════════════════════════════════════════════════════════════════════════


def pre_due_offsets(request_or_task) -> list[int]:
    offsets = request_or_task.pre_due_reminders
    if not offsets:
        offsets = current_app.config.get("REMINDER_PRE_DUE_OFFSETS") or []
    return sorted({int(o) for o in offsets if int(o) >= 0}, reverse=True)


def pre_due_send_time(due_date, offset_days) -> datetime:
    return datetime.combine(due_date - timedelta(days=offset_days), PRE_DUE_SEND_TIME, tzinfo=timezone.utc)


def _item_message(request, item, offset_days=None):
    subject = f"Action needed: {request.title} ({request.request_number})"
    lines = [f"Please provide: {item.particular}."]
    if item.status == "re_requested" or (item.request_cycle or 0) > 0:
        lines.append("The previous submission needs to be sent again.")
        if item.client_comments:
            lines.append(f"Reviewer note: {item.client_comments}")
    if request.due_date:
        if offset_days:
            lines.append(f"Due in {offset_days} day(s), on {request.due_date.isoformat()}.")
        else:
            lines.append(f"Due on {request.due_date.isoformat()}.")
    return subject, " ".join(lines)


def _already_scheduled(item_id, cycle, channel, offset_days) -> bool:
    stmt = select(Reminder.id).where(
        Reminder.item_id == item_id,
        Reminder.cycle == cycle,
        Reminder.channel == channel,
        Reminder.status.in_(("pending", "sent")),
    )
    if offset_days is None:
        stmt = stmt.where(Reminder.offset_days.is_(None))
    else:
        stmt = stmt.where(Reminder.offset_days == offset_days)
    return db.session.scalar(stmt.limit(1)) is not None


def schedule_item_reminders(request: DataRequest, item: RequestChecklistItem, *, cycle=None, at=None,
                            offset_days=None) -> list[Reminder]:
    """One pending reminder per enabled channel for one item; skips rows already scheduled."""
    cycle = item.request_cycle if cycle is None else cycle
    at = at or utcnow()
    max_retries = current_app.config.get("REMINDER_MAX_RETRIES", 3)
    subject, body = _item_message(request, item, offset_days)

    created = []
    for channel in request.enabled_channels:
        if _already_scheduled(item.id, cycle, channel, offset_days):
            continue
        reminder = Reminder(
            organization_id=request.organization_id,
            reminder_type="request",
            related_type="request_item",
            related_id=item.id,
            request_id=request.id,
            item_id=item.id,
            recipient_id=request.client_id,
            channel=channel,
            scheduled_at=at,
            status="pending",
            retry_count=0,
            max_retries=max_retries,
            message_subject=subject,
            message_body=body,
            cycle=cycle,
            offset_days=offset_days,
        )
        db.session.add(reminder)
        created.append(reminder)
    if created:
        db.session.flush()
    return created


def schedule_pre_due_reminders(request: DataRequest, *, now=None, items=None) -> list[Reminder]:
    """Reminders at ``due_date - offset`` for each offset whose send time is still ahead."""
    if request.due_date is None or request.is_closed:
        return []
    now = now or utcnow()
    if items is None:
        items = [i for i in request.items if i.is_mandatory and i.status != "approved"]

    created = []
    for offset in pre_due_offsets(request):
        send_at = pre_due_send_time(request.due_date, offset)
        if send_at <= now:
            continue
        for item in items:
            created += schedule_item_reminders(request, item, at=send_at, offset_days=offset)
    return created


def schedule_occurrence_reminders(occurrence: TaskOccurrence, *, now=None) -> list[Reminder]:
    """In-app pre-due reminders to the task manager for a generated occurrence."""
    task = occurrence.task
    if task.task_manager_id is None:
        return []
    now = now or utcnow()
    max_retries = current_app.config.get("REMINDER_MAX_RETRIES", 3)

    created = []
    for offset in pre_due_offsets(task):
        send_at = pre_due_send_time(occurrence.due_date, offset)
        if send_at <= now:
            continue
        reminder = Reminder(
            organization_id=occurrence.organization_id,
            reminder_type="task",
            related_type="occurrence",
            related_id=occurrence.id,
            task_id=task.id,
            occurrence_id=occurrence.id,
            recipient_id=task.task_manager_id,
            channel="in_app",
            scheduled_at=send_at,
            status="pending",
            max_retries=max_retries,
            message_subject=f"{task.name} due {occurrence.due_date.isoformat()}",
            message_body=(
                f"The {occurrence.occurrence_date.isoformat()} occurrence of '{task.name}' "
                f"is due in {offset} day(s)."
            ),
            offset_days=offset,
        )
        db.session.add(reminder)
        created.append(reminder)
    if created:
        db.session.flush()
    return created


# ═════════════════════════════════════════════════════════════════════════════
# Cancellation
# ═════════════════════════════════════════════════════════════════════════════


def _cancel_where(*criteria, now=None) -> int:
    result = db.session.execute(
        update(Reminder)
        .where(Reminder.status == "pending", *criteria)
        .values(status="cancelled", cancelled_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def cancel_reminders_for_item(item_id: int, *, before_cycle: int | None = None, now=None) -> int:
    """Cancel an item's pending reminders; with ``before_cycle`` only older cycles."""
    criteria = [Reminder.item_id == item_id]
    if before_cycle is not None:
        criteria.append(Reminder.cycle < before_cycle)
    return _cancel_where(*criteria, now=now)


def cancel_reminders_for_request(request_id: int, now=None) -> int:
    return _cancel_where(Reminder.request_id == request_id, now=now)


def cancel_reminders_for_occurrence(occurrence_id: int, now=None) -> int:
    return _cancel_where(Reminder.occurrence_id == occurrence_id, now=now)


def _get_reminder(reminder_id) -> Reminder:
    reminder = db.session.get(Reminder, reminder_id)
    if reminder is None:
        raise NotFoundError(resource="Reminder", resource_id=reminder_id)
    return reminder


def cancel_reminder(reminder_id: int, actor, now=None) -> dict:
    """Manual cancel of one pending reminder."""
    with atomic("reminder", reminder_id):
        reminder = _get_reminder(reminder_id)
        authorize(actor, "reminder_manage", reminder.organization_id)
        if _cancel_where(Reminder.id == reminder.id, now=now) != 1:
            raise InvalidTransitionError("reminder", reminder.id, reminder.status, "cancel",
                                         "only pending reminders can be cancelled")
        db.session.refresh(reminder)
        record_audit("reminder", reminder.id, "reminder.cancel", performed_by=actor.user_id,
                     old_values={"status": "pending"}, new_values={"status": "cancelled"},
                     organization_id=reminder.organization_id)
    return reminder.to_dict()


def retry_failed_reminder(reminder_id: int, actor, now=None) -> dict:
    """Operator re-arm: a new pending reminder with retry_count 0; the failed row is kept."""
    now = now or utcnow()
    with atomic("reminder", reminder_id):
        failed = _get_reminder(reminder_id)
        authorize(actor, "reminder_manage", failed.organization_id)
        if failed.status != "failed":
            raise InvalidTransitionError("reminder", failed.id, failed.status, "retry",
                                         "only failed reminders can be retried")
        if failed.request_id is not None:
            request = db.session.get(DataRequest, failed.request_id)
            if request is not None and request.is_closed:
                raise RequestClosedError(request.id, request.status)

        fresh = Reminder(
            organization_id=failed.organization_id,
            reminder_type=failed.reminder_type,
            related_type=failed.related_type,
            related_id=failed.related_id,
            request_id=failed.request_id,
            item_id=failed.item_id,
            task_id=failed.task_id,
            occurrence_id=failed.occurrence_id,
            recipient_id=failed.recipient_id,
            channel=failed.channel,
            scheduled_at=now,
            status="pending",
            retry_count=0,
            max_retries=failed.max_retries,
            message_subject=failed.message_subject,
            message_body=failed.message_body,
            cycle=failed.cycle,
            offset_days=failed.offset_days,
        )
        db.session.add(fresh)
        db.session.flush()
        record_audit("reminder", fresh.id, "reminder.retry", performed_by=actor.user_id,
                     old_values={"reminder_id": failed.id, "retry_count": failed.retry_count},
                     new_values={"reminder_id": fresh.id, "retry_count": 0},
                     organization_id=failed.organization_id)
    return fresh.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Dispatch
# ═════════════════════════════════════════════════════════════════════════════


def _claim(reminder_id, worker_id, now) -> bool:
    lease = timedelta(seconds=current_app.config.get("SWEEP_LEASE_SECONDS", 120))
    result = db.session.execute(
        update(Reminder)
        .where(
            Reminder.id == reminder_id,
            Reminder.status == "pending",
            Reminder.scheduled_at <= now,
            or_(Reminder.locked_by.is_(None), Reminder.lease_expires_at < now),
        )
        .values(locked_by=worker_id, lease_expires_at=now + lease)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _reload(reminder_id) -> Reminder:
    return db.session.execute(
        select(Reminder).where(Reminder.id == reminder_id).execution_options(populate_existing=True)
    ).scalar_one()


def _skip_reason(reminder: Reminder, worker_id: str) -> str | None:
    """Why a claimed reminder must not be sent any more, or None."""
    if reminder.status != "pending" or reminder.locked_by != worker_id:
        return f"reminder is {reminder.status}"
    if reminder.request_id is not None:
        request = db.session.get(DataRequest, reminder.request_id)
        if request is None or request.is_closed:
            return f"request is {request.status if request else 'gone'}"
    if reminder.item_id is not None:
        item = db.session.get(RequestChecklistItem, reminder.item_id)
        if item is None:
            return "item is gone"
        if item.request_cycle != reminder.cycle:
            return f"item moved to cycle {item.request_cycle}"
        if item.status not in _AWAITING_SUBMISSION:
            return f"item is {item.status}"
    if reminder.occurrence_id is not None:
        occurrence = db.session.get(TaskOccurrence, reminder.occurrence_id)
        if occurrence is None or occurrence.status not in _RELEVANT_OCCURRENCE_STATUSES:
            return f"occurrence is {occurrence.status if occurrence else 'gone'}"
    return None


def _finish_attempt(attempt_id, outcome, now, *, error=None, receipt=None):
    db.session.execute(
        update(ReminderAttempt)
        .where(ReminderAttempt.id == attempt_id)
        .values(outcome=outcome, finished_at=now, error=error, provider_receipt_id=receipt)
        .execution_options(synchronize_session=False)
    )


def _send(reminder: Reminder) -> str:
    """Call the channel sender; anything other than DispatchFailure is wrapped as one."""
    user = db.session.get(User, reminder.recipient_id)
    if user is None or not user.is_active:
        raise DispatchFailure(reminder.channel, f"recipient {reminder.recipient_id} is not active")

    sender = get_sender(reminder.channel)
    metadata = {
        "reminder_id": reminder.id,
        "related_type": reminder.related_type,
        "related_id": reminder.related_id,
        "request_id": reminder.request_id,
        "cycle": reminder.cycle,
    }
    try:
        return sender.send(
            Recipient.from_user(user), reminder.message_subject, reminder.message_body or "",
            metadata, current_app.config.get("CHANNEL_SEND_TIMEOUT", 10),
        )
    except DispatchFailure:
        raise
    except Exception as exc:
        logger.exception("Sender for %s raised unexpectedly", reminder.channel,
                         extra={"organization_id": reminder.organization_id, "entity_type": "reminder",
                                "entity_id": reminder.id})
        raise DispatchFailure(reminder.channel, f"{type(exc).__name__}: {exc}"[:500]) from exc


def dispatch(reminder_id: int, now=None, *, worker_id=None, policy: BackoffPolicy | None = None) -> DispatchResult:
    """
    Claim, send and record one reminder.

    Commits in two steps: after the claim (with the in-flight attempt row) and
    after the outcome. Returns a skipped result when the reminder is not due,
    not pending, held by another worker's lease, or no longer relevant.
    """
    now = now or utcnow()
    worker_id = worker_id or default_worker_id()
    policy = policy or BackoffPolicy.from_config()
    log_extra = {"entity_type": "reminder", "entity_id": reminder_id, "worker_id": worker_id}

    # ── 1-2. Claim and write the attempt record ─────────────────────────
    try:
        if not _claim(reminder_id, worker_id, now):
            db.session.rollback()
            reminder = _get_reminder(reminder_id)
            return DispatchResult(reminder.id, "skipped", status=reminder.status,
                                  retry_count=reminder.retry_count,
                                  error="not due, not pending, or leased by another worker")
        reminder = _reload(reminder_id)
        attempt_number = (db.session.scalar(
            select(func.max(ReminderAttempt.attempt_number)).where(ReminderAttempt.reminder_id == reminder_id)
        ) or 0) + 1
        attempt = ReminderAttempt(reminder_id=reminder_id, attempt_number=attempt_number,
                                  worker_id=worker_id, outcome="in_flight", started_at=now)
        db.session.add(attempt)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_extra["organization_id"] = reminder.organization_id
    seen_retry_count = reminder.retry_count

    # ── 3. Late-cancellation and relevance check ────────────────────────
    reminder = _reload(reminder_id)
    reason = _skip_reason(reminder, worker_id)
    if reason is not None:
        _cancel_where(Reminder.id == reminder_id, Reminder.locked_by == worker_id, now=now)
        db.session.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.locked_by == worker_id)
            .values(locked_by=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        _finish_attempt(attempt.id, "skipped", now, error=reason)
        db.session.commit()
        reminder = _reload(reminder_id)
        logger.info("Reminder %s skipped: %s", reminder_id, reason, extra=log_extra)
        return DispatchResult(reminder_id, "skipped", status=reminder.status,
                              retry_count=reminder.retry_count, error=reason)

    # ── 4. Network call; no lock is held here ───────────────────────────
    receipt, failure = None, None
    try:
        receipt = _send(reminder)
    except DispatchFailure as exc:
        failure = exc

    # ── 5. Record the outcome ───────────────────────────────────────────
    try:
        if failure is None:
            result = _record_success(reminder_id, worker_id, receipt, attempt.id, now)
        else:
            result = _record_failure(reminder_id, worker_id, seen_retry_count, failure, attempt.id, now, policy)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if result.outcome == "sent":
        logger.info("Reminder %s sent via %s", reminder_id, reminder.channel, extra=log_extra)
    else:
        logger.warning("Reminder %s failed (%s/%s): %s", reminder_id, result.retry_count,
                       reminder.max_retries, result.error, extra=log_extra)
    return result


def _record_success(reminder_id, worker_id, receipt, attempt_id, now) -> DispatchResult:
    result = db.session.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id, Reminder.locked_by == worker_id, Reminder.status == "pending")
        .values(status="sent", sent_at=now, provider_receipt_id=receipt, last_error=None,
                locked_by=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )
    _finish_attempt(attempt_id, "sent", now, receipt=receipt)
    if result.rowcount != 1:
        logger.warning("Reminder %s delivered but changed while in flight", reminder_id,
                       extra={"entity_type": "reminder", "entity_id": reminder_id, "worker_id": worker_id})
    reminder = _reload(reminder_id)
    return DispatchResult(reminder_id, "sent", status=reminder.status, retry_count=reminder.retry_count,
                          receipt_id=receipt)


def _record_failure(reminder_id, worker_id, seen_retry_count, failure, attempt_id, now, policy) -> DispatchResult:
    reminder = _reload(reminder_id)
    failures = seen_retry_count + 1
    error = str(failure)[:1000]
    exhausted = failures >= reminder.max_retries
    values = {"retry_count": failures, "last_error": error, "locked_by": None, "lease_expires_at": None}
    next_attempt_at = None
    if exhausted:
        values["status"] = "failed"
    else:
        next_attempt_at = now + policy.delay(failures)
        values["scheduled_at"] = next_attempt_at

    result = db.session.execute(
        update(Reminder)
        .where(
            Reminder.id == reminder_id,
            Reminder.locked_by == worker_id,
            Reminder.status == "pending",
            Reminder.retry_count == seen_retry_count,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    _finish_attempt(attempt_id, "failed", now, error=error)

    escalated = False
    if result.rowcount == 1 and exhausted:
        escalated = _escalate_once(reminder_id, now)
    elif result.rowcount != 1:
        logger.warning("Reminder %s failed but changed while in flight", reminder_id,
                       extra={"entity_type": "reminder", "entity_id": reminder_id, "worker_id": worker_id})

    reminder = _reload(reminder_id)
    return DispatchResult(reminder_id, "failed", status=reminder.status, retry_count=reminder.retry_count,
                          error=error, next_attempt_at=next_attempt_at, escalated=escalated)


def _escalate_once(reminder_id, now) -> bool:
    result = db.session.execute(
        update(Reminder)
        .where(Reminder.id == reminder_id, Reminder.escalated_at.is_(None))
        .values(escalated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    reminder = _reload(reminder_id)
    events.reminder_escalated.send(
        __name__, reminder=reminder, organization_id=reminder.organization_id,
        retry_count=reminder.retry_count, last_error=reminder.last_error,
    )
    return True


def dispatch_due_reminders(organization_id: int, now=None, *, worker_id=None, limit=None) -> dict:
    """Sweep: dispatch every due pending reminder of one organization."""
    now = now or utcnow()
    worker_id = worker_id or default_worker_id()
    limit = limit or current_app.config.get("SWEEP_BATCH_SIZE", 100)
    policy = BackoffPolicy.from_config()

    due_ids = list(db.session.scalars(
        select(Reminder.id)
        .where(
            Reminder.organization_id == organization_id,
            Reminder.status == "pending",
            Reminder.scheduled_at <= now,
            or_(Reminder.locked_by.is_(None), Reminder.lease_expires_at < now),
        )
        .order_by(Reminder.scheduled_at, Reminder.id)
        .limit(limit)
    ))
    summary = {"due": len(due_ids), "sent": 0, "failed": 0, "skipped": 0, "escalated": 0}
    for reminder_id in due_ids:
        result = dispatch(reminder_id, now, worker_id=worker_id, policy=policy)
        summary[result.outcome] += 1
        summary["escalated"] += int(result.escalated)
    return summary


def top_up_pre_due_reminders(organization_id: int, now=None) -> int:
    """Sweep: schedule pre-due reminders missing on open requests (due date edits, late items)."""
    now = now or utcnow()
    requests = db.session.scalars(
        select(DataRequest).where(
            DataRequest.organization_id == organization_id,
            DataRequest.status.in_(("sent", "in_progress")),
            DataRequest.due_date.is_not(None),
            DataRequest.due_date >= now.date(),
        )
    ).all()
    created = 0
    for request in requests:
        created += len(schedule_pre_due_reminders(request, now=now))
    db.session.commit()
    return created


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_reminders(organization_id: int, actor, *, status=None, request_id=None, item_id=None):
    authorize(actor, "reminder_view", organization_id)
    stmt = select(Reminder).where(Reminder.organization_id == organization_id)
    if status:
        if status not in REMINDER_STATUSES:
            raise ValidationError(f"Invalid status '{status}'", details={"allowed": sorted(REMINDER_STATUSES)})
        stmt = stmt.where(Reminder.status == status)
    if request_id:
        stmt = stmt.where(Reminder.request_id == request_id)
    if item_id:
        stmt = stmt.where(Reminder.item_id == item_id)
    return list(db.session.scalars(stmt.order_by(Reminder.scheduled_at, Reminder.id)))


def get_reminder(reminder_id: int, actor) -> dict:
    reminder = _get_reminder(reminder_id)
    authorize(actor, "reminder_view", reminder.organization_id)
    data = reminder.to_dict()
    data["attempts"] = [a.to_dict() for a in reminder.attempts]
    data["lease_expires_at"] = as_utc(reminder.lease_expires_at).isoformat() if reminder.lease_expires_at else None
    return data


# ═════════════════════════════════════════════════════════════════════════════
# Event receivers
# ═════════════════════════════════════════════════════════════════════════════


@events.item_status_changed.connect
def _on_item_status_changed(sender, item, request, new_status, **_):
    if new_status in ("approved", "rejected"):
        cancel_reminders_for_item(item.id)
    elif new_status == "re_requested":
        now = utcnow()
        cancel_reminders_for_item(item.id, before_cycle=item.request_cycle, now=now)
        schedule_item_reminders(request, item, cycle=item.request_cycle, at=now)
        schedule_pre_due_reminders(request, now=now, items=[item])


@events.request_status_changed.connect
def _on_request_status_changed(sender, request, new_status, **_):
    if new_status in ("completed", "cancelled"):
        cancelled = cancel_reminders_for_request(request.id)
        if cancelled:
            logger.info("Cancelled %d reminders for %s", cancelled, request.request_number,
                        extra={"organization_id": request.organization_id, "entity_type": "request",
                               "entity_id": request.id})


@events.occurrence_generated.connect
def _on_occurrence_generated(sender, occurrence, now=None, **_):
    schedule_occurrence_reminders(occurrence, now=now)
