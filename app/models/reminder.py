"""
Collection Workflow Platform
Reminder domain models.

Models:
    - Reminder: one scheduled or dispatched follow-up on one channel
    - ReminderAttempt: append-only record of every dispatch attempt

A sweep worker claims a due reminder by writing ``locked_by`` and
``lease_expires_at`` with a conditional UPDATE. The matching ReminderAttempt
row (outcome ``in_flight``) is committed before the channel call, so the lease
is the only thing held while the sender is on the network.
"""

from app.models import db
from app.models.base import TenantModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

REMINDER_TYPES = {"task", "request", "document_expiry", "custom"}
REMINDER_CHANNELS = {"email", "whatsapp", "sms", "voice", "in_app"}
REMINDER_STATUSES = {"pending", "sent", "failed", "cancelled"}
ATTEMPT_OUTCOMES = {"in_flight", "sent", "failed", "skipped"}

DEFAULT_MAX_RETRIES = 3


class Reminder(TenantModel):
    """One follow-up message on one channel to one recipient."""

    __tablename__ = "reminders"
    __table_args__ = (
        db.CheckConstraint("retry_count <= max_retries", name="ck_reminder_retry_bound"),
        db.CheckConstraint("max_retries >= 1", name="ck_reminder_max_retries_positive"),
        db.Index("idx_reminder_due", "status", "scheduled_at"),
        db.Index("idx_reminder_item_cycle", "item_id", "cycle"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reminder_type = db.Column(db.String(20), nullable=False, default="request",
                              comment="task | request | document_expiry | custom")

    # Polymorphic owner plus typed shortcuts for the common cases
    related_type = db.Column(db.String(30), nullable=True, comment="request_item | request | occurrence")
    related_id = db.Column(db.Integer, nullable=True)
    request_id = db.Column(db.Integer, db.ForeignKey("data_requests.id", ondelete="CASCADE"),
                           nullable=True, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("request_checklist_items.id", ondelete="CASCADE"),
                        nullable=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True)
    occurrence_id = db.Column(db.Integer, db.ForeignKey("task_occurrences.id", ondelete="CASCADE"),
                              nullable=True, index=True)

    recipient_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    channel = db.Column(db.String(20), nullable=False, default="email")
    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=DEFAULT_MAX_RETRIES)

    message_subject = db.Column(db.String(300))
    message_body = db.Column(db.Text, nullable=False, default="")

    cycle = db.Column(db.Integer, nullable=False, default=0,
                      comment="Item request_cycle this reminder belongs to")
    offset_days = db.Column(db.Integer, nullable=True,
                            comment="NULL for send-time reminders; N for due_date - N days")
    last_error = db.Column(db.Text)
    provider_receipt_id = db.Column(db.String(200))

    # Sweep lease
    locked_by = db.Column(db.String(100), nullable=True)
    lease_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    attempts = db.relationship(
        "ReminderAttempt", back_populates="reminder", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ReminderAttempt.attempt_number",
    )

    @property
    def is_exhausted(self):
        return self.status == "failed" and self.retry_count >= self.max_retries

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "reminder_type": self.reminder_type,
            "related_type": self.related_type,
            "related_id": self.related_id,
            "request_id": self.request_id,
            "item_id": self.item_id,
            "task_id": self.task_id,
            "occurrence_id": self.occurrence_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel,
            "scheduled_at": iso(self.scheduled_at),
            "sent_at": iso(self.sent_at),
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "message_subject": self.message_subject,
            "cycle": self.cycle,
            "offset_days": self.offset_days,
            "last_error": self.last_error,
            "provider_receipt_id": self.provider_receipt_id,
            "escalated_at": iso(self.escalated_at),
        }

    def __repr__(self):
        return f"<Reminder {self.id} {self.channel} [{self.status} {self.retry_count}/{self.max_retries}]>"


class ReminderAttempt(db.Model):
    """Append-only dispatch attempt; written before the network call."""

    __tablename__ = "reminder_attempts"
    __table_args__ = (
        db.UniqueConstraint("reminder_id", "attempt_number", name="uq_attempt_reminder_number"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reminder_id = db.Column(db.Integer, db.ForeignKey("reminders.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    attempt_number = db.Column(db.Integer, nullable=False)
    worker_id = db.Column(db.String(100), nullable=True)
    outcome = db.Column(db.String(20), nullable=False, default="in_flight")
    error = db.Column(db.Text)
    provider_receipt_id = db.Column(db.String(200))
    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    reminder = db.relationship("Reminder", back_populates="attempts")

    def to_dict(self):
        return {
            "id": self.id,
            "reminder_id": self.reminder_id,
            "attempt_number": self.attempt_number,
            "worker_id": self.worker_id,
            "outcome": self.outcome,
            "error": self.error,
            "provider_receipt_id": self.provider_receipt_id,
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
        }

    def __repr__(self):
        return f"<ReminderAttempt {self.reminder_id}#{self.attempt_number} [{self.outcome}]>"
