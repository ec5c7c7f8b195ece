"""
Collection Workflow Platform
Task domain models.

Models:
    - Task: one concrete unit of work, optionally recurring
    - TaskOccurrence: one scheduled instance of a recurring task

A recurring task carries its own copy of the schedule rule plus
``next_run_date``; the occurrence generator materialises a TaskOccurrence
when that date is reached and advances ``next_run_date``.
"""

from app.models import db
from app.models.base import TenantModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {"not_started", "in_progress", "waiting_on_client", "completed", "overdue", "cancelled"}
OCCURRENCE_STATUSES = {"pending", "in_progress", "completed", "overdue", "skipped"}

# Task status machine (action → allowed from-states, to-state)
TASK_TRANSITIONS = {
    "start": {"from": ["not_started", "overdue"], "to": "in_progress"},
    "wait_on_client": {"from": ["in_progress", "overdue"], "to": "waiting_on_client"},
    "resume": {"from": ["waiting_on_client"], "to": "in_progress"},
    "complete": {"from": ["in_progress", "waiting_on_client", "overdue"], "to": "completed"},
    "cancel": {"from": ["not_started", "in_progress", "waiting_on_client", "overdue"], "to": "cancelled"},
}

OCCURRENCE_TRANSITIONS = {
    "start": {"from": ["pending", "overdue"], "to": "in_progress"},
    "complete": {"from": ["pending", "in_progress", "overdue"], "to": "completed"},
    "skip": {"from": ["pending", "in_progress", "overdue"], "to": "skipped"},
}

OPEN_OCCURRENCE_STATUSES = ("pending", "in_progress")


class Task(TenantModel):
    """Concrete unit of work; owns the recurrence state when recurring."""

    __tablename__ = "tasks"
    __table_args__ = (
        db.CheckConstraint(
            "task_type = 'recurring' OR next_run_date IS NULL",
            name="ck_task_next_run_recurring_only",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("templates.id", ondelete="SET NULL"), nullable=True)
    template_version = db.Column(db.Integer, nullable=True,
                                 comment="Template.version this task was instantiated from")
    client_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    task_manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    task_type = db.Column(db.String(20), nullable=False, default="one_time")

    # Scheduler (recurring only)
    schedule_frequency = db.Column(db.String(20), nullable=True)
    schedule_day_rule = db.Column(db.String(100), nullable=True)
    schedule_start_date = db.Column(db.Date, nullable=True)
    schedule_end_date = db.Column(db.Date, nullable=True)
    next_run_date = db.Column(db.Date, nullable=True, index=True)
    sla_days = db.Column(db.Integer, default=7)
    pre_due_reminders = db.Column(db.JSON, default=list)

    priority = db.Column(db.String(10), default="medium")
    status = db.Column(db.String(20), nullable=False, default="not_started")
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    occurrences = db.relationship(
        "TaskOccurrence", back_populates="task", lazy="dynamic",
        cascade="all, delete-orphan", order_by="TaskOccurrence.occurrence_date",
    )

    @property
    def is_recurring(self):
        return self.task_type == "recurring"

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "client_id": self.client_id,
            "task_manager_id": self.task_manager_id,
            "name": self.name,
            "description": self.description,
            "task_type": self.task_type,
            "schedule_frequency": self.schedule_frequency,
            "schedule_day_rule": self.schedule_day_rule,
            "schedule_start_date": iso(self.schedule_start_date),
            "schedule_end_date": iso(self.schedule_end_date),
            "next_run_date": iso(self.next_run_date),
            "sla_days": self.sla_days,
            "pre_due_reminders": self.pre_due_reminders or [],
            "priority": self.priority,
            "status": self.status,
            "due_date": iso(self.due_date),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.name} [{self.status}]>"


class TaskOccurrence(TenantModel):
    """One scheduled instance of a recurring task; unique per (task, date)."""

    __tablename__ = "task_occurrences"
    __table_args__ = (
        db.UniqueConstraint("task_id", "occurrence_date", name="uq_occurrence_task_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    occurrence_date = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    skipped_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes = db.Column(db.Text)

    task = db.relationship("Task", back_populates="occurrences")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "occurrence_date": iso(self.occurrence_date),
            "due_date": iso(self.due_date),
            "status": self.status,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "skipped_by": self.skipped_by,
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<TaskOccurrence {self.task_id}@{self.occurrence_date} [{self.status}]>"
