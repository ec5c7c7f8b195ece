"""
Collection Workflow Platform
Data request domain models.

Models:
    - DataRequest: client-facing collection instance
    - RequestChecklistItem: one item to collect within a request

Both tables carry ``version_id`` as the SQLAlchemy ``version_id_col``:
every UPDATE is issued as ``... WHERE id = :id AND version_id = :seen``,
so two writers that read the same row cannot both succeed. The loser gets
``StaleDataError`` which services translate to ConcurrentModificationError.
"""

from app.models import db
from app.models.base import TenantModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_STATUSES = {"draft", "sent", "in_progress", "completed", "cancelled"}
CLOSED_REQUEST_STATUSES = {"completed", "cancelled"}
ITEM_STATUSES = {"not_received", "received", "under_review", "approved", "rejected", "re_requested"}

# Channel flag column → reminder channel
REQUEST_CHANNEL_FLAGS = {
    "enable_email": "email",
    "enable_whatsapp": "whatsapp",
    "enable_sms": "sms",
    "enable_voice": "voice",
}

# Checklist item lifecycle (action → allowed from-states, to-state).
# ``reset`` is internal: it follows every re_request immediately.
ITEM_TRANSITIONS = {
    "submit": {"from": ["not_received", "re_requested"], "to": "received"},
    "start_review": {"from": ["received"], "to": "under_review"},
    "approve": {"from": ["received", "under_review"], "to": "approved"},
    "reject": {"from": ["received", "under_review"], "to": "rejected"},
    "re_request": {"from": ["received", "under_review", "rejected"], "to": "re_requested"},
    "reset": {"from": ["re_requested"], "to": "not_received"},
}

CLIENT_ITEM_ACTIONS = {"submit"}
REVIEW_ITEM_ACTIONS = {"start_review", "approve", "reject", "re_request"}


class DataRequest(TenantModel):
    """Client-facing request; status is derived from its checklist items."""

    __tablename__ = "data_requests"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("templates.id", ondelete="SET NULL"), nullable=True)
    template_version = db.Column(db.Integer, nullable=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    occurrence_id = db.Column(
        db.Integer, db.ForeignKey("task_occurrences.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    client_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    request_number = db.Column(db.String(40), unique=True, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    due_date = db.Column(db.Date, nullable=True, index=True)
    priority = db.Column(db.String(10), default="medium")
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    # Communication channels
    enable_email = db.Column(db.Boolean, default=True)
    enable_whatsapp = db.Column(db.Boolean, default=False)
    enable_sms = db.Column(db.Boolean, default=False)
    enable_voice = db.Column(db.Boolean, default=False)
    pre_due_reminders = db.Column(db.JSON, nullable=True,
                                  comment="Day offsets; NULL falls back to REMINDER_PRE_DUE_OFFSETS")

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=True,
                                 comment="Touched by every item change to serialise concurrent writers")
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    items = db.relationship(
        "RequestChecklistItem",
        back_populates="request",
        order_by="RequestChecklistItem.sort_order",
        cascade="all, delete-orphan",
    )

    @property
    def enabled_channels(self):
        return [channel for flag, channel in REQUEST_CHANNEL_FLAGS.items() if getattr(self, flag)]

    @property
    def is_closed(self):
        return self.status in CLOSED_REQUEST_STATUSES

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "task_id": self.task_id,
            "occurrence_id": self.occurrence_id,
            "client_id": self.client_id,
            "request_number": self.request_number,
            "title": self.title,
            "description": self.description,
            "due_date": iso(self.due_date),
            "priority": self.priority,
            "status": self.status,
            "channels": self.enabled_channels,
            "sent_at": iso(self.sent_at),
            "completed_at": iso(self.completed_at),
            "cancelled_at": iso(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
            "version": self.version_id,
            "created_at": iso(self.created_at),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d

    def __repr__(self):
        return f"<DataRequest {self.request_number} [{self.status}]>"


class RequestChecklistItem(TenantModel):
    """One item to collect within a data request."""

    __tablename__ = "request_checklist_items"
    __table_args__ = (
        db.CheckConstraint(
            "status NOT IN ('approved', 'rejected') OR (reviewed_by IS NOT NULL AND reviewed_at IS NOT NULL)",
            name="ck_item_reviewed_fields",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.Integer, db.ForeignKey("data_requests.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    template_item_id = db.Column(
        db.Integer, db.ForeignKey("template_checklist_items.id", ondelete="SET NULL"), nullable=True,
    )
    dependency_item_id = db.Column(
        db.Integer, db.ForeignKey("request_checklist_items.id", ondelete="SET NULL"), nullable=True,
    )

    sort_order = db.Column(db.Integer, nullable=False, default=0)
    particular = db.Column(db.String(500), nullable=False)
    document_type = db.Column(db.String(30), nullable=False, default="other")
    is_mandatory = db.Column(db.Boolean, default=True)
    allow_multiple_uploads = db.Column(db.Boolean, default=False)

    status = db.Column(db.String(20), nullable=False, default="not_received")
    client_comments = db.Column(db.Text)
    internal_comments = db.Column(db.Text)
    instructions = db.Column(db.Text, comment="Client-facing guidance copied from the template item")

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    request_cycle = db.Column(db.Integer, nullable=False, default=0,
                              comment="Incremented on every re-request; scopes reminder cycles")

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    request = db.relationship("DataRequest", back_populates="items")

    def to_dict(self, *, include_internal=True):
        d = {
            "id": self.id,
            "request_id": self.request_id,
            "template_item_id": self.template_item_id,
            "dependency_item_id": self.dependency_item_id,
            "sort_order": self.sort_order,
            "particular": self.particular,
            "document_type": self.document_type,
            "is_mandatory": self.is_mandatory,
            "allow_multiple_uploads": self.allow_multiple_uploads,
            "status": self.status,
            "client_comments": self.client_comments,
            "instructions": self.instructions,
            "submitted_at": iso(self.submitted_at),
            "reviewed_at": iso(self.reviewed_at),
            "reviewed_by": self.reviewed_by,
            "request_cycle": self.request_cycle,
            "version": self.version_id,
        }
        if include_internal:
            d["internal_comments"] = self.internal_comments
        return d

    def __repr__(self):
        return f"<RequestChecklistItem {self.id}: {self.particular[:40]} [{self.status}]>"
