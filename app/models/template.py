"""
Collection Workflow Platform
Template domain models.

Models:
    - Template: reusable definition of a collection task (schedule + checklist)
    - TemplateChecklistItem: one document/data point a template asks for

Templates are versioned: every edit bumps ``version``. Tasks and requests
record the version they were instantiated from and keep their own copies of
schedule fields and checklist items, so an edit never reaches back into them.
"""

from app.models import db
from app.models.base import TenantModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

TASK_TYPES = {"one_time", "recurring"}
SCHEDULE_FREQUENCIES = {"daily", "weekly", "monthly", "quarterly", "yearly", "custom"}
PRIORITIES = {"low", "medium", "high"}
VISIBILITIES = {"internal_only", "client_facing"}
TEMPLATE_STATUSES = {"active", "inactive", "archived"}
DOCUMENT_TYPES = {
    "id_proof", "address_proof", "financial_statement", "agreement",
    "certificate", "tax_document", "compliance_document", "other",
}


class Template(TenantModel):
    """Reusable unit of work: what to collect and, for recurring work, when."""

    __tablename__ = "templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    task_type = db.Column(db.String(20), nullable=False, default="one_time",
                          comment="one_time | recurring")

    # Scheduler configuration (recurring only)
    schedule_frequency = db.Column(db.String(20), nullable=True,
                                   comment="daily | weekly | monthly | quarterly | yearly | custom")
    schedule_day_rule = db.Column(db.String(100), nullable=True,
                                  comment="e.g. '15th', 'last business day', 'monday'")
    schedule_start_date = db.Column(db.Date, nullable=True)
    schedule_end_date = db.Column(db.Date, nullable=True)
    pre_due_reminders = db.Column(db.JSON, default=list,
                                  comment="Day offsets before due_date, e.g. [3, 1]")

    task_manager_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    priority = db.Column(db.String(10), default="medium")
    default_sla_days = db.Column(db.Integer, default=7)
    visibility = db.Column(db.String(20), default="client_facing")
    status = db.Column(db.String(20), default="active")
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    checklist_items = db.relationship(
        "TemplateChecklistItem",
        back_populates="template",
        order_by="TemplateChecklistItem.sort_order",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "description": self.description,
            "task_type": self.task_type,
            "schedule_frequency": self.schedule_frequency,
            "schedule_day_rule": self.schedule_day_rule,
            "schedule_start_date": iso(self.schedule_start_date),
            "schedule_end_date": iso(self.schedule_end_date),
            "pre_due_reminders": self.pre_due_reminders or [],
            "task_manager_id": self.task_manager_id,
            "priority": self.priority,
            "default_sla_days": self.default_sla_days,
            "visibility": self.visibility,
            "status": self.status,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_items:
            d["checklist_items"] = [i.to_dict() for i in self.checklist_items]
        return d

    def __repr__(self):
        return f"<Template {self.id}: {self.name} v{self.version}>"


class TemplateChecklistItem(db.Model):
    """One item a template asks the client to provide."""

    __tablename__ = "template_checklist_items"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("templates.id", ondelete="CASCADE"),
                            nullable=False, index=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    particular = db.Column(db.String(500), nullable=False)
    document_type = db.Column(db.String(30), nullable=False, default="other")
    is_mandatory = db.Column(db.Boolean, default=True)
    allow_multiple_uploads = db.Column(db.Boolean, default=False)
    dependency_item_id = db.Column(
        db.Integer, db.ForeignKey("template_checklist_items.id", ondelete="SET NULL"), nullable=True,
    )
    instructions = db.Column(db.Text)

    template = db.relationship("Template", back_populates="checklist_items")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "sort_order": self.sort_order,
            "particular": self.particular,
            "document_type": self.document_type,
            "is_mandatory": self.is_mandatory,
            "allow_multiple_uploads": self.allow_multiple_uploads,
            "dependency_item_id": self.dependency_item_id,
            "instructions": self.instructions,
        }

    def __repr__(self):
        return f"<TemplateChecklistItem {self.id}: {self.particular[:40]}>"
