"""
Collection Workflow Platform
Approval domain model.

Models:
    - Approval: maker-checker record gating one document, item, request or task

Pending approvals have action, reviewer_id and reviewed_at all NULL. A
decision sets the three together through one conditional UPDATE
(``WHERE action IS NULL``), so at most one reviewer ever wins.
"""

from app.models import db
from app.models.base import TenantModel, iso

# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_TYPES = {"document", "request_item", "request", "task"}
APPROVAL_ACTIONS = {"approved", "rejected", "re_request", "withdrawn"}
DECISION_ACTIONS = {"approved", "rejected", "re_request"}


class Approval(TenantModel):
    """Maker-checker gate; one row per submission."""

    __tablename__ = "approvals"
    __table_args__ = (
        db.CheckConstraint(
            "(action IS NULL AND reviewer_id IS NULL AND reviewed_at IS NULL)"
            " OR (action IS NOT NULL AND reviewer_id IS NOT NULL AND reviewed_at IS NOT NULL)",
            name="ck_approval_decision_fields",
        ),
        db.Index("idx_approval_related", "approval_type", "related_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_type = db.Column(db.String(20), nullable=False,
                              comment="document | request_item | request | task")
    related_id = db.Column(db.Integer, nullable=False)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False)
    reviewer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    action = db.Column(db.String(20), nullable=True, comment="approved | rejected | re_request | withdrawn; NULL = pending")
    remarks = db.Column(db.Text)

    @property
    def is_pending(self):
        return self.action is None

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "approval_type": self.approval_type,
            "related_id": self.related_id,
            "submitted_by": self.submitted_by,
            "submitted_at": iso(self.submitted_at),
            "reviewer_id": self.reviewer_id,
            "reviewed_at": iso(self.reviewed_at),
            "action": self.action,
            "remarks": self.remarks,
            "status": "pending" if self.is_pending else self.action,
        }

    def __repr__(self):
        return f"<Approval {self.id} {self.approval_type}:{self.related_id} [{self.action or 'pending'}]>"
