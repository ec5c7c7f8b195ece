"""
Collection Workflow Platform
AI verification result model.

Models:
    - VerificationResult: output of the external document verification producer

The core stores these rows as produced and only ever reads ``match_status``.
"""

from app.models import db
from app.models.base import TenantModel, iso

MATCH_STATUSES = {"match", "mismatch", "missing", "partial"}


class VerificationResult(TenantModel):
    __tablename__ = "verification_results"

    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey("request_checklist_items.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    document_ref = db.Column(db.String(300), nullable=True, comment="Opaque reference into file storage")
    field_name = db.Column(db.String(100))
    expected_value = db.Column(db.Text)
    actual_value = db.Column(db.Text)
    match_status = db.Column(db.String(20), nullable=False)
    confidence_score = db.Column(db.Float, nullable=True)
    flagged_issues = db.Column(db.JSON, default=list)

    def to_dict(self):
        return {
            "id": self.id,
            "item_id": self.item_id,
            "document_ref": self.document_ref,
            "field_name": self.field_name,
            "expected_value": self.expected_value,
            "actual_value": self.actual_value,
            "match_status": self.match_status,
            "confidence_score": self.confidence_score,
            "flagged_issues": self.flagged_issues or [],
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<VerificationResult item={self.item_id} [{self.match_status}]>"
