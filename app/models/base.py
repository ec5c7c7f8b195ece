"""
TenantModel: Abstract base class for organization-scoped models.

All models that belong to an organization inherit from TenantModel
instead of db.Model directly. This adds:
  - organization_id FK column with index
  - query_for_org(organization_id) classmethod
  - created_at / updated_at timestamps
"""

from datetime import datetime, timezone

from sqlalchemy.orm import declared_attr

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def iso(value):
    """Serialise a date/datetime for ``to_dict`` payloads."""
    return value.isoformat() if value else None


class TenantModel(db.Model):
    """Abstract base for organization-scoped tables."""
    __abstract__ = True

    @declared_attr
    def organization_id(cls):
        return db.Column(
            db.Integer,
            db.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        )

    @declared_attr
    def created_at(cls):
        return db.Column(db.DateTime(timezone=True), default=_utcnow)

    @declared_attr
    def updated_at(cls):
        return db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @classmethod
    def query_for_org(cls, organization_id):
        """Return a query filtered by organization_id."""
        return cls.query.filter_by(organization_id=organization_id)
