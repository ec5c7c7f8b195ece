"""
Audit sink adapter.

``record_audit`` is fire-and-forget from the caller's point of view: the row
is written inside a savepoint, and any failure is logged and discarded so it
can never roll back the transition being audited.
"""

import logging

from app.models import db
from app.models.audit import write_audit

logger = logging.getLogger(__name__)


def record_audit(
    entity_type: str,
    entity_id,
    action: str,
    performed_by: int | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    organization_id: int | None = None,
):
    """Append an audit row; returns it, or None when the sink failed."""
    # Pending entity changes flush here, outside the guarded block
    db.session.flush()
    try:
        with db.session.begin_nested():
            return write_audit(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                performed_by=performed_by,
                organization_id=organization_id,
                old_values=old_values,
                new_values=new_values,
            )
    except Exception:
        logger.warning(
            "Audit write failed for %s", action,
            exc_info=True,
            extra={"organization_id": organization_id, "entity_type": entity_type, "entity_id": entity_id},
        )
        return None
