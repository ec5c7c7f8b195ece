"""
Verification results from the external AI producer.

The core stores what the producer reports and reads back only
``match_status``; it never computes a match itself.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.request import RequestChecklistItem
from app.models.verification import MATCH_STATUSES, VerificationResult
from app.services.authorization import authorize
from app.utils.helpers import atomic

logger = logging.getLogger(__name__)


def record_result(item_id: int, actor, *, match_status, document_ref=None, field_name=None,
                  expected_value=None, actual_value=None, confidence_score=None,
                  flagged_issues=None) -> dict:
    """Store one producer result for a checklist item."""
    if match_status not in MATCH_STATUSES:
        raise ValidationError(f"Invalid match_status '{match_status}'",
                              details={"allowed": sorted(MATCH_STATUSES)})
    if confidence_score is not None and not 0 <= float(confidence_score) <= 1:
        raise ValidationError("confidence_score must be between 0 and 1")

    with atomic("verification", item_id):
        item = db.session.get(RequestChecklistItem, item_id)
        if item is None:
            raise NotFoundError(resource="RequestChecklistItem", resource_id=item_id)
        authorize(actor, "verification_record", item.organization_id)
        result = VerificationResult(
            organization_id=item.organization_id,
            item_id=item.id,
            document_ref=document_ref,
            field_name=field_name,
            expected_value=expected_value,
            actual_value=actual_value,
            match_status=match_status,
            confidence_score=confidence_score,
            flagged_issues=list(flagged_issues or []),
        )
        db.session.add(result)
        db.session.flush()

        if match_status == "match" and item.status == "received" and not item.request.is_closed:
            from app.services.checklist_lifecycle import short_circuit_review

            short_circuit_review(item, None)

    logger.info("Verification for item %s: %s", item_id, match_status,
                extra={"organization_id": result.organization_id, "entity_type": "request_item",
                       "entity_id": item_id, "event_type": "ai.verification"})
    return result.to_dict()


def latest_match_status(item_id: int) -> str | None:
    return db.session.scalar(
        select(VerificationResult.match_status)
        .where(VerificationResult.item_id == item_id)
        .order_by(VerificationResult.created_at.desc(), VerificationResult.id.desc())
        .limit(1)
    )


def results_for_item(item_id: int, actor) -> list[dict]:
    item = db.session.get(RequestChecklistItem, item_id)
    if item is None:
        raise NotFoundError(resource="RequestChecklistItem", resource_id=item_id)
    authorize(actor, "request_view", item.organization_id)
    rows = db.session.scalars(
        select(VerificationResult).where(VerificationResult.item_id == item_id).order_by(VerificationResult.id)
    )
    return [r.to_dict() for r in rows]
