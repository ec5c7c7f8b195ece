"""Client directory: one idempotent ``create_client`` per (organization, email)."""

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, ValidationError
from app.models import db
from app.models.auth import User
from app.services.audit import record_audit
from app.services.authorization import authorize
from app.utils.helpers import atomic

logger = logging.getLogger(__name__)


def _find(organization_id, email):
    return db.session.scalar(
        select(User).where(User.organization_id == organization_id, func.lower(User.email) == email)
    )


def create_client(organization_id: int, actor, *, email: str, full_name: str | None = None,
                  phone: str | None = None) -> tuple[dict, bool]:
    """
    Return the client user for ``email`` in the organization, creating it if needed.

    Returns:
        (user dict, created flag)

    Raises:
        ConflictError: the email belongs to a staff user of the organization.
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required", details={"email": email})

    with atomic("client"):
        authorize(actor, "client_manage", organization_id)
        existing = _find(organization_id, email)
        if existing is None:
            try:
                with db.session.begin_nested():
                    existing = User(organization_id=organization_id, email=email, full_name=full_name,
                                    phone=phone, role="client", is_active=True)
                    db.session.add(existing)
                    db.session.flush()
                created = True
            except IntegrityError:
                # A concurrent create for the same email won the unique constraint
                existing = _find(organization_id, email)
                created = False
            if created:
                record_audit("user", existing.id, "client.create", performed_by=actor.user_id,
                             new_values={"email": email, "full_name": full_name},
                             organization_id=organization_id)
        else:
            created = False

        if existing.role != "client":
            raise ConflictError("User", "email", email)
        if not created:
            if full_name and not existing.full_name:
                existing.full_name = full_name
            if phone and not existing.phone:
                existing.phone = phone
    if created:
        logger.info("Client %s created", existing.id,
                    extra={"organization_id": organization_id, "entity_type": "user", "entity_id": existing.id})
    return existing.to_dict(), created


def list_clients(organization_id: int, actor):
    authorize(actor, "request_create", organization_id)
    return list(db.session.scalars(
        select(User).where(User.organization_id == organization_id, User.role == "client").order_by(User.email)
    ))
