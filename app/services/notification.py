"""
Collection Workflow Platform
Notification Service.

Central service for creating in-app notifications. Used by the in-app
channel sender, the escalation consumer and the overdue sweeps.

All writes only ``flush``: notifications are created inside the caller's
transaction and committed with it.
"""

from sqlalchemy import select

from app.models import db
from app.models.auth import User
from app.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, organization_id, user_id, title, message="", category="system",
               severity="info", entity_type="", entity_id=None, dedup_key=None):
        """
        Create a single notification record.

        With ``dedup_key`` set, an existing notification carrying the same
        key is returned instead of writing a second one.
        """
        if dedup_key:
            existing = Notification.query.filter_by(dedup_key=dedup_key).first()
            if existing is not None:
                return existing

        notif = Notification(
            organization_id=organization_id,
            user_id=user_id,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            dedup_key=dedup_key,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    @staticmethod
    def broadcast(*, organization_id, user_ids, title, message="", category="system",
                  severity="info", entity_type="", entity_id=None, dedup_prefix=None):
        """
        Notify several users of the same event.

        ``dedup_prefix`` is combined with each user id to form per-recipient
        dedup keys.

        Returns:
            List of Notification instances (new or pre-existing).
        """
        notifications = []
        for uid in user_ids:
            notifications.append(NotificationService.create(
                organization_id=organization_id,
                user_id=uid,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
                dedup_key=f"{dedup_prefix}-u{uid}"[:64] if dedup_prefix else None,
            ))
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def manager_ids(organization_id):
        """Active admin/manager users of an organization."""
        return list(db.session.scalars(
            select(User.id).where(
                User.organization_id == organization_id,
                User.role.in_(("admin", "manager")),
                User.is_active.is_(True),
            ).order_by(User.id)
        ))

    @staticmethod
    def list_for_user(user_id, *, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc(), Notification.id.desc()).offset(offset).limit(limit).all()
        return items, total
