"""Shared utility functions for services and blueprints.

utcnow / as_utc:     timezone-aware clock and SQLite naive-datetime coercion
parse_date:          lenient date parsing for request payloads
atomic:              service-level unit of work (commit / rollback / stale-row mapping)
db_commit_or_error:  blueprint commit helper with HTTP error mapping
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from flask import jsonify
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConcurrentModificationError
from app.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def today_utc() -> date:
    return utcnow().date()


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value):
    """Parse an ISO datetime string; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except (ValueError, TypeError):
        return None


# ── Unit of work ─────────────────────────────────────────────────────────────

@contextmanager
def atomic(entity_type: str = "entity", entity_id=None):
    """Run a block as one transaction.

    Commits on success and rolls back on any error. A lost optimistic-lock
    race (``StaleDataError`` from a ``version_id_col`` mismatch) is re-raised
    as ConcurrentModificationError so callers see the workflow taxonomy.

    Usage::

        with atomic("request", request_id):
            request = _get_request(...)
            request.status = "cancelled"
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.info("Optimistic lock conflict on %s %s", entity_type, entity_id)
        raise ConcurrentModificationError(entity_type, entity_id) from exc
    except Exception:
        db.session.rollback()
        raise


# ── Database commit helper ───────────────────────────────────────────────────

def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure: ready for ``return``.

    Usage::

        err = db_commit_or_error()
        if err:
            return err

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": {
            "code": "ERR_CONFLICT_DUPLICATE",
            "message": "Duplicate or constraint violation",
            "retryable": False,
            "details": {},
        }}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": {
            "code": "ERR_DATABASE",
            "message": "Database error",
            "retryable": True,
            "details": {},
        }}), 500
