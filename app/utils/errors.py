"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Request not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")

Service exceptions never need a per-route try/except: ``register_error_handlers``
maps every type in ``app.core.exceptions`` to the same envelope::

    {"error": {"code": "...", "message": "...", "retryable": false, "details": {}}}
"""

from __future__ import annotations

import logging

from flask import jsonify

from app.core.exceptions import (
    AlreadyReviewedError,
    ConcurrentModificationError,
    ConflictError,
    DispatchFailure,
    InvalidScheduleError,
    InvalidTransitionError,
    MissingRemarksError,
    NotFoundError,
    PermissionDenied,
    RequestClosedError,
    ValidationError,
    WorkflowError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Codes are part of the API contract: clients branch on them, and
    ``retryable`` tells an automated caller whether a blind retry is safe.
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Permissions – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Workflow taxonomy
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    INVALID_SCHEDULE = "ERR_INVALID_SCHEDULE"
    REQUEST_CLOSED = "ERR_REQUEST_CLOSED"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"
    DISPATCH_FAILED = "ERR_DISPATCH_FAILED"
    ALREADY_REVIEWED = "ERR_ALREADY_REVIEWED"
    MISSING_REMARKS = "ERR_MISSING_REMARKS"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.INVALID_TRANSITION: 409,
    E.INVALID_SCHEDULE: 422,
    E.REQUEST_CLOSED: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.DISPATCH_FAILED: 502,
    E.ALREADY_REVIEWED: 409,
    E.MISSING_REMARKS: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}

_RETRYABLE = {E.CONCURRENT_MODIFICATION, E.DISPATCH_FAILED, E.DATABASE}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (entity ids, current status, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body = {
        "error": {
            "code": code,
            "message": message,
            "retryable": code in _RETRYABLE,
            "details": details or {},
        }
    }
    return jsonify(body), http_status


def _from_exception(exc):
    return api_error(exc.code, str(exc), details=getattr(exc, "details", None))


def register_error_handlers(app):
    """Map the exception hierarchy to JSON error envelopes."""

    @app.errorhandler(NotFoundError)
    def _not_found(exc):
        return api_error(E.NOT_FOUND, str(exc), details={"resource": exc.resource})

    @app.errorhandler(ValidationError)
    def _validation(exc):
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)

    @app.errorhandler(ConflictError)
    def _conflict(exc):
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})

    for exc_type in (
        InvalidTransitionError,
        InvalidScheduleError,
        RequestClosedError,
        ConcurrentModificationError,
        DispatchFailure,
        AlreadyReviewedError,
        MissingRemarksError,
        PermissionDenied,
        WorkflowError,
    ):
        app.register_error_handler(exc_type, _from_exception)

    @app.errorhandler(404)
    def _route_not_found(_exc):
        return api_error(E.NOT_FOUND, "Resource not found")

    @app.errorhandler(405)
    def _method_not_allowed(_exc):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(500)
    def _internal(exc):
        logger.error("Unhandled server error: %s", exc)
        return api_error(E.INTERNAL, "Internal server error")
