"""
Collection Workflow Platform
Actor resolution middleware.

Authentication itself happens upstream (gateway / identity provider); by the
time a request reaches this service it carries the authenticated user's id
in the ``X-User-Id`` header. This module resolves that id into an ``Actor``
and stores it on ``g.actor`` for the blueprints.

Security model:
    - every /api/v1/* endpoint needs a resolvable, active user
      (except /api/v1/health and its sub-routes)
    - what the actor may do is decided by ``app.services.authorization``
      inside the services, never here
    - state-changing requests must be JSON (lightweight CSRF mitigation)
"""

import logging

from flask import g, request

from app.core.roles import Actor
from app.models import db
from app.models.auth import User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"


def resolve_actor():
    """Return the Actor for the request's ``X-User-Id`` header, or None."""
    raw = request.headers.get(USER_HEADER, "").strip()
    if not raw.isdigit():
        return None
    user = db.session.get(User, int(raw))
    if user is None or not user.is_active:
        return None
    return Actor.from_user(user)


def current_actor() -> Actor:
    return g.actor


def _check_content_type():
    """POST/PUT/PATCH/DELETE with a body must be application/json."""
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return api_error(E.VALIDATION_INVALID, "Content-Type must be application/json", status=415)
    return None


def init_auth(app):
    """Install the actor-resolution hook for API routes."""

    @app.before_request
    def _before_request_actor():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path == "/api/v1/health" or request.path.startswith("/api/v1/health/"):
            return None
        if request.method == "OPTIONS":
            return None

        csrf_error = _check_content_type()
        if csrf_error:
            return csrf_error

        g.actor = resolve_actor()
        if g.actor is None:
            logger.info("Rejected request without a valid %s to %s", USER_HEADER, request.path)
            return api_error(E.UNAUTHENTICATED, f"Provide a valid {USER_HEADER} header")
        return None
