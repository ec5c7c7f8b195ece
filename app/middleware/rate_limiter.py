"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter instance
is created in app/__init__.py with no default limits; this module applies
granular limits per route category, keyed by organization when an actor is
resolved and by remote address otherwise.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

WRITE_LIMIT = "120/minute"
READ_LIMIT = "300/minute"
JOB_LIMIT = "30/minute"


def organization_rate_limit_key():
    """Dynamic rate limit key: organization if an actor is resolved, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None and actor.organization_id is not None:
        return f"org:{actor.organization_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per organization):
        - Workflow mutations:  120/minute
        - Approvals / reads:   300/minute
        - Notifications / jobs: 30/minute (POST)
        - Health check:        exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("template_bp", "task_bp", "request_bp", "reminder_bp", "verification_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT, key_func=organization_rate_limit_key)(bp)

    bp = app.blueprints.get("approval_bp")
    if bp:
        limiter.limit(READ_LIMIT, key_func=organization_rate_limit_key)(bp)

    bp = app.blueprints.get("notification_bp")
    if bp:
        limiter.limit(JOB_LIMIT, key_func=organization_rate_limit_key,
                      methods=["POST"])(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured: write %s, approvals %s, jobs %s",
                    WRITE_LIMIT, READ_LIMIT, JOB_LIMIT)
