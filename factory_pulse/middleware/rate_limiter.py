"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in factory_pulse/__init__.py with no default
limits; this module applies granular limits per route category, keyed by
organization when the actor context is known.

Usage:
    from factory_pulse.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)


def organization_rate_limit_key():
    """Rate limit key: organization if the actor is known, else remote IP."""
    actor = getattr(g, "actor", None)
    if actor is not None and actor.organization_id:
        return f"org:{actor.organization_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Workflow writes (POST): TRANSITION_RATE_LIMIT (default 60/minute)
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    workflow_limit = app.config.get("TRANSITION_RATE_LIMIT", "60/minute")
    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(workflow_limit, key_func=organization_rate_limit_key, methods=["POST"])(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — workflow: %s", workflow_limit)
