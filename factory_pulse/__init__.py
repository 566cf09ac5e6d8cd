"""
Factory Pulse Workflow Engine
Flask Application Factory.

Usage:
    from factory_pulse import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from factory_pulse.actor import init_actor_context
from factory_pulse.config import config
from factory_pulse.core.exceptions import (
    BackendFailure,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from factory_pulse.middleware.logging_config import configure_logging
from factory_pulse.middleware.rate_limiter import init_rate_limits
from factory_pulse.middleware.timing import init_request_timing
from factory_pulse.models import db
from factory_pulse.utils.errors import E, KIND_TO_CODE, api_error

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Actor context (sets g.actor from gateway headers) ────────────────
    init_actor_context(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    @app.before_request
    def _guard_request():
        from flask import abort
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Import all models so Alembic can detect them ─────────────────────
    from factory_pulse.models import project as _project_models            # noqa: F401
    from factory_pulse.models import stage_history as _stage_history_models  # noqa: F401
    from factory_pulse.models import collaborators as _collaborator_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ───────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Workflow engine ──────────────────────────────────────────────────
    from factory_pulse.services.engine import init_engine
    init_engine(app)

    # ── Blueprints ───────────────────────────────────────────────────────
    from factory_pulse.blueprints.health_bp import health_bp
    from factory_pulse.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(workflow_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("reconcile-projects")
    @click.option("--organization", "organizations", multiple=True,
                  help="Organization id to reconcile (repeatable). Defaults to subscribed ones.")
    def reconcile_projects_cmd(organizations):
        """Invalidate and refetch cached projects for the given organizations."""
        from factory_pulse.services.change_reconciler import run_inline
        from factory_pulse.services.engine import get_engine
        reconciler = get_engine().reconciler
        previous_runner = reconciler.runner
        reconciler.runner = run_inline
        try:
            outcome = reconciler.poll(list(organizations) or None)
        finally:
            reconciler.runner = previous_runner
        for org, fired in outcome.items():
            click.echo(f"{org}: {'refreshed' if fired else 'skipped (debounced)'}")
        logger.info("reconcile-projects finished for %d organization(s)", len(outcome))

    @app.cli.command("list-stages")
    def list_stages_cmd():
        """Print the workflow stage graph."""
        from factory_pulse.services.engine import get_engine
        for stage in get_engine().graph:
            nxt = ", ".join(sorted(stage.allowed_next_stage_ids)) or "-"
            click.echo(f"{stage.order:>2}  {stage.id:<22} → {nxt}")

    # ── Health check (liveness; readiness lives at /health/ready) ──────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Factory Pulse Workflow Engine"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        logger.info("Not found: %s", error)
        return api_error(E.NOT_FOUND, f"{error.resource} not found")

    @app.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        code = KIND_TO_CODE.get(getattr(error, "kind", None), E.VALIDATION_INVALID)
        return api_error(code, str(error), details=error.details or None)

    @app.errorhandler(PermissionDenied)
    def _handle_forbidden(error: PermissionDenied):
        code = KIND_TO_CODE.get(getattr(error, "kind", None), E.FORBIDDEN)
        return api_error(code, str(error))

    @app.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @app.errorhandler(BackendFailure)
    def _handle_backend(error: BackendFailure):
        logger.error("Backend failure: %s", error)
        return api_error(E.BACKEND_FAILURE, "Data store unavailable",
                         details={"code": error.code, "operation": error.operation})

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(415)
    def unsupported_media_type(e):
        return {"error": e.description}, 415

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
