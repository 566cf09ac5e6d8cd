"""
Workflow blueprint — stage graph, transitions, project cache, stage history.

Endpoint groups:
  Stage graph          GET  /api/v1/workflow/stages
  Project (cached)     GET  /api/v1/projects/<id>
                       POST /api/v1/projects/<id>/cache/invalidate
  Transitions          GET  /api/v1/projects/<id>/transitions
                       POST /api/v1/projects/<id>/transitions/validate
                       POST /api/v1/projects/<id>/transitions
                       GET  /api/v1/projects/<id>/transitions/recommendations
  Auto-advance         GET/POST /api/v1/projects/<id>/auto-advance
  Stage history        GET  /api/v1/projects/<id>/stage-history
  Analytics            GET  /api/v1/organizations/<org>/stage-transitions/stats
                       GET  /api/v1/organizations/<org>/stage-transitions/recent
  Change ingress       POST /api/v1/organizations/<org>/changes

Every endpoint except the change ingress needs an actor (X-Actor-Id,
X-Organization-Id). Projects of another organization answer 404.
"""

from __future__ import annotations

import logging

from flask import Blueprint, g, jsonify, request

from factory_pulse.core.exceptions import NotFoundError
from factory_pulse.services.engine import get_engine
from factory_pulse.services.prerequisites import list_rules
from factory_pulse.services.transition_coordinator import TransitionOptions
from factory_pulse.utils.errors import E, KIND_TO_CODE, api_error
from factory_pulse.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _actor_required():
    """Resolve the actor and keep the reconciler watching their organization."""
    actor = getattr(g, "actor", None)
    if actor is None:
        return None, api_error(E.FORBIDDEN, "X-Actor-Id and X-Organization-Id headers are required",
                               status=401)
    get_engine().watch_organization(actor.organization_id)
    return actor, None


def _scoped_project(project_id, actor):
    """Read a project and enforce the actor's organization scope."""
    snapshot = get_engine().store.read_project(project_id)
    if snapshot.organization_id != actor.organization_id:
        raise NotFoundError(resource="Project", resource_id=project_id,
                            organization_id=actor.organization_id)
    return snapshot


def _scoped_organization(organization_id, actor):
    if organization_id != actor.organization_id:
        raise NotFoundError(resource="Organization", resource_id=organization_id,
                            organization_id=actor.organization_id)


def _target_stage_id(data: dict):
    target = (data.get("target_stage_id") or "").strip()
    if not target:
        return None, api_error(E.VALIDATION_REQUIRED, "target_stage_id is required")
    return target, None


def _failure_response(result):
    code = KIND_TO_CODE.get(result.error_kind, E.INTERNAL)
    message = result.errors[0] if len(result.errors) == 1 else (
        f"Transition failed: {result.error_kind}"
    )
    details = {
        "error_kind": result.error_kind,
        "errors": result.errors,
        "mutation_committed": result.mutation_committed,
        "ledger_recorded": result.ledger_recorded,
    }
    if result.prerequisites is not None:
        details["prerequisites"] = result.prerequisites.to_dict()
    return api_error(code, message, details=details)


# ═════════════════════════════════════════════════════════════════════════
# Stage graph
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow/stages", methods=["GET"])
def list_stages():
    """Stage definitions, entry stages and the registered prerequisite rules."""
    payload = get_engine().graph.to_dict()
    payload["rules"] = list_rules()
    return jsonify(payload), 200


# ═════════════════════════════════════════════════════════════════════════
# Project read cache
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    """Read-through cached project, plus any pending optimistic overlay."""
    actor, err = _actor_required()
    if err:
        return err
    engine = get_engine()
    was_cached = engine.cache.is_valid(project_id)
    data = engine.cache.fetch(project_id)
    if data["organization_id"] != actor.organization_id:
        raise NotFoundError(resource="Project", resource_id=project_id,
                            organization_id=actor.organization_id)
    return jsonify({
        "project": data,
        "provisional": engine.cache.get_provisional(project_id),
        "cache": {"hit": was_cached},
        "transition_phase": engine.coordinator.current_phase(project_id).value,
    }), 200


@workflow_bp.route("/projects/<project_id>/cache/invalidate", methods=["POST"])
def invalidate_project_cache(project_id):
    actor, err = _actor_required()
    if err:
        return err
    _scoped_project(project_id, actor)
    invalidated = get_engine().cache.invalidate(project_id)
    return jsonify({"project_id": project_id, "invalidated": invalidated}), 200


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>/transitions", methods=["GET"])
def available_transitions(project_id):
    actor, err = _actor_required()
    if err:
        return err
    snapshot = _scoped_project(project_id, actor)
    transitions = get_engine().coordinator.get_available_transitions(snapshot)
    return jsonify({
        "project_id": project_id,
        "current_stage_id": snapshot.current_stage_id,
        "transitions": transitions,
    }), 200


@workflow_bp.route("/projects/<project_id>/transitions/validate", methods=["POST"])
def validate_transition(project_id):
    """Dry-run: structural check + prerequisites. Never mutates.

    Body: { target_stage_id }
    """
    actor, err = _actor_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    target, err = _target_stage_id(data)
    if err:
        return err
    snapshot = _scoped_project(project_id, actor)
    result = get_engine().coordinator.validate_transition(snapshot, target)
    payload = result.to_dict()
    payload["can_transition"] = result.is_valid
    return jsonify(payload), 200


@workflow_bp.route("/projects/<project_id>/transitions", methods=["POST"])
def execute_transition(project_id):
    """Move a project to another stage.

    Body: {
        target_stage_id, reason?, estimated_duration?,
        bypass_validation?, bypass_reason?
    }
    Returns: TransitionResult (200) or a taxonomy error.
    """
    actor, err = _actor_required()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    target, err = _target_stage_id(data)
    if err:
        return err
    options = TransitionOptions.from_dict(data)

    result = get_engine().coordinator.execute_transition(project_id, target, options, actor)
    if not result:
        return _failure_response(result)
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/projects/<project_id>/transitions/recommendations", methods=["GET"])
def transition_recommendations(project_id):
    actor, err = _actor_required()
    if err:
        return err
    target = (request.args.get("target_stage_id") or "").strip()
    if not target:
        return api_error(E.VALIDATION_REQUIRED, "target_stage_id query parameter is required")
    snapshot = _scoped_project(project_id, actor)
    return jsonify(get_engine().coordinator.get_transition_recommendations(snapshot, target)), 200


# ═════════════════════════════════════════════════════════════════════════
# Auto-advance
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>/auto-advance", methods=["GET"])
def check_auto_advance(project_id):
    actor, err = _actor_required()
    if err:
        return err
    snapshot = _scoped_project(project_id, actor)
    return jsonify(get_engine().coordinator.check_auto_advance(snapshot)), 200


@workflow_bp.route("/projects/<project_id>/auto-advance", methods=["POST"])
def apply_auto_advance(project_id):
    actor, err = _actor_required()
    if err:
        return err
    snapshot = _scoped_project(project_id, actor)
    result = get_engine().coordinator.auto_advance(snapshot, actor)
    if result is None:
        return jsonify({"advanced": False,
                        "check": get_engine().coordinator.check_auto_advance(snapshot)}), 200
    if not result:
        return _failure_response(result)
    return jsonify({"advanced": True, "result": result.to_dict()}), 200


# ═════════════════════════════════════════════════════════════════════════
# Stage history & analytics
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>/stage-history", methods=["GET"])
def stage_history(project_id):
    actor, err = _actor_required()
    if err:
        return err
    _scoped_project(project_id, actor)
    history = get_engine().ledger.get_history_with_durations(project_id)
    return jsonify({"project_id": project_id, "history": history, "total": len(history)}), 200


@workflow_bp.route("/organizations/<organization_id>/stage-transitions/stats", methods=["GET"])
def transition_stats(organization_id):
    """Query params: date_from?, date_to? (ISO datetimes)"""
    actor, err = _actor_required()
    if err:
        return err
    _scoped_organization(organization_id, actor)
    date_from = parse_datetime(request.args.get("date_from"))
    date_to = parse_datetime(request.args.get("date_to"))
    if request.args.get("date_from") and date_from is None:
        return api_error(E.VALIDATION_INVALID, "date_from must be an ISO datetime")
    if request.args.get("date_to") and date_to is None:
        return api_error(E.VALIDATION_INVALID, "date_to must be an ISO datetime")
    stats = get_engine().ledger.get_transition_stats(organization_id, date_from, date_to)
    return jsonify(stats), 200


@workflow_bp.route("/organizations/<organization_id>/stage-transitions/recent", methods=["GET"])
def recent_transitions(organization_id):
    actor, err = _actor_required()
    if err:
        return err
    _scoped_organization(organization_id, actor)
    limit = request.args.get("limit", default=10, type=int)
    limit = max(1, min(limit or 10, 100))
    items = get_engine().ledger.get_recent_transitions(organization_id, limit=limit)
    return jsonify({"items": items, "total": len(items)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Change-feed ingress
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/organizations/<organization_id>/changes", methods=["POST"])
def publish_change(organization_id):
    """External "something changed in this organization" notification.

    Body is ignored; the feed carries no detail beyond the organization.
    """
    engine = get_engine()
    delivered = engine.feed.publish(organization_id)
    logger.info("Change notification for organization %s delivered to %d subscriber(s)",
                organization_id, delivered,
                extra={"organization_id": organization_id, "event_type": "change_notification"})
    return jsonify({"organization_id": organization_id, "delivered": delivered}), 202
