"""
Actor context — the caller's identity and organization scope.

Services never read identity from ambient request state; blueprints build an
``ActorContext`` once per request and pass it explicitly into every engine
call.

Headers (set by the upstream auth gateway):
    X-Actor-Id          actor identifier (required for mutating calls)
    X-Organization-Id   tenant boundary
    X-Privilege-Level   viewer | member | manager | admin
"""

import logging
from dataclasses import dataclass

from flask import g, request

logger = logging.getLogger(__name__)

# Ordered from least to most privileged
PRIVILEGE_LEVELS = ("viewer", "member", "manager", "admin")

# Paths that never carry an actor (health probes)
ACTOR_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


@dataclass(frozen=True)
class ActorContext:
    """Who is calling, on behalf of which organization, with what privilege."""

    actor_id: str
    organization_id: str
    privilege_level: str = "member"

    def has_privilege(self, required: str) -> bool:
        """True when this actor's level is at or above ``required``."""
        try:
            return PRIVILEGE_LEVELS.index(self.privilege_level) >= PRIVILEGE_LEVELS.index(required)
        except ValueError:
            return False

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "privilege_level": self.privilege_level,
        }


SYSTEM_ACTOR_ID = "system"


def system_actor(organization_id: str) -> ActorContext:
    """Actor used by automation jobs (auto-advance, reconciliation)."""
    return ActorContext(actor_id=SYSTEM_ACTOR_ID, organization_id=organization_id,
                        privilege_level="member")


def actor_from_request() -> ActorContext | None:
    """Build an ActorContext from request headers, or None if incomplete."""
    actor_id = (request.headers.get("X-Actor-Id") or "").strip()
    organization_id = (request.headers.get("X-Organization-Id") or "").strip()
    if not actor_id or not organization_id:
        return None
    level = (request.headers.get("X-Privilege-Level") or "member").strip().lower()
    if level not in PRIVILEGE_LEVELS:
        logger.warning("Unknown privilege level %r for actor %s — treating as viewer",
                       level, actor_id)
        level = "viewer"
    return ActorContext(actor_id=actor_id, organization_id=organization_id,
                        privilege_level=level)


def init_actor_context(app):
    """Register the actor context middleware as a before_request hook.

    Sets ``g.actor`` for API requests. Missing headers leave ``g.actor`` as
    None; blueprints decide whether an actor is mandatory.
    """

    @app.before_request
    def _actor_context():
        g.actor = None
        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in ACTOR_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None
        g.actor = actor_from_request()
        return None

    logger.info("Actor context middleware installed")
