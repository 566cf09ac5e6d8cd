"""
Engine wiring — builds the workflow components once per application.

    app.extensions["workflow"] → WorkflowEngine

Blueprints and CLI commands call ``get_engine()`` instead of constructing
services themselves, so every request in a process shares one coordinator
(and therefore one in-flight slot registry) and one cache.
"""

import logging

from flask import current_app

from factory_pulse.services.change_reconciler import ChangeReconciler, InProcessChangeFeed, ThreadRunner
from factory_pulse.services.collaborators import sql_collaborators
from factory_pulse.services.prerequisites import PrerequisiteChecker
from factory_pulse.services.project_cache import ProjectCache, make_backend
from factory_pulse.services.project_store import SqlProjectStore
from factory_pulse.services.stage_graph import get_stage_graph
from factory_pulse.services.stage_history import StageHistoryLedger
from factory_pulse.services.transition_coordinator import TransitionCoordinator

logger = logging.getLogger(__name__)

EXTENSION_KEY = "workflow"


class WorkflowEngine:
    """Holds the graph, store, checker, ledger, cache, coordinator and reconciler."""

    def __init__(self, *, graph, store, checker, ledger, cache, coordinator,
                 feed, reconciler, reconciler_enabled=True):
        self.graph = graph
        self.store = store
        self.checker = checker
        self.ledger = ledger
        self.cache = cache
        self.coordinator = coordinator
        self.feed = feed
        self.reconciler = reconciler
        self.reconciler_enabled = reconciler_enabled

    @classmethod
    def from_config(cls, config: dict, app=None, graph=None) -> "WorkflowEngine":
        graph = graph or get_stage_graph()
        timeout = config.get("TRANSITION_TIMEOUT_SECONDS")
        store = SqlProjectStore(default_timeout=timeout)
        checker = PrerequisiteChecker(sql_collaborators(), graph=graph)
        ledger = StageHistoryLedger(store, graph=graph)
        cache = ProjectCache(
            loader=store.read_project,
            stage_lookup=lambda stage_id: graph.get_stage(stage_id).to_dict(),
            ttl_seconds=config.get("PROJECT_CACHE_TTL_SECONDS", 300),
            backend=make_backend(config.get("REDIS_URL")),
        )
        coordinator = TransitionCoordinator(
            graph, checker, store, ledger, cache,
            manager_privilege=config.get("MANAGER_PRIVILEGE_LEVEL", "manager"),
            timeout=timeout,
        )
        feed = InProcessChangeFeed()
        reconciler = ChangeReconciler(
            cache,
            min_interval=config.get("RECONCILER_MIN_INTERVAL_SECONDS", 2.0),
            runner=ThreadRunner(app),
        )
        return cls(
            graph=graph, store=store, checker=checker, ledger=ledger, cache=cache,
            coordinator=coordinator, feed=feed, reconciler=reconciler,
            reconciler_enabled=config.get("RECONCILER_ENABLED", True),
        )

    def watch_organization(self, organization_id: str) -> bool:
        """Subscribe the reconciler to an organization on first use."""
        if not self.reconciler_enabled or self.reconciler.is_subscribed(organization_id):
            return False
        return self.reconciler.subscribe(organization_id, self.feed)

    def shutdown(self):
        self.reconciler.close()


def init_engine(app) -> WorkflowEngine:
    engine = WorkflowEngine.from_config(app.config, app=app)
    app.extensions[EXTENSION_KEY] = engine
    logger.info("Workflow engine ready (%d stages, cache=%s, reconciler=%s)",
                len(engine.graph), engine.cache.health_check().get("backend"),
                "on" if engine.reconciler_enabled else "off")
    return engine


def get_engine() -> WorkflowEngine:
    return current_app.extensions[EXTENSION_KEY]
