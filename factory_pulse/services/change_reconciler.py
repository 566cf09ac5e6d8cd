"""
Change Reconciler — keeps the project cache coherent with external changes.

A change feed tells us "something changed in organization X" with no further
detail. For each event the reconciler:

  1. drops it if the last refresh for X fired less than ``min_interval``
     seconds ago (last-fired-timestamp debounce, events are not queued);
  2. otherwise invalidates every cached project of X and schedules a
     background refetch of those projects.

Unsubscribing tears the feed connection down immediately; refreshes that
were scheduled but have not started yet are skipped. Refresh failures are
logged and counted, never raised to the feed.

Usage:
    feed = InProcessChangeFeed()
    reconciler = ChangeReconciler(cache, min_interval=2.0)
    reconciler.subscribe("org-1", feed)
    feed.publish("org-1")          # → invalidate + background refetch
    reconciler.unsubscribe("org-1")
"""

import itertools
import logging
import threading
import time

from factory_pulse.core.exceptions import NotFoundError
from factory_pulse.utils.helpers import iso, utcnow

logger = logging.getLogger(__name__)


# ── Change feed ──────────────────────────────────────────────────────────


class InProcessChangeFeed:
    """Organization-scoped pub/sub inside one process.

    External sources (database triggers, other services) reach it through
    the ``POST /api/v1/organizations/<org>/changes`` ingress.
    """

    def __init__(self):
        self._subscribers: dict[str, dict[int, object]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, organization_id: str, callback):
        """Register ``callback()``; returns a zero-arg unsubscribe function."""
        token = next(self._ids)
        with self._lock:
            self._subscribers.setdefault(organization_id, {})[token] = callback

        def unsubscribe():
            with self._lock:
                subs = self._subscribers.get(organization_id)
                if subs is not None:
                    subs.pop(token, None)
                    if not subs:
                        self._subscribers.pop(organization_id, None)

        return unsubscribe

    def publish(self, organization_id: str) -> int:
        """Notify every subscriber of the organization; returns how many."""
        with self._lock:
            callbacks = list(self._subscribers.get(organization_id, {}).values())
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Change feed subscriber failed for organization %s", organization_id)
        return len(callbacks)

    def subscriber_count(self, organization_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(organization_id, {}))


# ── Background runner ────────────────────────────────────────────────────


class ThreadRunner:
    """Runs a callable on a daemon thread, inside an app context if given."""

    def __init__(self, app=None):
        self.app = app

    def __call__(self, fn):
        t = threading.Thread(target=self._run, args=(fn,), daemon=True,
                             name="project-cache-refresh")
        t.start()
        return t

    def _run(self, fn):
        if self.app is None:
            fn()
            return
        with self.app.app_context():
            fn()


def run_inline(fn):
    """Runner that executes immediately (CLI catch-up, tests)."""
    fn()


# ── Reconciler ───────────────────────────────────────────────────────────


class ChangeReconciler:
    """Debounced, organization-scoped cache refresher."""

    def __init__(self, cache, *, min_interval: float = 2.0, clock=time.monotonic,
                 runner=None):
        self.cache = cache
        self.min_interval = min_interval
        self.clock = clock
        self.runner = runner or ThreadRunner()

        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._subscriptions: dict[str, dict] = {}
        self._last_fired: dict[str, float] = {}
        self._last_refresh: dict[str, dict] = {}
        self._closed = False
        self.events_received = 0
        self.dropped_events = 0
        self.refreshes_scheduled = 0
        self.refresh_failures = 0
        self.skipped_refreshes = 0

    # ── Subscription lifecycle ───────────────────────────────────────────

    def subscribe(self, organization_id: str, feed) -> bool:
        """Listen to ``feed`` for the organization. Idempotent."""
        with self._lock:
            if self._closed:
                raise RuntimeError("ChangeReconciler is closed")
            if organization_id in self._subscriptions:
                return False
            token = next(self._tokens)
            self._subscriptions[organization_id] = {"token": token, "unsubscribe": None}

        unsubscribe = feed.subscribe(organization_id,
                                     lambda: self._on_feed_event(organization_id, token))
        with self._lock:
            sub = self._subscriptions.get(organization_id)
            if sub is not None and sub["token"] == token:
                sub["unsubscribe"] = unsubscribe
                unsubscribe = None
        if unsubscribe is not None:
            # Unsubscribed while registering
            unsubscribe()
            return False
        logger.info("Reconciler subscribed to organization %s", organization_id,
                    extra={"organization_id": organization_id, "event_type": "reconciler_subscribed"})
        return True

    def is_subscribed(self, organization_id: str) -> bool:
        with self._lock:
            return organization_id in self._subscriptions

    def unsubscribe(self, organization_id: str) -> bool:
        with self._lock:
            sub = self._subscriptions.pop(organization_id, None)
        if sub is None:
            return False
        if sub["unsubscribe"] is not None:
            sub["unsubscribe"]()
        logger.info("Reconciler unsubscribed from organization %s", organization_id,
                    extra={"organization_id": organization_id, "event_type": "reconciler_unsubscribed"})
        return True

    def close(self):
        """Unsubscribe everything; no further refresh runs."""
        with self._lock:
            self._closed = True
            orgs = list(self._subscriptions)
        for org in orgs:
            self.unsubscribe(org)

    # ── Events ───────────────────────────────────────────────────────────

    def _on_feed_event(self, organization_id, token):
        with self._lock:
            sub = self._subscriptions.get(organization_id)
            if sub is None or sub["token"] != token:
                return
        self.handle_event(organization_id)

    def _current_token(self, organization_id):
        sub = self._subscriptions.get(organization_id)
        return sub["token"] if sub is not None else None

    def handle_event(self, organization_id: str) -> bool:
        """Apply the debounce; returns True when a refresh was scheduled."""
        with self._lock:
            if self._closed:
                return False
            self.events_received += 1
            now = self.clock()
            last = self._last_fired.get(organization_id)
            if last is not None and now - last < self.min_interval:
                self.dropped_events += 1
                logger.debug("Change event for %s dropped (%.2fs since last refresh)",
                             organization_id, now - last)
                return False
            self._last_fired[organization_id] = now
            token = self._current_token(organization_id)
            self.refreshes_scheduled += 1

        project_ids = self.cache.invalidate_organization(organization_id)
        logger.info("Invalidated %d cached project(s) for organization %s",
                    len(project_ids), organization_id,
                    extra={"organization_id": organization_id, "event_type": "cache_invalidated"})
        self.runner(lambda: self._refresh(organization_id, token, project_ids))
        return True

    def _still_wanted(self, organization_id, token) -> bool:
        with self._lock:
            return not self._closed and self._current_token(organization_id) == token

    def _refresh(self, organization_id, token, project_ids):
        refreshed = failed = 0
        for project_id in project_ids:
            if not self._still_wanted(organization_id, token):
                with self._lock:
                    self.skipped_refreshes += 1
                logger.info("Refresh for organization %s cancelled (unsubscribed)", organization_id)
                break
            try:
                self.cache.refresh(project_id)
                refreshed += 1
            except NotFoundError:
                # Deleted upstream; refresh already evicted it
                refreshed += 1
            except Exception:
                failed += 1
                logger.warning("Background refresh failed for project %s", project_id,
                               exc_info=True,
                               extra={"organization_id": organization_id, "project_id": project_id,
                                      "event_type": "cache_refresh_failed"})
        with self._lock:
            self.refresh_failures += failed
            self._last_refresh[organization_id] = {
                "at": iso(utcnow()),
                "refreshed": refreshed,
                "failed": failed,
            }

    def poll(self, organization_ids=None) -> dict:
        """Scheduled catch-up; goes through the same debounce as feed events."""
        if organization_ids is None:
            with self._lock:
                organization_ids = list(self._subscriptions)
        return {org: self.handle_event(org) for org in organization_ids}

    def status(self) -> dict:
        with self._lock:
            return {
                "closed": self._closed,
                "min_interval_seconds": self.min_interval,
                "subscriptions": sorted(self._subscriptions),
                "events_received": self.events_received,
                "dropped_events": self.dropped_events,
                "refreshes_scheduled": self.refreshes_scheduled,
                "refresh_failures": self.refresh_failures,
                "skipped_refreshes": self.skipped_refreshes,
                "last_refresh": dict(self._last_refresh),
            }
