"""
Project Read Cache — read-through cache of project snapshots.

Provides:
  - get / put / invalidate / is_valid per project
  - read-through ``fetch`` and forced ``refresh`` via a loader callable
  - organization-wide invalidation (used by the change reconciler)
  - a provisional overlay for optimistic transitions (confirm / rollback)

Uses Redis in production (via REDIS_URL), falls back to a simple
in-memory dict for development/testing.

Entry layout (JSON):
    {"project": {...}, "stage": {...} | null, "fetched_at": <epoch>,
     "version": <int>, "invalidated": bool, "complete": bool}

An entry is served only when it is complete, not invalidated and younger
than the staleness window; anything else is a miss.
"""

import json
import logging
import threading
import time

from factory_pulse.core.exceptions import NotFoundError
from factory_pulse.models.project import ProjectSnapshot

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def __init__(self):
        self._store: dict = {}  # key → (value_json, expire_ts)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            val, expires = entry
            if expires and time.time() > expires:
                self._store.pop(key, None)
                return None
            return val

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for k in keys:
                self._store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        with self._lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in self._store if k.startswith(prefix)]
            return [k for k in self._store if k == pattern]

    def flushdb(self):
        with self._lock:
            self._store.clear()

    def ping(self):
        return True


def make_backend(redis_url: str | None):
    """Redis for ``redis://`` / ``rediss://`` URLs, memory otherwise."""
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            backend = _redis.from_url(redis_url, decode_responses=True)
            backend.ping()
            logger.info("Project cache: using Redis at %s", redis_url.split("@")[-1])
            return backend
        except Exception as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
    return _MemoryBackend()


# ── Key builders ─────────────────────────────────────────────────────────

KEY_PREFIX = "fp"


def _project_key(project_id):
    return f"{KEY_PREFIX}:project:{project_id}"


def _org_index_key(organization_id, project_id):
    return f"{KEY_PREFIX}:org:{organization_id}:{project_id}"


# ── Provisional overlay ──────────────────────────────────────────────────


class ProvisionalUpdate:
    """Two-phase optimistic stage change.

    While pending, the overlay is visible through ``get_provisional`` only;
    confirmed cache entries are untouched until ``confirm`` succeeds.
    """

    def __init__(self, cache, snapshot: ProjectSnapshot):
        self._cache = cache
        self.snapshot = snapshot
        self.state = "pending"

    @property
    def project_id(self):
        return self.snapshot.id

    def confirm(self, committed: ProjectSnapshot | None = None):
        """Write the committed snapshot into the cache and drop the overlay."""
        if self.state != "pending":
            return
        self._cache._drop_provisional(self.project_id, self)
        self._cache.put(committed or self.snapshot)
        self.state = "confirmed"

    def rollback(self):
        if self.state != "pending":
            return
        self._cache._drop_provisional(self.project_id, self)
        self.state = "rolled_back"


# ── Cache ────────────────────────────────────────────────────────────────


class ProjectCache:
    """Per-application project cache.

    Args:
        loader: ``project_id -> ProjectSnapshot``; raises NotFoundError.
        stage_lookup: ``stage_id -> dict`` of joined stage data; raises for
            unknown stages, which marks the entry incomplete.
        ttl_seconds: staleness window.
        backend: Redis client or memory backend (see ``make_backend``).
        clock: epoch-seconds callable, injectable for tests.
    """

    def __init__(self, loader=None, *, stage_lookup=None, ttl_seconds: float = 300,
                 backend=None, clock=time.time):
        self.loader = loader
        self.stage_lookup = stage_lookup
        self.ttl_seconds = ttl_seconds
        self.backend = backend if backend is not None else _MemoryBackend()
        self.clock = clock
        self._provisional: dict[str, ProvisionalUpdate] = {}
        self._lock = threading.Lock()

    # Entries outlive the staleness window so invalidated/stale state stays
    # inspectable; the window itself is enforced on read.
    @property
    def _retention(self):
        return max(int(self.ttl_seconds * 2), 1)

    def _read_entry(self, project_id):
        raw = self.backend.get(_project_key(project_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    def _write_entry(self, project_id, organization_id, entry):
        self.backend.setex(_project_key(project_id), self._retention, json.dumps(entry))
        self.backend.setex(_org_index_key(organization_id, project_id), self._retention, "1")

    def _entry_is_current(self, entry) -> bool:
        if entry is None or entry.get("invalidated") or not entry.get("complete"):
            return False
        return (self.clock() - entry.get("fetched_at", 0)) <= self.ttl_seconds

    # ── Public API ───────────────────────────────────────────────────────

    def get(self, project_id: str) -> dict | None:
        """Cached project dict (with ``stage``) or None on miss/stale/invalid."""
        entry = self._read_entry(project_id)
        if not self._entry_is_current(entry):
            return None
        data = dict(entry["project"])
        data["stage"] = entry.get("stage")
        return data

    def get_snapshot(self, project_id: str) -> ProjectSnapshot | None:
        entry = self._read_entry(project_id)
        if not self._entry_is_current(entry):
            return None
        return ProjectSnapshot.from_dict(entry["project"])

    def is_valid(self, project_id: str) -> bool:
        return self._entry_is_current(self._read_entry(project_id))

    def put(self, project: ProjectSnapshot, *, complete: bool | None = None) -> bool:
        """Store ``project`` as the current copy, joining its stage data.

        A snapshot older than a live (not invalidated) entry is ignored, so a
        slow background refresh cannot overwrite a newer committed stage.
        Returns True when the entry was written.
        """
        stage = None
        joined = True
        if project.current_stage_id is not None:
            if self.stage_lookup is None:
                joined = False
            else:
                try:
                    stage = self.stage_lookup(project.current_stage_id)
                except NotFoundError:
                    joined = False
        entry = {
            "project": project.to_dict(),
            "stage": stage,
            "fetched_at": self.clock(),
            "version": project.version,
            "invalidated": False,
            "complete": joined if complete is None else (complete and joined),
        }
        with self._lock:
            existing = self._read_entry(project.id)
            if (existing is not None and not existing.get("invalidated")
                    and project.version < existing.get("version", 0)):
                logger.debug("Ignoring project %s v%d; cache holds v%d", project.id,
                             project.version, existing.get("version", 0),
                             extra={"project_id": project.id, "event_type": "cache_put_outdated"})
                return False
            self._write_entry(project.id, project.organization_id, entry)
        return True

    def invalidate(self, project_id: str) -> bool:
        """Flag the entry invalid. Returns True if an entry existed."""
        with self._lock:
            entry = self._read_entry(project_id)
            if entry is None:
                return False
            entry["invalidated"] = True
            self._write_entry(project_id, entry["project"]["organization_id"], entry)
        return True

    def invalidate_organization(self, organization_id: str) -> list[str]:
        """Invalidate every cached project of an organization; returns their ids."""
        prefix = _org_index_key(organization_id, "")
        project_ids = []
        for key in self.backend.keys(f"{prefix}*"):
            project_id = key[len(prefix):]
            if self.invalidate(project_id):
                project_ids.append(project_id)
            else:
                self.backend.delete(key)
        return project_ids

    def fetch(self, project_id: str) -> dict:
        """Read-through: serve a current entry or load and cache the project."""
        cached = self.get(project_id)
        if cached is not None:
            return cached
        return self.refresh(project_id)

    def refresh(self, project_id: str) -> dict:
        """Reload from the store regardless of entry state."""
        if self.loader is None:
            raise RuntimeError("ProjectCache has no loader configured")
        try:
            snapshot = self.loader(project_id)
        except NotFoundError:
            self.evict(project_id)
            raise
        self.put(snapshot)
        data = self.get(project_id)
        if data is None:
            # Stage data could not be joined; serve the raw projection
            data = snapshot.to_dict()
            data["stage"] = None
        return data

    def evict(self, project_id: str):
        entry = self._read_entry(project_id)
        keys = [_project_key(project_id)]
        if entry is not None:
            keys.append(_org_index_key(entry["project"]["organization_id"], project_id))
        self.backend.delete(*keys)

    def cached_project_ids(self, organization_id: str) -> list[str]:
        prefix = _org_index_key(organization_id, "")
        return [k[len(prefix):] for k in self.backend.keys(f"{prefix}*")]

    # ── Provisional overlay ──────────────────────────────────────────────

    def stage_provisional(self, project: ProjectSnapshot, stage_id: str, entered_at) -> ProvisionalUpdate:
        update = ProvisionalUpdate(self, project.with_stage(stage_id, entered_at))
        with self._lock:
            self._provisional[project.id] = update
        return update

    def get_provisional(self, project_id: str) -> dict | None:
        with self._lock:
            update = self._provisional.get(project_id)
        return update.snapshot.to_dict() if update is not None else None

    def _drop_provisional(self, project_id, update):
        with self._lock:
            if self._provisional.get(project_id) is update:
                del self._provisional[project_id]

    # ── Maintenance ──────────────────────────────────────────────────────

    def clear(self):
        """Flush entire cache (use sparingly, mainly for testing)."""
        with self._lock:
            self._provisional.clear()
        for key in self.backend.keys(f"{KEY_PREFIX}:*"):
            self.backend.delete(key)

    def health_check(self) -> dict:
        """Return cache backend status."""
        try:
            self.backend.ping()
            backend_type = "redis" if not isinstance(self.backend, _MemoryBackend) else "memory"
            return {"status": "ok", "backend": backend_type}
        except Exception as exc:
            return {"status": "error", "detail": str(exc)}
