"""
Stage History Ledger — append-only audit trail of committed transitions.

``record`` is called only after the stage mutation has committed. A failed
write is a non-fatal inconsistency: it is logged as ``LedgerWriteFailure``
and reported back as ``False``; the transition is never rolled back.

Supplemented analytics (durations, per-organization stats, recent feed) are
computed from the same rows.
"""

import logging
from collections import Counter
from datetime import datetime

from factory_pulse.core.exceptions import BackendFailure, LedgerWriteFailure
from factory_pulse.models.stage_history import ACTION_TRANSITION, ACTION_TRANSITION_BYPASS
from factory_pulse.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)


class StageHistoryLedger:
    """Thin service over the store's history operations."""

    def __init__(self, store, graph=None):
        self.store = store
        self.graph = graph

    def _stage_name(self, stage_id):
        if stage_id is None or self.graph is None or stage_id not in self.graph:
            return None
        return self.graph.get_stage(stage_id).name

    # ── Write ────────────────────────────────────────────────────────────

    def record(
        self,
        *,
        organization_id: str,
        project_id: str,
        from_stage_id: str | None,
        to_stage_id: str,
        actor_id: str,
        reason: str | None = None,
        bypass_reason: str | None = None,
        estimated_duration_days: int | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        """Append one transition. Returns False (and logs) when the write fails."""
        fields = {
            "organization_id": organization_id,
            "project_id": project_id,
            "from_stage_id": from_stage_id,
            "from_stage_name": self._stage_name(from_stage_id),
            "to_stage_id": to_stage_id,
            "to_stage_name": self._stage_name(to_stage_id),
            "actor_id": actor_id,
            "action": ACTION_TRANSITION_BYPASS if bypass_reason else ACTION_TRANSITION,
            "reason": reason,
            "bypass_reason": bypass_reason or None,
            "estimated_duration_days": estimated_duration_days,
            "timestamp": timestamp or utcnow(),
        }
        try:
            self.store.append_history(**fields)
        except BackendFailure as exc:
            failure = LedgerWriteFailure(project_id, exc)
            logger.error(
                "%s", failure,
                extra={
                    "project_id": project_id,
                    "organization_id": organization_id,
                    "from_stage_id": from_stage_id,
                    "to_stage_id": to_stage_id,
                    "actor_id": actor_id,
                    "error_kind": failure.kind,
                    "event_type": "ledger_write_failed",
                },
            )
            return False
        return True

    # ── Read ─────────────────────────────────────────────────────────────

    def get_history(self, project_id: str) -> list[dict]:
        """All entries for a project, oldest first. Safe to call repeatedly."""
        return self.store.query_history(project_id)

    def get_history_with_durations(self, project_id: str, now: datetime | None = None) -> list[dict]:
        """History enriched with time spent in each entered stage.

        The last entry is still open: ``exited_at`` is None and its duration
        runs up to ``now``.
        """
        history = self.get_history(project_id)
        now = now or utcnow()
        enriched = []
        for idx, entry in enumerate(history):
            entered = parse_datetime(entry["timestamp"])
            nxt = history[idx + 1] if idx + 1 < len(history) else None
            exited = parse_datetime(nxt["timestamp"]) if nxt else None
            end = exited or now
            minutes = max(0, int((end - entered).total_seconds() // 60)) if entered else None
            row = dict(entry)
            row["entered_at"] = entry["timestamp"]
            row["exited_at"] = nxt["timestamp"] if nxt else None
            row["duration_minutes"] = minutes
            row["is_current"] = nxt is None
            estimate = entry.get("estimated_duration_days")
            row["over_estimate"] = (
                minutes is not None and estimate is not None and minutes > estimate * 24 * 60
            )
            enriched.append(row)
        return enriched

    def get_transition_stats(
        self,
        organization_id: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict:
        rows = self.store.query_organization_history(
            organization_id, date_from=date_from, date_to=date_to,
        )
        by_stage = Counter(r["to_stage_id"] for r in rows)
        by_actor = Counter(r["actor_id"] for r in rows)
        bypasses = [r for r in rows if r.get("bypass_reason")]
        return {
            "organization_id": organization_id,
            "total_transitions": len(rows),
            "bypass_count": len(bypasses),
            "bypass_rate": round(len(bypasses) / len(rows), 3) if rows else 0.0,
            "transitions_by_stage": dict(by_stage),
            "transitions_by_actor": dict(by_actor),
            "projects_touched": len({r["project_id"] for r in rows}),
            "bypass_reasons": [
                {"project_id": r["project_id"], "to_stage_id": r["to_stage_id"],
                 "actor_id": r["actor_id"], "bypass_reason": r["bypass_reason"],
                 "timestamp": r["timestamp"]}
                for r in bypasses
            ],
        }

    def get_recent_transitions(self, organization_id: str, limit: int = 10) -> list[dict]:
        return self.store.query_organization_history(
            organization_id, limit=limit, newest_first=True,
        )
