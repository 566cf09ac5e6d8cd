"""
Factory Pulse Workflow Engine
Stage history domain model.

Models:
    - StageTransitionRecord: immutable, append-only ledger of stage changes.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from factory_pulse.models import db
from factory_pulse.utils.helpers import as_utc, iso

# ── Constants ────────────────────────────────────────────────────────────────

ACTION_TRANSITION = "stage_transition"
ACTION_TRANSITION_BYPASS = "stage_transition_bypass"
TRANSITION_ACTIONS = (ACTION_TRANSITION, ACTION_TRANSITION_BYPASS)


def _utcnow():
    return datetime.now(timezone.utc)


class StageTransitionRecord(db.Model):
    """
    One committed stage transition.

    Rows are created once and never mutated or deleted; the per-project
    history is reconstructed by ordering on ``(timestamp, id)``.
    ``bypass_reason`` is present only when validation was overridden.
    """

    __tablename__ = "project_stage_history"
    __table_args__ = (
        db.Index("idx_stage_history_project_ts", "project_id", "timestamp"),
        db.Index("idx_stage_history_org_ts", "organization_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.String(36), nullable=False)

    from_stage_id = db.Column(db.String(64), nullable=True,
                              comment="Null for the first-ever transition")
    from_stage_name = db.Column(db.String(120), nullable=True)
    to_stage_id = db.Column(db.String(64), nullable=False)
    to_stage_name = db.Column(db.String(120), nullable=True)

    actor_id = db.Column(db.String(150), nullable=False, default="system")
    action = db.Column(
        db.String(40), nullable=False, default=ACTION_TRANSITION,
        comment="stage_transition | stage_transition_bypass",
    )
    reason = db.Column(db.Text, nullable=True)
    bypass_reason = db.Column(db.Text, nullable=True)
    estimated_duration_days = db.Column(db.Integer, nullable=True)

    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_bypass(self) -> bool:
        return self.bypass_reason is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "project_id": self.project_id,
            "from_stage_id": self.from_stage_id,
            "from_stage_name": self.from_stage_name,
            "to_stage_id": self.to_stage_id,
            "to_stage_name": self.to_stage_name,
            "actor_id": self.actor_id,
            "action": self.action,
            "reason": self.reason,
            "bypass_reason": self.bypass_reason,
            "estimated_duration_days": self.estimated_duration_days,
            "timestamp": iso(self.timestamp),
        }

    @property
    def timestamp_utc(self) -> datetime:
        return as_utc(self.timestamp)

    def __repr__(self):
        return (f"<StageTransitionRecord {self.id}: {self.project_id} "
                f"{self.from_stage_id}->{self.to_stage_id}>")


# ── Append-only guard ────────────────────────────────────────────────────────

@event.listens_for(StageTransitionRecord, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"Stage history is append-only; refusing to update record {target.id}")


@event.listens_for(StageTransitionRecord, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise RuntimeError(f"Stage history is append-only; refusing to delete record {target.id}")
