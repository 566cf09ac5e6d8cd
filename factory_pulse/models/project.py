"""Project domain model and its immutable snapshot.

The ``projects`` table is owned by intake; the workflow engine only ever
writes ``current_stage_id``, ``stage_entered_at``, ``status`` (on entering
the terminal stage) and ``version``.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone

from factory_pulse.models import db
from factory_pulse.utils.helpers import as_utc, iso, parse_date, parse_datetime

PROJECT_STATUSES = ("active", "on_hold", "cancelled", "completed")
PROJECT_PRIORITIES = ("low", "medium", "high", "urgent")


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """A manufacturing project moving through the workflow pipeline."""

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    organization_id = db.Column(db.String(64), nullable=False, index=True)
    code = db.Column(db.String(50), nullable=True, comment="Human-facing number, e.g. PRJ-2025-001")
    title = db.Column(db.String(255), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    customer_id = db.Column(db.String(36), nullable=True)
    estimated_value = db.Column(db.Float, nullable=True)
    due_date = db.Column(db.Date, nullable=True)

    # ── Workflow position ──
    current_stage_id = db.Column(
        db.String(64), nullable=True, index=True,
        comment="Workflow stage id; null only before first stage assignment",
    )
    stage_entered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(
        db.String(30), nullable=False, default="active",
        comment="active | on_hold | cancelled | completed",
    )
    version = db.Column(
        db.Integer, nullable=False, default=0,
        comment="Incremented on every stage mutation",
    )

    priority = db.Column(db.String(20), nullable=True, default="medium",
                         comment="low | medium | high | urgent")
    tags = db.Column(db.JSON, nullable=True, default=list)
    # "metadata" is reserved on declarative classes
    meta = db.Column("metadata", db.JSON, nullable=True, default=dict)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.Index("ix_projects_org_stage", "organization_id", "current_stage_id"),
    )

    def to_snapshot(self) -> "ProjectSnapshot":
        return ProjectSnapshot(
            id=self.id,
            organization_id=self.organization_id,
            code=self.code,
            title=self.title or "",
            description=self.description,
            customer_id=self.customer_id,
            estimated_value=self.estimated_value,
            due_date=self.due_date,
            current_stage_id=self.current_stage_id,
            stage_entered_at=as_utc(self.stage_entered_at),
            status=self.status or "active",
            priority=self.priority,
            tags=tuple(self.tags or ()),
            metadata=dict(self.meta or {}),
            version=self.version or 0,
        )

    def to_dict(self) -> dict:
        return self.to_snapshot().to_dict()

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.code} stage={self.current_stage_id}>"


@dataclass(frozen=True)
class ProjectSnapshot:
    """Read-only projection of a Project, detached from any DB session."""

    id: str
    organization_id: str
    title: str = ""
    code: str | None = None
    description: str | None = None
    customer_id: str | None = None
    estimated_value: float | None = None
    due_date: date | None = None
    current_stage_id: str | None = None
    stage_entered_at: datetime | None = None
    status: str = "active"
    priority: str | None = None
    tags: tuple = ()
    metadata: dict = field(default_factory=dict)
    version: int = 0

    def with_stage(self, stage_id: str, entered_at: datetime, *,
                   status: str | None = None, version: int | None = None) -> "ProjectSnapshot":
        return replace(
            self,
            current_stage_id=stage_id,
            stage_entered_at=entered_at,
            status=status or self.status,
            version=self.version + 1 if version is None else version,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "customer_id": self.customer_id,
            "estimated_value": self.estimated_value,
            "due_date": iso(self.due_date),
            "current_stage_id": self.current_stage_id,
            "stage_entered_at": iso(self.stage_entered_at),
            "status": self.status,
            "priority": self.priority,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectSnapshot":
        return cls(
            id=data["id"],
            organization_id=data["organization_id"],
            code=data.get("code"),
            title=data.get("title") or "",
            description=data.get("description"),
            customer_id=data.get("customer_id"),
            estimated_value=data.get("estimated_value"),
            due_date=parse_date(data.get("due_date")),
            current_stage_id=data.get("current_stage_id"),
            stage_entered_at=parse_datetime(data.get("stage_entered_at")),
            status=data.get("status") or "active",
            priority=data.get("priority"),
            tags=tuple(data.get("tags") or ()),
            metadata=dict(data.get("metadata") or {}),
            version=data.get("version") or 0,
        )
