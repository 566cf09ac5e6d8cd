"""
Backing store for projects and their stage history (SQLAlchemy).

Contract used by the engine:
    read_project(project_id)                        -> ProjectSnapshot
    mutate_project_stage(project_id, stage_id, entered_at, expected_stage_id=...)
                                                    -> ProjectSnapshot
    append_history(**fields)                        -> dict
    query_history(project_id)                       -> list[dict]

Failures surface as ``NotFoundError`` (missing row) or ``BackendFailure``
with a structured ``code`` ("timeout", "database", "stale_state"). A store
call that exceeds its timeout is a failure; the transaction is rolled back
and nothing is committed.
"""

import logging
from datetime import datetime

from sqlalchemy import select, text, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from factory_pulse.core.exceptions import BackendFailure, NotFoundError, StaleProjectState
from factory_pulse.models import db
from factory_pulse.models.project import Project, ProjectSnapshot
from factory_pulse.models.stage_history import StageTransitionRecord
from factory_pulse.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_TIMEOUT_MARKERS = ("statement timeout", "canceling statement", "lock timeout", "timed out")


def _failure_code(exc: Exception) -> str:
    if isinstance(exc, TimeoutError):
        return "timeout"
    if isinstance(exc, OperationalError):
        msg = str(exc).lower()
        if any(marker in msg for marker in _TIMEOUT_MARKERS):
            return "timeout"
    return "database"


class SqlProjectStore:
    """Project / history persistence on the Flask-SQLAlchemy session."""

    def __init__(self, default_timeout: float | None = None):
        self.default_timeout = default_timeout
        self._timeout_unbounded_logged = False

    # ── Helpers ──────────────────────────────────────────────────────────

    def _apply_timeout(self, timeout: float | None):
        """Bound the current transaction on PostgreSQL; other dialects ignore it."""
        timeout = timeout if timeout is not None else self.default_timeout
        if not timeout:
            return
        dialect = db.session.get_bind().dialect.name
        if dialect != "postgresql":
            if not self._timeout_unbounded_logged:
                self._timeout_unbounded_logged = True
                logger.warning("Store timeout of %ss is not enforced on %s; only PostgreSQL "
                               "applies statement_timeout", timeout, dialect,
                               extra={"event_type": "store_timeout_unenforced"})
            return
        # SET LOCAL does not accept bind parameters
        db.session.execute(text(f"SET LOCAL statement_timeout = {int(timeout * 1000)}"))

    # ── Projects ─────────────────────────────────────────────────────────

    def read_project(self, project_id: str, *, timeout: float | None = None) -> ProjectSnapshot:
        try:
            self._apply_timeout(timeout)
            project = db.session.get(Project, project_id, populate_existing=True)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BackendFailure("read_project", _failure_code(exc), exc) from exc
        if project is None:
            raise NotFoundError(resource="Project", resource_id=project_id)
        return project.to_snapshot()

    def list_project_ids(self, organization_id: str) -> list[str]:
        try:
            stmt = select(Project.id).where(Project.organization_id == organization_id)
            return list(db.session.execute(stmt).scalars())
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BackendFailure("list_project_ids", _failure_code(exc), exc) from exc

    def mutate_project_stage(
        self,
        project_id: str,
        stage_id: str,
        entered_at: datetime,
        *,
        expected_stage_id: str | None,
        status: str | None = None,
        timeout: float | None = None,
    ) -> ProjectSnapshot:
        """Compare-and-set the project's stage.

        The update applies only if the stored ``current_stage_id`` still equals
        ``expected_stage_id``; otherwise ``StaleProjectState`` is raised and
        nothing is written. ``stage_entered_at`` never moves backwards.
        """
        try:
            self._apply_timeout(timeout)
            row = db.session.get(Project, project_id, populate_existing=True)
            if row is None:
                db.session.rollback()
                raise NotFoundError(resource="Project", resource_id=project_id)
            if row.current_stage_id != expected_stage_id:
                actual = row.current_stage_id
                db.session.rollback()
                raise StaleProjectState(project_id, expected_stage_id, actual)

            before = row.to_snapshot()
            previous = before.stage_entered_at
            entered_at = as_utc(entered_at) or utcnow()
            if previous is not None and previous > entered_at:
                entered_at = previous

            values = {
                "current_stage_id": stage_id,
                "stage_entered_at": entered_at,
                "version": Project.version + 1,
                "updated_at": utcnow(),
            }
            if status:
                values["status"] = status

            stage_match = (
                Project.current_stage_id.is_(None) if expected_stage_id is None
                else Project.current_stage_id == expected_stage_id
            )
            stmt = (
                update(Project)
                .where(Project.id == project_id, stage_match, Project.version == row.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = db.session.execute(stmt)
            if result.rowcount != 1:
                db.session.rollback()
                current = db.session.get(Project, project_id, populate_existing=True)
                raise StaleProjectState(project_id, expected_stage_id,
                                        current.current_stage_id if current else None)
            committed = before.with_stage(stage_id, entered_at, status=status,
                                          version=before.version + 1)
            db.session.commit()
        except (NotFoundError, StaleProjectState):
            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            db.session.rollback()
            code = _failure_code(exc)
            logger.error("Stage mutation failed for project %s (%s)", project_id, code,
                         extra={"project_id": project_id, "to_stage_id": stage_id})
            raise BackendFailure("mutate_project_stage", code, exc) from exc

        # Built from the written values; nothing past the commit may raise
        return committed

    # ── History ──────────────────────────────────────────────────────────

    def append_history(self, **fields) -> dict:
        """Insert one ledger row and commit."""
        try:
            record = StageTransitionRecord(**fields)
            db.session.add(record)
            db.session.commit()
            return record.to_dict()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BackendFailure("append_history", _failure_code(exc), exc) from exc

    def query_history(self, project_id: str) -> list[dict]:
        try:
            stmt = (
                select(StageTransitionRecord)
                .where(StageTransitionRecord.project_id == project_id)
                .order_by(StageTransitionRecord.timestamp.asc(), StageTransitionRecord.id.asc())
            )
            return [r.to_dict() for r in db.session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BackendFailure("query_history", _failure_code(exc), exc) from exc

    def query_organization_history(
        self,
        organization_id: str,
        *,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[dict]:
        try:
            stmt = select(StageTransitionRecord).where(
                StageTransitionRecord.organization_id == organization_id
            )
            if date_from is not None:
                stmt = stmt.where(StageTransitionRecord.timestamp >= date_from)
            if date_to is not None:
                stmt = stmt.where(StageTransitionRecord.timestamp <= date_to)
            if newest_first:
                stmt = stmt.order_by(StageTransitionRecord.timestamp.desc(),
                                     StageTransitionRecord.id.desc())
            else:
                stmt = stmt.order_by(StageTransitionRecord.timestamp.asc(),
                                     StageTransitionRecord.id.asc())
            if limit:
                stmt = stmt.limit(limit)
            return [r.to_dict() for r in db.session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise BackendFailure("query_organization_history", _failure_code(exc), exc) from exc

    def ping(self) -> bool:
        db.session.execute(text("SELECT 1"))
        return True
