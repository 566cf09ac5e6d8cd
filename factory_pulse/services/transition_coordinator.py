"""
Transition Coordinator — validate → mutate → audit for one project.

Per-project phases:

    IDLE → VALIDATING → MUTATING → RECORDING → IDLE
    VALIDATING → REJECTED → IDLE
    MUTATING → MUTATION_FAILED → IDLE

At most one transition is in flight per project; a second request while the
slot is held fails immediately with ``ConcurrencyConflict``. The slot is
released on every exit path.

Failures are returned, not raised: ``execute_transition`` gives back a
``TransitionResult`` that is falsy on failure and carries the error kind,
every human-readable reason, and whether the mutation / ledger write
happened. Only request-level errors (unknown project, cross-organization
access) propagate as exceptions.

Usage:
    coordinator = get_engine().coordinator
    result = coordinator.execute_transition(
        snapshot, "quoted", TransitionOptions(reason="Quote sent"), actor,
    )
    if not result:
        print(result.error_kind, result.errors)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

from factory_pulse.actor import ActorContext, system_actor
from factory_pulse.core.exceptions import (
    BackendFailure,
    BypassNotPermitted,
    ConcurrencyConflict,
    InvalidTransitionOptions,
    NotFoundError,
    PermissionDenied,
    PrerequisiteFailure,
    StaleProjectState,
    StructuralViolation,
    TransitionError,
)
from factory_pulse.models.project import ProjectSnapshot
from factory_pulse.services.prerequisites import CheckStatus, PrerequisiteResult
from factory_pulse.utils.helpers import utcnow

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Normal transition"
DEFAULT_BYPASS_REASON_LABEL = "Manager bypass"
AUTO_ADVANCE_REASON = "Automatic advance: all prerequisites met"

_RESULT_ERRORS = (TransitionError, InvalidTransitionOptions, BypassNotPermitted)


# ═════════════════════════════════════════════════════════════════════════════
# Value objects
# ═════════════════════════════════════════════════════════════════════════════

class TransitionPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    MUTATING = "mutating"
    RECORDING = "recording"
    REJECTED = "rejected"
    MUTATION_FAILED = "mutation_failed"


@dataclass(frozen=True)
class TransitionOptions:
    bypass_validation: bool = False
    bypass_reason: str | None = None
    reason: str | None = None
    estimated_duration: int | None = None

    def validate(self):
        if self.bypass_validation and not (self.bypass_reason or "").strip():
            raise InvalidTransitionOptions("bypass_reason is required when bypass_validation is set")
        if self.estimated_duration is not None and self.estimated_duration < 0:
            raise InvalidTransitionOptions("estimated_duration must not be negative")

    @property
    def effective_reason(self) -> str:
        if self.reason and self.reason.strip():
            return self.reason.strip()
        return DEFAULT_BYPASS_REASON_LABEL if self.bypass_validation else DEFAULT_REASON

    @classmethod
    def from_dict(cls, data: dict | None) -> "TransitionOptions":
        data = data or {}
        duration = data.get("estimated_duration")
        try:
            duration = int(duration) if duration not in (None, "") else None
        except (TypeError, ValueError):
            raise InvalidTransitionOptions(
                "estimated_duration must be an integer number of days") from None
        bypass = data.get("bypass_validation", False)
        if isinstance(bypass, str):
            bypass = bypass.strip().lower() in ("1", "true", "yes")
        return cls(
            bypass_validation=bool(bypass),
            bypass_reason=data.get("bypass_reason"),
            reason=data.get("reason"),
            estimated_duration=duration,
        )


@dataclass
class TransitionResult:
    success: bool
    project_id: str | None = None
    from_stage_id: str | None = None
    to_stage_id: str | None = None
    project: ProjectSnapshot | None = None
    error_kind: str | None = None
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    mutation_committed: bool = False
    ledger_recorded: bool = False
    bypassed: bool = False
    prerequisites: PrerequisiteResult | None = None
    error: Exception | None = None

    def __bool__(self):
        return self.success

    @classmethod
    def failed(cls, exc, *, project_id=None, from_stage_id=None, to_stage_id=None,
               bypassed=False) -> "TransitionResult":
        return cls(
            success=False,
            project_id=project_id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            error_kind=exc.kind,
            errors=list(exc.errors),
            mutation_committed=exc.mutation_committed,
            bypassed=bypassed,
            prerequisites=getattr(exc, "result", None),
            error=exc,
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "project_id": self.project_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "project": self.project.to_dict() if self.project else None,
            "error_kind": self.error_kind,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "mutation_committed": self.mutation_committed,
            "ledger_recorded": self.ledger_recorded,
            "bypassed": self.bypassed,
            "prerequisites": self.prerequisites.to_dict() if self.prerequisites else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Coordinator
# ═════════════════════════════════════════════════════════════════════════════

class TransitionCoordinator:
    """Owns the per-project in-flight slots and runs transitions."""

    def __init__(self, graph, checker, store, ledger, cache=None, *,
                 manager_privilege: str = "manager", timeout: float | None = None,
                 clock=utcnow):
        self.graph = graph
        self.checker = checker
        self.store = store
        self.ledger = ledger
        self.cache = cache
        self.manager_privilege = manager_privilege
        self.timeout = timeout
        self.clock = clock
        self._slots: dict[str, TransitionPhase] = {}
        self._lock = threading.Lock()

    # ── Slot registry ────────────────────────────────────────────────────

    def current_phase(self, project_id: str) -> TransitionPhase:
        with self._lock:
            return self._slots.get(project_id, TransitionPhase.IDLE)

    def in_flight(self) -> dict:
        with self._lock:
            return {pid: phase.value for pid, phase in self._slots.items()}

    def _acquire(self, project_id: str):
        with self._lock:
            if project_id in self._slots:
                raise ConcurrencyConflict(project_id)
            self._slots[project_id] = TransitionPhase.VALIDATING

    def _set_phase(self, project_id: str, phase: TransitionPhase):
        with self._lock:
            self._slots[project_id] = phase

    def _release(self, project_id: str):
        with self._lock:
            self._slots.pop(project_id, None)

    # ── Resolution helpers ───────────────────────────────────────────────

    def _resolve_project(self, project) -> ProjectSnapshot:
        if isinstance(project, ProjectSnapshot):
            return project
        return self.store.read_project(str(project), timeout=self.timeout)

    def _resolve_target(self, target_stage, from_stage_id):
        target_id = target_stage if isinstance(target_stage, str) else target_stage.id
        if target_id not in self.graph:
            raise StructuralViolation(from_stage_id, target_id)
        return self.graph.get_stage(target_id)

    def _current_stage(self, snapshot):
        stage_id = snapshot.current_stage_id
        if stage_id is None or stage_id not in self.graph:
            return None
        return self.graph.get_stage(stage_id)

    @staticmethod
    def _check_scope(snapshot: ProjectSnapshot, actor: ActorContext):
        if snapshot.organization_id != actor.organization_id:
            raise NotFoundError(resource="Project", resource_id=snapshot.id,
                                organization_id=actor.organization_id)

    def _check_structure(self, snapshot, target):
        if not self.graph.is_transition_allowed(snapshot.current_stage_id, target.id):
            raise StructuralViolation(snapshot.current_stage_id, target.id)

    # ── Execute ──────────────────────────────────────────────────────────

    def execute_transition(self, project, target_stage, options: TransitionOptions | None = None,
                           actor: ActorContext | None = None) -> TransitionResult:
        """Run one transition end to end. See module docstring for semantics."""
        if actor is None:
            raise PermissionDenied(None, "execute_transition")
        options = options or TransitionOptions()
        project_id = project.id if isinstance(project, ProjectSnapshot) else str(project)
        to_stage_id = target_stage if isinstance(target_stage, str) else target_stage.id
        log_extra = {
            "project_id": project_id,
            "organization_id": actor.organization_id,
            "actor_id": actor.actor_id,
            "to_stage_id": to_stage_id,
            "bypass": options.bypass_validation,
        }

        try:
            options.validate()
        except InvalidTransitionOptions as exc:
            logger.info("Transition rejected: %s", exc,
                        extra={**log_extra, "error_kind": exc.kind, "event_type": "transition_rejected"})
            return TransitionResult.failed(exc, project_id=project_id, to_stage_id=to_stage_id,
                                           bypassed=options.bypass_validation)

        try:
            self._acquire(project_id)
        except ConcurrencyConflict as exc:
            logger.warning("Transition refused, slot busy for project %s", project_id,
                           extra={**log_extra, "error_kind": exc.kind, "event_type": "transition_conflict"})
            return TransitionResult.failed(exc, project_id=project_id, to_stage_id=to_stage_id,
                                           bypassed=options.bypass_validation)

        provisional = None
        from_stage_id = None
        try:
            snapshot = self._resolve_project(project)
            self._check_scope(snapshot, actor)
            from_stage_id = snapshot.current_stage_id
            log_extra["from_stage_id"] = from_stage_id

            target = self._resolve_target(target_stage, from_stage_id)
            self._check_structure(snapshot, target)

            prereq = None
            warnings: list[str] = []
            if options.bypass_validation:
                if not actor.has_privilege(self.manager_privilege):
                    raise BypassNotPermitted(actor.actor_id, self.manager_privilege)
            else:
                prereq = self.checker.check_prerequisites(snapshot, target, self._current_stage(snapshot))
                if not prereq.is_valid:
                    raise PrerequisiteFailure(target.id, prereq)
                warnings.extend(prereq.warnings)

            # ── Mutation ──
            self._set_phase(project_id, TransitionPhase.MUTATING)
            entered_at = self.clock()
            status = "completed" if self.graph.is_terminal(target.id) else None
            if self.cache is not None:
                provisional = self.cache.stage_provisional(snapshot, target.id, entered_at)
            committed = self._mutate(snapshot, target, entered_at, status)

            # ── Audit ──
            self._set_phase(project_id, TransitionPhase.RECORDING)
            duration = options.estimated_duration
            if duration is None:
                duration = target.estimated_duration_days
            ledger_recorded = self.ledger.record(
                organization_id=snapshot.organization_id,
                project_id=snapshot.id,
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                actor_id=actor.actor_id,
                reason=options.effective_reason,
                bypass_reason=options.bypass_reason.strip() if options.bypass_validation else None,
                estimated_duration_days=duration,
                timestamp=committed.stage_entered_at,
            )
            if not ledger_recorded:
                warnings.append("Stage history entry could not be written; the stage change itself succeeded")

            if provisional is not None:
                self._confirm(provisional, committed, warnings)
                provisional = None

            logger.info(
                "Project %s moved %s -> %s%s", snapshot.id, from_stage_id, target.id,
                " (bypass)" if options.bypass_validation else "",
                extra={**log_extra, "event_type": "transition_committed"},
            )
            return TransitionResult(
                success=True,
                project_id=snapshot.id,
                from_stage_id=from_stage_id,
                to_stage_id=target.id,
                project=committed,
                warnings=warnings,
                mutation_committed=True,
                ledger_recorded=ledger_recorded,
                bypassed=options.bypass_validation,
                prerequisites=prereq,
            )

        except _RESULT_ERRORS as exc:
            phase = self.current_phase(project_id)
            failed_phase = (TransitionPhase.MUTATION_FAILED if phase == TransitionPhase.MUTATING
                            else TransitionPhase.REJECTED)
            self._set_phase(project_id, failed_phase)
            log = logger.error if isinstance(exc, BackendFailure) else logger.info
            log("Transition %s for project %s: %s", failed_phase.value, project_id, exc,
                extra={**log_extra, "error_kind": exc.kind, "event_type": f"transition_{failed_phase.value}"})
            return TransitionResult.failed(exc, project_id=project_id, from_stage_id=from_stage_id,
                                           to_stage_id=to_stage_id, bypassed=options.bypass_validation)
        finally:
            if provisional is not None:
                provisional.rollback()
            self._release(project_id)

    def _mutate(self, snapshot, target, entered_at, status) -> ProjectSnapshot:
        try:
            return self.store.mutate_project_stage(
                snapshot.id, target.id, entered_at,
                expected_stage_id=snapshot.current_stage_id,
                status=status,
                timeout=self.timeout,
            )
        except StaleProjectState as exc:
            raise ConcurrencyConflict(
                snapshot.id,
                reason=(f"Project {snapshot.id} is no longer in stage "
                        f"'{exc.expected_stage_id}' (now '{exc.actual_stage_id}')"),
            ) from exc
        except NotFoundError as exc:
            raise BackendFailure("mutate_project_stage", "not_found", exc) from exc

    def _confirm(self, provisional, committed, warnings):
        try:
            provisional.confirm(committed)
        except Exception:
            logger.warning("Cache update failed after committed transition for project %s",
                           committed.id, exc_info=True,
                           extra={"project_id": committed.id, "event_type": "cache_confirm_failed"})
            provisional.rollback()
            try:
                self.cache.invalidate(committed.id)
            except Exception:
                logger.warning("Cache invalidation also failed for project %s", committed.id,
                               exc_info=True)
            warnings.append("Project cache could not be updated; it will refresh on next read")

    # ── Read-only helpers ────────────────────────────────────────────────

    def validate_transition(self, project, target_stage) -> PrerequisiteResult:
        """Structural check plus prerequisites, combined in one result."""
        snapshot = self._resolve_project(project)
        try:
            target = self._resolve_target(target_stage, snapshot.current_stage_id)
            self._check_structure(snapshot, target)
        except StructuralViolation as exc:
            return PrerequisiteResult.rejected(str(exc))
        return self.checker.check_prerequisites(snapshot, target, self._current_stage(snapshot))

    def can_transition_to(self, project, target_stage) -> bool:
        return self.validate_transition(project, target_stage).is_valid

    def get_available_transitions(self, project) -> list[dict]:
        """Every structurally allowed next stage with its validation outcome."""
        snapshot = self._resolve_project(project)
        current = self._current_stage(snapshot)
        if snapshot.current_stage_id is not None and current is None:
            return []
        options = []
        for stage in self.graph.get_allowed_transitions(snapshot.current_stage_id):
            result = self.checker.check_prerequisites(snapshot, stage, current)
            options.append({
                "stage": stage.to_dict(),
                "is_next": current is None or stage.order == current.order + 1,
                "validation": result.to_dict(),
            })
        return options

    def get_transition_recommendations(self, project, target_stage) -> dict:
        result = self.validate_transition(project, target_stage)
        blockers, recommendations, warnings = [], [], []
        if not result.checks:
            blockers.extend(result.errors)
        for check in result.checks:
            if check.status == CheckStatus.FAILED:
                blockers.append(f"Complete {check.name}: {check.detail}")
            elif check.status == CheckStatus.WARNING and check.manual_confirmation:
                warnings.append(check.message)
            elif check.status == CheckStatus.WARNING:
                recommendations.append(f"Consider completing {check.name}: {check.detail}")
        return {
            "can_proceed": result.is_valid,
            "requires_manager_approval": result.requires_manager_approval,
            "blockers": blockers,
            "recommendations": recommendations,
            "warnings": warnings,
        }

    # ── Auto-advance ─────────────────────────────────────────────────────

    def check_auto_advance(self, project) -> dict:
        """Whether the project may move to its linear next stage unattended."""
        snapshot = self._resolve_project(project)
        if snapshot.current_stage_id is not None and snapshot.current_stage_id not in self.graph:
            return {"can_auto_advance": False, "next_stage_id": None,
                    "reason": f"Unknown current stage '{snapshot.current_stage_id}'"}
        next_stage = self.graph.get_next_stage(snapshot.current_stage_id)
        if next_stage is None:
            return {"can_auto_advance": False, "next_stage_id": None,
                    "reason": "Project is in a terminal stage"}
        result = self.checker.check_prerequisites(snapshot, next_stage, self._current_stage(snapshot))
        reason = None
        if not result.is_valid:
            reason = f"{len(result.errors)} prerequisite(s) not met"
        elif not result.can_auto_advance:
            reason = "Manual confirmation required"
        return {
            "can_auto_advance": result.can_auto_advance,
            "next_stage_id": next_stage.id,
            "reason": reason,
            "validation": result.to_dict(),
        }

    def auto_advance(self, project, actor: ActorContext | None = None) -> TransitionResult | None:
        """Advance to the next stage if eligible; None when not eligible."""
        snapshot = self._resolve_project(project)
        check = self.check_auto_advance(snapshot)
        if not check["can_auto_advance"]:
            logger.debug("Auto-advance skipped for %s: %s", snapshot.id, check["reason"])
            return None
        actor = actor or system_actor(snapshot.organization_id)
        return self.execute_transition(
            snapshot, check["next_stage_id"],
            TransitionOptions(reason=AUTO_ADVANCE_REASON), actor,
        )
