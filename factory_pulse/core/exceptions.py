"""
Engine-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Two families live here:

  * generic service errors (NotFoundError, ValidationError, ConflictError,
    PermissionDenied) shared by every service;
  * the stage-transition taxonomy (StructuralViolation, PrerequisiteFailure,
    ConcurrencyConflict, BackendFailure, LedgerWriteFailure).

StructuralViolation and PrerequisiteFailure are always raised before any
mutation is issued, so reporting them never implies side effects.
BackendFailure and LedgerWriteFailure may follow partial progress; both carry
``mutation_committed`` so callers know which side succeeded.

Usage:
    from factory_pulse.core.exceptions import NotFoundError, StructuralViolation

    raise NotFoundError(resource="Project", resource_id="PRJ-1")
    raise StructuralViolation("s2", "s5")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-organization access
    attempts, so a 404 never confirms that a record exists elsewhere.

    Args:
        resource: Human-readable entity name (e.g. "Project", "WorkflowStage").
        resource_id: The id that was looked up. Included in logs, not in HTTP response.
        organization_id: Optional, the scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        organization_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.organization_id = organization_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if organization_id is not None:
            msg += f" (organization={organization_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value. Maps to HTTP 409."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class PermissionDenied(Exception):
    """Raised when the actor lacks the privilege required for an action."""

    def __init__(self, actor_id: str | None, action: str, required: str | None = None):
        req_msg = f" (requires {required})" if required else ""
        super().__init__(f"Actor {actor_id} does not have permission for '{action}'{req_msg}")
        self.actor_id = actor_id
        self.action = action
        self.required = required


# ═════════════════════════════════════════════════════════════════════════════
# Stage-transition taxonomy
# ═════════════════════════════════════════════════════════════════════════════


class TransitionError(Exception):
    """Base class for every stage-transition failure.

    Attributes:
        kind: Stable machine-readable taxonomy name.
        errors: Human-readable reason list (never empty).
        mutation_committed: Whether the stage mutation reached the store.
    """

    kind = "TransitionError"
    mutation_committed = False

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class InvalidTransitionOptions(ValidationError):
    """Raised when the transition options themselves are inconsistent.

    ``bypass_validation`` without a non-empty ``bypass_reason`` always lands
    here, regardless of prerequisite state.
    """

    kind = "InvalidTransitionOptions"
    mutation_committed = False

    def __init__(self, message: str) -> None:
        super().__init__(message, details={"errors": [message]})
        self.errors = [message]


class BypassNotPermitted(PermissionDenied):
    """Raised when an actor without manager privilege requests a bypass."""

    kind = "BypassNotPermitted"
    mutation_committed = False

    def __init__(self, actor_id: str | None, required: str) -> None:
        super().__init__(actor_id, "bypass_validation", required)
        self.errors = [str(self)]


class StructuralViolation(TransitionError):
    """Target stage is not reachable from the current stage. Never bypassable."""

    kind = "StructuralViolation"

    def __init__(self, from_stage_id: str | None, to_stage_id: str) -> None:
        if from_stage_id is None:
            msg = f"Stage '{to_stage_id}' is not a valid entry stage"
        else:
            msg = f"Stage '{to_stage_id}' is not reachable from stage '{from_stage_id}'"
        super().__init__(msg)
        self.from_stage_id = from_stage_id
        self.to_stage_id = to_stage_id


class PrerequisiteFailure(TransitionError):
    """One or more domain rules blocked the transition.

    Carries the full PrerequisiteResult so callers can show every blocker
    at once.
    """

    kind = "PrerequisiteFailure"

    def __init__(self, to_stage_id: str, result) -> None:
        errors = list(result.errors)
        super().__init__(
            f"{len(errors)} prerequisite(s) not met for stage '{to_stage_id}'",
            errors,
        )
        self.to_stage_id = to_stage_id
        self.result = result


class ConcurrencyConflict(TransitionError):
    """A transition is already in flight for the project, or the project
    moved underneath us (compare-and-set miss)."""

    kind = "ConcurrencyConflict"

    def __init__(self, project_id: str, reason: str | None = None) -> None:
        msg = reason or f"A stage transition is already in progress for project {project_id}"
        super().__init__(msg)
        self.project_id = project_id


class BackendFailure(TransitionError):
    """The data store failed or timed out. Timeout is failure, never unknown.

    Args:
        operation: Store operation that failed (e.g. "mutate_project_stage").
        code: Structured error code ("timeout", "database", "not_found", ...).
        cause: Underlying exception, if any.
    """

    kind = "BackendFailure"

    def __init__(self, operation: str, code: str, cause: Exception | None = None) -> None:
        msg = f"Backend operation '{operation}' failed ({code})"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.operation = operation
        self.code = code
        self.cause = cause


class StaleProjectState(BackendFailure):
    """Compare-and-set miss: the stored stage differs from the expected one."""

    def __init__(self, project_id: str, expected_stage_id: str | None, actual_stage_id: str | None):
        super().__init__("mutate_project_stage", "stale_state")
        self.project_id = project_id
        self.expected_stage_id = expected_stage_id
        self.actual_stage_id = actual_stage_id


class LedgerWriteFailure(TransitionError):
    """Non-fatal: the stage mutation committed but its ledger entry did not."""

    kind = "LedgerWriteFailure"
    mutation_committed = True

    def __init__(self, project_id: str, cause: Exception | None = None) -> None:
        msg = f"Stage history entry for project {project_id} could not be written"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.project_id = project_id
        self.cause = cause
