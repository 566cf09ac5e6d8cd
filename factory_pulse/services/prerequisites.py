"""
Prerequisite Checker — domain rules evaluated before a project enters a stage.

Rules live in a module-level registry and are attached to stages by id
(``WorkflowStage.required_prerequisites``). Every rule listed for the target
stage runs, in declared order, with no short-circuit, so the caller receives
the complete list of blockers in one round-trip.

A rule yields zero or more ``RuleOutcome`` lines:
    passed   → nothing reported
    failed   → blocking error
    warning  → advisory
An empty yield means the rule does not apply to this transition.

Usage:
    from factory_pulse.services.prerequisites import PrerequisiteChecker

    checker = PrerequisiteChecker(collaborators)
    result = checker.check_prerequisites(snapshot, target_stage, current_stage)
    if not result.is_valid:
        print(result.errors)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums & Data Classes
# ═════════════════════════════════════════════════════════════════════════════

class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


@dataclass(frozen=True)
class RuleOutcome:
    """What a rule function returns; the checker adds rule id and name."""
    status: CheckStatus
    detail: str = ""
    name: str | None = None
    manual_confirmation: bool = False


def passed(detail: str = "", **kw) -> RuleOutcome:
    return RuleOutcome(CheckStatus.PASSED, detail, **kw)


def failed(detail: str, **kw) -> RuleOutcome:
    return RuleOutcome(CheckStatus.FAILED, detail, **kw)


def warning(detail: str, **kw) -> RuleOutcome:
    return RuleOutcome(CheckStatus.WARNING, detail, **kw)


@dataclass(frozen=True)
class PrerequisiteCheck:
    """Single evaluated line, rendered one-per-row by UIs."""
    rule_id: str
    name: str
    status: CheckStatus
    detail: str = ""
    category: str = "project_data"
    approval_gated: bool = False
    manual_confirmation: bool = False

    @property
    def message(self) -> str:
        return f"{self.name}: {self.detail}" if self.detail else self.name

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "status": self.status.value,
            "detail": self.detail,
            "category": self.category,
            "approval_gated": self.approval_gated,
            "manual_confirmation": self.manual_confirmation,
        }


@dataclass(frozen=True)
class PrerequisiteResult:
    """Outcome of validating one proposed transition. Never persisted."""
    is_valid: bool
    errors: tuple = ()
    warnings: tuple = ()
    can_auto_advance: bool = False
    requires_manager_approval: bool = False
    checks: tuple = ()

    @classmethod
    def from_checks(cls, checks: Iterable[PrerequisiteCheck]) -> "PrerequisiteResult":
        checks = tuple(checks)
        errors = tuple(c.message for c in checks if c.status == CheckStatus.FAILED)
        warnings = tuple(c.message for c in checks if c.status == CheckStatus.WARNING)
        is_valid = not errors
        return cls(
            is_valid=is_valid,
            errors=errors,
            warnings=warnings,
            can_auto_advance=is_valid and not any(c.manual_confirmation for c in checks),
            requires_manager_approval=any(c.approval_gated for c in checks),
            checks=checks,
        )

    @classmethod
    def rejected(cls, message: str) -> "PrerequisiteResult":
        """A result that blocks for a reason outside the rule set (e.g. no edge)."""
        return cls(is_valid=False, errors=(message,))

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "can_auto_advance": self.can_auto_advance,
            "requires_manager_approval": self.requires_manager_approval,
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass(frozen=True)
class RuleContext:
    """Everything a rule may inspect. ``project`` is a ProjectSnapshot."""
    project: object
    target_stage: object
    current_stage: object | None
    collaborators: object | None = None
    stages_skipped: tuple = ()


@dataclass(frozen=True)
class RuleSpec:
    rule_id: str
    name: str
    fn: Callable[[RuleContext], Iterable[RuleOutcome]]
    category: str = "project_data"
    approval_gated: bool = False
    description: str = ""


# ═════════════════════════════════════════════════════════════════════════════
# Rule Registry
# ═════════════════════════════════════════════════════════════════════════════

_RULES: dict[str, RuleSpec] = {}


def prerequisite(rule_id: str, *, name: str, category: str = "project_data",
                 approval_gated: bool = False):
    """Decorator: register a rule function under ``rule_id``.

    Usage:
        @prerequisite("quote_value_set", name="Quote Value", category="stage_specific")
        def _quote_value(ctx):
            ...
    """
    def decorator(fn):
        if rule_id in _RULES:
            raise ValueError(f"Prerequisite rule '{rule_id}' is already registered")
        _RULES[rule_id] = RuleSpec(
            rule_id=rule_id,
            name=name,
            fn=fn,
            category=category,
            approval_gated=approval_gated,
            description=(fn.__doc__ or "").strip().splitlines()[0] if fn.__doc__ else "",
        )
        return fn
    return decorator


def registered_rule_ids() -> frozenset:
    return frozenset(_RULES)


def get_rule(rule_id: str) -> RuleSpec:
    return _RULES[rule_id]


def list_rules() -> list[dict]:
    return [
        {
            "rule_id": spec.rule_id,
            "name": spec.name,
            "category": spec.category,
            "approval_gated": spec.approval_gated,
            "description": spec.description,
        }
        for spec in _RULES.values()
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Rule Definitions
# ═════════════════════════════════════════════════════════════════════════════

# Per-stage document requirements: (document_type, label, required)
STAGE_DOCUMENT_REQUIREMENTS: dict[str, tuple] = {
    "technical_review": (
        ("rfq", "RFQ Document", True),
        ("drawing", "Technical Drawings", False),
    ),
    "supplier_rfq_sent": (
        ("bom", "Bill of Materials", True),
        ("specification", "Technical Specifications", False),
    ),
    "quoted": (
        ("quote", "Customer Quote", True),
        ("supplier_quote", "Supplier Quotes", False),
    ),
    "order_confirmed": (
        ("po", "Purchase Order", True),
        ("contract", "Contract/Agreement", False),
    ),
    "in_production": (
        ("work_order", "Work Order", True),
        ("quality_plan", "Quality Plan", False),
    ),
    "completed": (
        ("shipping_doc", "Shipping Documents", True),
        ("delivery_confirmation", "Delivery Confirmation", False),
    ),
}

CLOSED_PROJECT_STATUSES = ("cancelled", "completed")


@prerequisite("project_active", name="Project Status", category="system")
def _project_active(ctx):
    """Cancelled or completed projects do not change stage."""
    status = ctx.project.status
    if status in CLOSED_PROJECT_STATUSES:
        return [failed(f"Project is {status}; reopen it before changing stage")]
    return [passed()]


@prerequisite("project_title", name="Project Title")
def _project_title(ctx):
    """Project has a non-blank title."""
    if (ctx.project.title or "").strip():
        return [passed()]
    return [failed("Project title is required")]


@prerequisite("customer_assigned", name="Customer Information")
def _customer_assigned(ctx):
    """A customer is assigned to the project."""
    if ctx.project.customer_id:
        return [passed()]
    return [failed("Customer must be assigned to the project")]


@prerequisite("project_description", name="Project Description")
def _project_description(ctx):
    """Project has a description."""
    if (ctx.project.description or "").strip():
        return [passed()]
    return [warning("Project description helps with tracking and communication")]


@prerequisite("priority_set", name="Project Priority")
def _priority_set(ctx):
    """Project priority is set."""
    if ctx.project.priority:
        return [passed()]
    return [warning("Setting priority helps with resource allocation")]


@prerequisite("required_documents", name="Documents", category="documents")
def _required_documents(ctx):
    """Stage-specific documents are on file."""
    requirements = STAGE_DOCUMENT_REQUIREMENTS.get(ctx.target_stage.id, ())
    outcomes = []
    for doc_type, label, required in requirements:
        if ctx.collaborators.documents.has_document(ctx.project.id, doc_type):
            outcomes.append(passed(name=label))
        elif required:
            outcomes.append(failed(f"{label} is required for this stage", name=label))
        else:
            outcomes.append(warning(f"{label} is recommended for this stage", name=label))
    return outcomes


@prerequisite("technical_reviews_approved", name="Technical Reviews",
              category="approvals", approval_gated=True)
def _technical_reviews_approved(ctx):
    """Engineering, QA and production reviews are approved."""
    summary = ctx.collaborators.reviews.review_summary(ctx.project.id)
    if summary["total"] == 0:
        return [failed("No technical reviews on file")]
    if summary["rejected"]:
        return [failed(f"{summary['rejected']} review(s) rejected")]
    if summary["open"]:
        return [failed(f"{summary['open']} of {summary['total']} review(s) still open")]
    return [passed(f"{summary['approved']} review(s) approved")]


@prerequisite("supplier_quotes_received", name="Supplier Quotes",
              category="stage_specific", approval_gated=True)
def _supplier_quotes_received(ctx):
    """Supplier RFQs have been answered."""
    summary = ctx.collaborators.supplier_quotes.quote_summary(ctx.project.id)
    if summary["requested"] == 0:
        return [warning("No supplier RFQs on file; quote will be prepared without supplier pricing",
                        manual_confirmation=True)]
    if summary["received"] == 0:
        return [failed(f"None of {summary['requested']} supplier RFQ(s) answered")]
    if summary["outstanding"]:
        return [warning(f"{summary['outstanding']} of {summary['requested']} supplier RFQ(s) "
                        "still outstanding", manual_confirmation=True)]
    return [passed(f"{summary['received']} supplier quote(s) received")]


@prerequisite("quote_value_set", name="Quote Approval", category="stage_specific")
def _quote_value_set(ctx):
    """Quoted value is set before order confirmation."""
    value = ctx.project.estimated_value
    if value is not None and value > 0:
        return [passed()]
    return [failed("Project value must be set before order confirmation")]


@prerequisite("due_date_set", name="Order Details", category="stage_specific")
def _due_date_set(ctx):
    """Due date is known for planning."""
    if ctx.project.due_date:
        return [passed()]
    return [warning("Due date helps with procurement planning")]


@prerequisite("stage_skip", name="Stage Skip Validation", category="system",
              approval_gated=True)
def _stage_skip(ctx):
    """Skipping stages requires manager approval."""
    if not ctx.stages_skipped:
        return []
    names = ", ".join(s.name for s in ctx.stages_skipped)
    return [warning(f"Skipping {len(ctx.stages_skipped)} stage(s) ({names}) "
                    "requires manager approval", manual_confirmation=True)]


# ═════════════════════════════════════════════════════════════════════════════
# Checker
# ═════════════════════════════════════════════════════════════════════════════

class PrerequisiteChecker:
    """Runs the rules of a target stage against a project. Read-only."""

    def __init__(self, collaborators=None, graph=None):
        self.collaborators = collaborators
        self.graph = graph

    def check_prerequisites(self, project, target_stage, current_stage=None) -> PrerequisiteResult:
        ctx = RuleContext(
            project=project,
            target_stage=target_stage,
            current_stage=current_stage,
            collaborators=self.collaborators,
            stages_skipped=self._skipped(current_stage, target_stage),
        )
        checks: list[PrerequisiteCheck] = []
        for rule_id in target_stage.required_prerequisites:
            spec = _RULES.get(rule_id)
            if spec is None:
                checks.append(PrerequisiteCheck(
                    rule_id=rule_id, name=rule_id, status=CheckStatus.FAILED,
                    detail="Unknown prerequisite rule", category="system",
                ))
                continue
            checks.extend(self._run_rule(spec, ctx))

        result = PrerequisiteResult.from_checks(checks)
        logger.debug(
            "Prerequisites for %s -> %s: valid=%s errors=%d warnings=%d",
            project.id, target_stage.id, result.is_valid, len(result.errors), len(result.warnings),
            extra={"project_id": project.id, "to_stage_id": target_stage.id},
        )
        return result

    def _run_rule(self, spec: RuleSpec, ctx: RuleContext) -> list[PrerequisiteCheck]:
        try:
            outcomes = list(spec.fn(ctx) or ())
        except Exception:
            logger.error(
                "Prerequisite rule %s raised for project %s",
                spec.rule_id, ctx.project.id, exc_info=True,
                extra={"project_id": ctx.project.id, "to_stage_id": ctx.target_stage.id},
            )
            outcomes = [failed("could not be verified")]
        return [
            PrerequisiteCheck(
                rule_id=spec.rule_id,
                name=o.name or spec.name,
                status=o.status,
                detail=o.detail,
                category=spec.category,
                approval_gated=spec.approval_gated,
                manual_confirmation=o.manual_confirmation,
            )
            for o in outcomes
        ]

    def _skipped(self, current_stage, target_stage) -> tuple:
        if current_stage is None or self.graph is None:
            return ()
        if current_stage.id not in self.graph or target_stage.id not in self.graph:
            return ()
        return tuple(self.graph.stages_skipped(current_stage.id, target_stage.id))
