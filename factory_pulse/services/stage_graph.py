"""
Workflow Stage Graph — canonical stage definitions and allowed edges.

The graph is loaded once per process and is read-only afterwards. It checks
its own definition at load time: unique ids, every edge pointing at an
existing stage, every prerequisite id present in the rule registry.

Default pipeline (stage ids):

    inquiry_received → technical_review → supplier_rfq_sent → quoted
        → order_confirmed → procurement_planning → in_production → completed

plus two skip edges, each gated by the ``stage_skip`` rule:

    technical_review → quoted
    order_confirmed  → in_production

Usage:
    from factory_pulse.services.stage_graph import get_stage_graph

    graph = get_stage_graph()
    graph.is_transition_allowed("quoted", "order_confirmed")   # True
    [s.id for s in graph.get_allowed_transitions("technical_review")]
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from factory_pulse.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowStage:
    """One node of the pipeline. Immutable."""

    id: str
    name: str
    order: int
    allowed_next_stage_ids: frozenset = field(default_factory=frozenset)
    required_prerequisites: tuple = ()
    slug: str | None = None
    description: str = ""
    responsible_roles: tuple = ()
    estimated_duration_days: int | None = None
    exit_criteria: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug or self.id,
            "order": self.order,
            "allowed_next_stage_ids": sorted(self.allowed_next_stage_ids),
            "required_prerequisites": list(self.required_prerequisites),
            "description": self.description,
            "responsible_roles": list(self.responsible_roles),
            "estimated_duration_days": self.estimated_duration_days,
            "exit_criteria": self.exit_criteria,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowStage":
        return cls(
            id=data["id"],
            name=data["name"],
            order=int(data["order"]),
            allowed_next_stage_ids=frozenset(data.get("allowed_next_stage_ids") or ()),
            required_prerequisites=tuple(data.get("required_prerequisites") or ()),
            slug=data.get("slug"),
            description=data.get("description") or "",
            responsible_roles=tuple(data.get("responsible_roles") or ()),
            estimated_duration_days=data.get("estimated_duration_days"),
            exit_criteria=data.get("exit_criteria") or "",
        )


class StageGraphError(ValueError):
    """The stage definitions are inconsistent. Raised at load time only."""


class StageGraph:
    """Immutable, validated set of workflow stages."""

    def __init__(self, stages, known_rules=None):
        stages = list(stages)
        self._stages: dict[str, WorkflowStage] = {}
        for stage in stages:
            if stage.id in self._stages:
                raise StageGraphError(f"Duplicate stage id '{stage.id}'")
            self._stages[stage.id] = stage
        self._ordered = tuple(sorted(stages, key=lambda s: (s.order, s.id)))
        self._validate(known_rules)

        targets = set()
        for stage in self._ordered:
            targets.update(stage.allowed_next_stage_ids)
        self._initial = tuple(s for s in self._ordered if s.id not in targets)
        if not self._initial:
            raise StageGraphError("Stage graph has no entry stage (every stage is an edge target)")

    def _validate(self, known_rules):
        if not self._stages:
            raise StageGraphError("Stage graph must define at least one stage")
        for stage in self._ordered:
            for target in stage.allowed_next_stage_ids:
                if target not in self._stages:
                    raise StageGraphError(
                        f"Stage '{stage.id}' has an edge to unknown stage '{target}'"
                    )
                if target == stage.id:
                    raise StageGraphError(f"Stage '{stage.id}' has an edge to itself")
            if known_rules is not None:
                for rule_id in stage.required_prerequisites:
                    if rule_id not in known_rules:
                        raise StageGraphError(
                            f"Stage '{stage.id}' requires unknown prerequisite '{rule_id}'"
                        )

    # ── Lookups ──────────────────────────────────────────────────────────

    def get_stage(self, stage_id: str) -> WorkflowStage:
        stage = self._stages.get(stage_id)
        if stage is None:
            raise NotFoundError(resource="WorkflowStage", resource_id=stage_id)
        return stage

    def has_stage(self, stage_id: str | None) -> bool:
        return stage_id in self._stages

    def all_stages(self) -> list[WorkflowStage]:
        return list(self._ordered)

    def get_initial_stages(self) -> list[WorkflowStage]:
        """Stages that no edge points at; the only valid first assignment."""
        return list(self._initial)

    def get_allowed_transitions(self, from_stage_id: str | None) -> list[WorkflowStage]:
        """Stages directly reachable from ``from_stage_id``, ordered by ``order``.

        ``None`` means the project has no stage yet; the entry stages are
        returned.
        """
        if from_stage_id is None:
            return self.get_initial_stages()
        current = self.get_stage(from_stage_id)
        return [s for s in self._ordered if s.id in current.allowed_next_stage_ids]

    def is_transition_allowed(self, from_stage_id: str | None, to_stage_id: str) -> bool:
        if to_stage_id not in self._stages:
            return False
        if from_stage_id is None:
            return any(s.id == to_stage_id for s in self._initial)
        current = self._stages.get(from_stage_id)
        if current is None:
            return False
        return to_stage_id in current.allowed_next_stage_ids

    def get_next_stage(self, stage_id: str | None) -> WorkflowStage | None:
        """Default linear successor by ``order`` among allowed targets."""
        if stage_id is None:
            return self._initial[0]
        allowed = self.get_allowed_transitions(stage_id)
        current = self.get_stage(stage_id)
        later = [s for s in allowed if s.order > current.order]
        return later[0] if later else None

    def get_terminal_stages(self) -> list[WorkflowStage]:
        return [s for s in self._ordered if not s.allowed_next_stage_ids]

    def is_terminal(self, stage_id: str | None) -> bool:
        stage = self._stages.get(stage_id)
        return stage is not None and not stage.allowed_next_stage_ids

    def stages_skipped(self, from_stage_id: str | None, to_stage_id: str) -> list[WorkflowStage]:
        """Stages strictly between ``from`` and ``to`` by order."""
        if from_stage_id is None or from_stage_id not in self._stages:
            return []
        lo = self._stages[from_stage_id].order
        hi = self.get_stage(to_stage_id).order
        return [s for s in self._ordered if lo < s.order < hi]

    def __len__(self):
        return len(self._stages)

    def __contains__(self, stage_id):
        return stage_id in self._stages

    def __iter__(self):
        return iter(self._ordered)

    def to_dict(self) -> dict:
        return {
            "stages": [s.to_dict() for s in self._ordered],
            "initial_stage_ids": [s.id for s in self._initial],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Default manufacturing pipeline
# ═════════════════════════════════════════════════════════════════════════════

_COMMON = ("project_active", "project_title", "customer_assigned")

DEFAULT_STAGES: tuple[WorkflowStage, ...] = (
    WorkflowStage(
        id="inquiry_received", slug="inquiry_received", name="Inquiry Received", order=1,
        allowed_next_stage_ids=frozenset({"technical_review"}),
        required_prerequisites=("project_title", "project_description", "priority_set"),
        description="Customer RFQ submitted and initial review completed",
        responsible_roles=("sales", "procurement"),
        estimated_duration_days=20,
        exit_criteria="Customer and scope identified",
    ),
    WorkflowStage(
        id="technical_review", slug="technical_review", name="Technical Review", order=2,
        allowed_next_stage_ids=frozenset({"supplier_rfq_sent", "quoted"}),
        required_prerequisites=_COMMON + ("project_description", "priority_set",
                                          "required_documents"),
        description="Engineering, QA, and Production teams review technical requirements",
        responsible_roles=("engineering", "qa", "production"),
        estimated_duration_days=10,
        exit_criteria="All technical reviews approved",
    ),
    WorkflowStage(
        id="supplier_rfq_sent", slug="supplier_rfq_sent", name="Supplier RFQ Sent", order=3,
        allowed_next_stage_ids=frozenset({"quoted"}),
        required_prerequisites=_COMMON + ("technical_reviews_approved", "required_documents"),
        description="RFQs sent to qualified suppliers for component pricing and lead times",
        responsible_roles=("procurement",),
        estimated_duration_days=5,
        exit_criteria="Supplier quotes received",
    ),
    WorkflowStage(
        id="quoted", slug="quoted", name="Quoted", order=4,
        allowed_next_stage_ids=frozenset({"order_confirmed"}),
        required_prerequisites=_COMMON + ("stage_skip", "technical_reviews_approved",
                                          "supplier_quotes_received", "required_documents"),
        description="Customer quote generated and sent based on supplier responses",
        responsible_roles=("sales", "procurement"),
        estimated_duration_days=5,
        exit_criteria="Customer accepted the quote",
    ),
    WorkflowStage(
        id="order_confirmed", slug="order_confirmed", name="Order Confirmed", order=5,
        allowed_next_stage_ids=frozenset({"procurement_planning", "in_production"}),
        required_prerequisites=_COMMON + ("quote_value_set", "required_documents"),
        description="Customer accepted quote and order confirmed",
        responsible_roles=("sales", "procurement", "production"),
        estimated_duration_days=5,
        exit_criteria="Purchase order on file",
    ),
    WorkflowStage(
        id="procurement_planning", slug="procurement_planning", name="Procurement Planning",
        order=6,
        allowed_next_stage_ids=frozenset({"in_production"}),
        required_prerequisites=_COMMON + ("due_date_set",),
        description="BOM finalized, purchase orders issued, material planning completed",
        responsible_roles=("procurement", "production"),
        estimated_duration_days=5,
        exit_criteria="Materials ordered and production scheduled",
    ),
    WorkflowStage(
        id="in_production", slug="in_production", name="In Production", order=7,
        allowed_next_stage_ids=frozenset({"completed"}),
        required_prerequisites=_COMMON + ("stage_skip", "due_date_set", "required_documents"),
        description="Manufacturing process initiated and quality control implemented",
        responsible_roles=("production", "qa"),
        estimated_duration_days=4,
        exit_criteria="Production finished and quality approved",
    ),
    WorkflowStage(
        id="completed", slug="completed", name="Completed", order=8,
        allowed_next_stage_ids=frozenset(),
        required_prerequisites=_COMMON + ("required_documents",),
        description="Order fulfilled and delivered to customer",
        responsible_roles=("sales", "production"),
        estimated_duration_days=3,
        exit_criteria="Delivery confirmed",
    ),
)


# ── Process-wide instance ────────────────────────────────────────────────

_graph: StageGraph | None = None
_graph_lock = threading.Lock()


def load_stage_graph(stages=None) -> StageGraph:
    """Build and validate a graph, then install it as the process-wide one."""
    global _graph
    from factory_pulse.services.prerequisites import registered_rule_ids

    graph = StageGraph(stages if stages is not None else DEFAULT_STAGES,
                       known_rules=registered_rule_ids())
    with _graph_lock:
        _graph = graph
    logger.info("Stage graph loaded: %d stages, entry=%s",
                len(graph), [s.id for s in graph.get_initial_stages()])
    return graph


def get_stage_graph() -> StageGraph:
    """Return the process-wide graph, loading the default pipeline on first use."""
    if _graph is None:
        return load_stage_graph()
    return _graph
