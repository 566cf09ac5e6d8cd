"""
Prerequisite checker tests.

Rules are exercised against detached ProjectSnapshots with fake
collaborators, plus one pass through the SQL-backed collaborators.
"""

from datetime import date

import pytest

from factory_pulse.models.project import ProjectSnapshot
from factory_pulse.services.collaborators import Collaborators, sql_collaborators
from factory_pulse.services.prerequisites import (
    CheckStatus,
    PrerequisiteChecker,
    list_rules,
    prerequisite,
)
from factory_pulse.services.stage_graph import DEFAULT_STAGES, StageGraph, WorkflowStage


# ═════════════════════════════════════════════════════════════════════════════
# Fakes
# ═════════════════════════════════════════════════════════════════════════════

class FakeDocuments:
    def __init__(self, types=()):
        self.types = set(types)

    def has_document(self, project_id, document_type):
        return document_type in self.types


class FakeReviews:
    def __init__(self, total=0, approved=0, rejected=0):
        self.summary = {"total": total, "approved": approved, "rejected": rejected,
                        "open": total - approved - rejected}

    def review_summary(self, project_id):
        return self.summary


class FakeQuotes:
    def __init__(self, requested=0, received=0):
        self.summary = {"requested": requested, "received": received,
                        "outstanding": requested - received}

    def quote_summary(self, project_id):
        return self.summary


class ExplodingReviews:
    def review_summary(self, project_id):
        raise ConnectionError("review service down")


def _collab(docs=(), reviews=None, quotes=None):
    return Collaborators(
        documents=FakeDocuments(docs),
        reviews=reviews or FakeReviews(total=2, approved=2),
        supplier_quotes=quotes or FakeQuotes(requested=2, received=2),
    )


def _project(**overrides):
    fields = dict(
        id="PRJ-1", organization_id="org-acme", title="Manifolds", description="Batch",
        customer_id="cust-1", priority="high", estimated_value=1000.0,
        due_date=date(2030, 1, 1), current_stage_id="supplier_rfq_sent",
    )
    fields.update(overrides)
    return ProjectSnapshot(**fields)


@pytest.fixture()
def graph():
    return StageGraph(DEFAULT_STAGES)


def _check(graph, collaborators, project, target_id, current_id="__from_project__"):
    checker = PrerequisiteChecker(collaborators, graph=graph)
    current_id = project.current_stage_id if current_id == "__from_project__" else current_id
    current = graph.get_stage(current_id) if current_id else None
    return checker.check_prerequisites(project, graph.get_stage(target_id), current)


# ═════════════════════════════════════════════════════════════════════════════
# Result semantics
# ═════════════════════════════════════════════════════════════════════════════

class TestResultSemantics:

    def test_all_satisfied_is_valid(self, graph):
        result = _check(graph, _collab(docs={"quote", "supplier_quote"}), _project(), "quoted")
        assert result.is_valid
        assert result.errors == ()
        assert result.can_auto_advance

    def test_no_short_circuit_collects_every_blocker(self, graph):
        project = _project(title="", customer_id=None)
        result = _check(graph, _collab(docs=()), project, "quoted")
        assert not result.is_valid
        joined = " | ".join(result.errors)
        assert "Project Title" in joined
        assert "Customer Information" in joined
        assert "Customer Quote" in joined
        assert len(result.errors) == 3

    def test_advisories_go_to_warnings_only(self, graph):
        project = _project(current_stage_id="inquiry_received", description="", priority=None)
        result = _check(graph, _collab(docs={"rfq"}), project, "technical_review")
        assert result.is_valid
        assert any("Project Description" in w for w in result.warnings)
        assert any("Project Priority" in w for w in result.warnings)
        assert any("Technical Drawings" in w for w in result.warnings)

    def test_approval_gated_rule_sets_flag_even_when_passing(self, graph):
        result = _check(graph, _collab(docs={"quote"}), _project(), "quoted")
        assert result.is_valid
        assert result.requires_manager_approval

    def test_stage_without_gated_rules_needs_no_approval(self, graph):
        project = _project(current_stage_id="quoted")
        result = _check(graph, _collab(docs={"po"}), project, "order_confirmed")
        assert not result.requires_manager_approval

    def test_checks_carry_one_line_per_rule_outcome(self, graph):
        result = _check(graph, _collab(docs={"quote"}), _project(), "quoted")
        rule_ids = [c.rule_id for c in result.checks]
        assert rule_ids[:3] == ["project_active", "project_title", "customer_assigned"]
        doc_lines = [c for c in result.checks if c.rule_id == "required_documents"]
        assert [c.name for c in doc_lines] == ["Customer Quote", "Supplier Quotes"]
        assert doc_lines[0].status == CheckStatus.PASSED
        assert doc_lines[1].status == CheckStatus.WARNING

    def test_to_dict_is_json_shaped(self, graph):
        data = _check(graph, _collab(docs={"quote"}), _project(), "quoted").to_dict()
        assert set(data) == {"is_valid", "errors", "warnings", "can_auto_advance",
                             "requires_manager_approval", "checks"}
        assert isinstance(data["checks"][0]["status"], str)


# ═════════════════════════════════════════════════════════════════════════════
# Individual rules
# ═════════════════════════════════════════════════════════════════════════════

class TestRules:

    def test_cancelled_project_blocked(self, graph):
        result = _check(graph, _collab(docs={"quote"}), _project(status="cancelled"), "quoted")
        assert not result.is_valid
        assert any("cancelled" in e for e in result.errors)

    def test_quote_value_required_for_order_confirmation(self, graph):
        project = _project(current_stage_id="quoted", estimated_value=0)
        result = _check(graph, _collab(docs={"po"}), project, "order_confirmed")
        assert result.errors == ("Quote Approval: Project value must be set before order confirmation",)

    def test_open_reviews_block_supplier_rfq(self, graph):
        project = _project(current_stage_id="technical_review")
        collab = _collab(docs={"bom"}, reviews=FakeReviews(total=3, approved=1))
        result = _check(graph, collab, project, "supplier_rfq_sent")
        assert any("2 of 3 review(s) still open" in e for e in result.errors)

    def test_no_reviews_blocks(self, graph):
        project = _project(current_stage_id="technical_review")
        result = _check(graph, _collab(docs={"bom"}, reviews=FakeReviews()), project, "supplier_rfq_sent")
        assert any("No technical reviews" in e for e in result.errors)

    def test_partial_supplier_quotes_need_manual_confirmation(self, graph):
        collab = _collab(docs={"quote"}, quotes=FakeQuotes(requested=3, received=1))
        result = _check(graph, collab, _project(), "quoted")
        assert result.is_valid
        assert not result.can_auto_advance
        assert any("2 of 3 supplier RFQ(s)" in w for w in result.warnings)

    def test_no_quotes_received_blocks(self, graph):
        collab = _collab(docs={"quote"}, quotes=FakeQuotes(requested=2, received=0))
        result = _check(graph, collab, _project(), "quoted")
        assert not result.is_valid

    def test_stage_skip_warns_and_blocks_auto_advance(self, graph):
        project = _project(current_stage_id="technical_review")
        result = _check(graph, _collab(docs={"quote"}), project, "quoted")
        skip = [c for c in result.checks if c.rule_id == "stage_skip"]
        assert len(skip) == 1
        assert skip[0].status == CheckStatus.WARNING
        assert "Supplier RFQ Sent" in skip[0].detail
        assert not result.can_auto_advance

    def test_stage_skip_silent_on_linear_move(self, graph):
        result = _check(graph, _collab(docs={"quote"}), _project(), "quoted")
        assert not [c for c in result.checks if c.rule_id == "stage_skip"]

    def test_collaborator_failure_is_blocking_not_raised(self, graph):
        project = _project(current_stage_id="technical_review")
        collab = _collab(docs={"bom"}, reviews=ExplodingReviews())
        result = _check(graph, collab, project, "supplier_rfq_sent")
        assert not result.is_valid
        assert "Technical Reviews: could not be verified" in result.errors


class TestRegistry:

    def test_duplicate_registration_rejected(self):
        with pytest.raises(ValueError):
            @prerequisite("project_title", name="Again")
            def _again(ctx):
                return []

    def test_list_rules_describes_every_rule(self):
        rules = {r["rule_id"]: r for r in list_rules()}
        assert rules["stage_skip"]["approval_gated"] is True
        assert rules["project_title"]["approval_gated"] is False
        assert rules["due_date_set"]["description"]

    def test_unknown_rule_on_stage_is_reported(self):
        stage = WorkflowStage(id="x", name="X", order=1, required_prerequisites=("ghost",))
        result = PrerequisiteChecker(_collab()).check_prerequisites(_project(), stage)
        assert not result.is_valid
        assert result.checks[0].rule_id == "ghost"


class TestSqlCollaborators:

    def test_documents_reviews_quotes_from_db(self, make_project, add_document, add_review, add_quote):
        project = make_project(current_stage_id="supplier_rfq_sent")
        add_document(project.id, "other", file_name="customer_QUOTE_v2.pdf")
        add_document(project.id, "supplier_quote", status="archived")
        add_review(project.id, status="approved")
        add_quote(project.id, status="received")
        add_quote(project.id, status="requested", supplier_id="sup-2")

        collab = sql_collaborators()
        assert collab.documents.has_document(project.id, "quote")
        assert not collab.documents.has_document(project.id, "supplier_quote")
        assert collab.reviews.review_summary(project.id)["approved"] == 1
        summary = collab.supplier_quotes.quote_summary(project.id)
        assert summary == {"requested": 2, "received": 1, "outstanding": 1,
                           "by_status": {"received": 1, "requested": 1}}
