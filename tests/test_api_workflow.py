"""
Workflow API tests (Flask test client, default pipeline).

Covers the stage graph listing, cached project reads, transitions and their
error mapping, dry-run validation, recommendations, auto-advance, stage
history, organization analytics, the change ingress and health probes.
"""

import pytest

from factory_pulse.services.change_reconciler import ChangeReconciler


@pytest.fixture()
def quotable(make_project, add_document, add_review, add_quote):
    """A project at supplier_rfq_sent with everything needed to reach quoted."""
    project = make_project(current_stage_id="supplier_rfq_sent")
    add_review(project.id, status="approved")
    add_quote(project.id, status="received")
    add_document(project.id, "quote")
    return project


def _transition(client, headers, project_id, **body):
    return client.post(f"/api/v1/projects/{project_id}/transitions", json=body, headers=headers)


# ═════════════════════════════════════════════════════════════════════════════
# Stage graph
# ═════════════════════════════════════════════════════════════════════════════

class TestStages:

    def test_list_stages(self, client):
        res = client.get("/api/v1/workflow/stages")
        assert res.status_code == 200
        data = res.get_json()
        assert len(data["stages"]) == 8
        assert data["initial_stage_ids"] == ["inquiry_received"]
        assert {r["rule_id"] for r in data["rules"]} >= {"stage_skip", "required_documents"}


# ═════════════════════════════════════════════════════════════════════════════
# Project reads
# ═════════════════════════════════════════════════════════════════════════════

class TestProjectRead:

    def test_requires_actor(self, client, make_project):
        project = make_project()
        res = client.get(f"/api/v1/projects/{project.id}")
        assert res.status_code == 401

    def test_read_through_cache(self, client, make_project, member, auth_headers):
        project = make_project()
        first = client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(member))
        second = client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(member))
        assert first.status_code == 200
        body = first.get_json()
        assert body["project"]["current_stage_id"] == "inquiry_received"
        assert body["project"]["stage"]["name"] == "Inquiry Received"
        assert body["cache"]["hit"] is False
        assert second.get_json()["cache"]["hit"] is True
        assert body["transition_phase"] == "idle"

    def test_other_organization_gets_404(self, client, make_project, outsider, auth_headers):
        project = make_project()
        res = client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(outsider))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unknown_project_404(self, client, member, auth_headers):
        res = client.get("/api/v1/projects/nope", headers=auth_headers(member))
        assert res.status_code == 404

    def test_invalidate_cache(self, client, engine, make_project, member, auth_headers):
        project = make_project()
        client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(member))
        res = client.post(f"/api/v1/projects/{project.id}/cache/invalidate", headers=auth_headers(member))
        assert res.status_code == 200
        assert res.get_json()["invalidated"] is True
        assert not engine.cache.is_valid(project.id)


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════

class TestExecuteTransition:

    def test_success(self, client, engine, quotable, member, auth_headers):
        res = _transition(client, auth_headers(member), quotable.id,
                          target_stage_id="quoted", reason="Quote sent")
        assert res.status_code == 200
        data = res.get_json()
        assert data["success"] is True
        assert data["project"]["current_stage_id"] == "quoted"
        assert data["ledger_recorded"] is True
        history = engine.ledger.get_history(quotable.id)
        assert history[-1]["reason"] == "Quote sent"

    def test_missing_target(self, client, quotable, member, auth_headers):
        res = _transition(client, auth_headers(member), quotable.id)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_prerequisite_failure_lists_errors(self, client, make_project, member, auth_headers):
        project = make_project(current_stage_id="supplier_rfq_sent")
        res = _transition(client, auth_headers(member), project.id, target_stage_id="quoted")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_PREREQUISITE_FAILURE"
        errors = body["details"]["errors"]
        assert "Customer Quote: Customer Quote is required for this stage" in errors
        assert any(e.startswith("Technical Reviews") for e in errors)
        assert body["details"]["mutation_committed"] is False

    def test_structural_violation(self, client, quotable, member, auth_headers):
        res = _transition(client, auth_headers(member), quotable.id, target_stage_id="completed")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_STRUCTURAL_VIOLATION"

    def test_bypass_without_reason(self, client, quotable, manager, auth_headers):
        res = _transition(client, auth_headers(manager), quotable.id,
                          target_stage_id="quoted", bypass_validation=True)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION_OPTIONS"

    def test_bad_duration(self, client, quotable, member, auth_headers):
        res = _transition(client, auth_headers(member), quotable.id,
                          target_stage_id="quoted", estimated_duration="soon")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_INVALID_TRANSITION_OPTIONS"

    def test_member_bypass_forbidden(self, client, make_project, member, auth_headers):
        project = make_project(current_stage_id="supplier_rfq_sent")
        res = _transition(client, auth_headers(member), project.id, target_stage_id="quoted",
                          bypass_validation=True, bypass_reason="Customer escalation")
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_BYPASS_NOT_PERMITTED"

    def test_manager_bypass(self, client, engine, make_project, manager, auth_headers):
        project = make_project(current_stage_id="supplier_rfq_sent")
        res = _transition(client, auth_headers(manager), project.id, target_stage_id="quoted",
                          bypass_validation=True, bypass_reason="Customer escalation")
        assert res.status_code == 200
        assert res.get_json()["bypassed"] is True
        assert engine.ledger.get_history(project.id)[-1]["bypass_reason"] == "Customer escalation"

    def test_other_organization_404(self, client, quotable, outsider, auth_headers):
        res = _transition(client, auth_headers(outsider), quotable.id, target_stage_id="quoted")
        assert res.status_code == 404

    def test_cached_read_follows_transition(self, client, quotable, member, auth_headers):
        headers = auth_headers(member)
        client.get(f"/api/v1/projects/{quotable.id}", headers=headers)
        _transition(client, headers, quotable.id, target_stage_id="quoted")
        res = client.get(f"/api/v1/projects/{quotable.id}", headers=headers)
        assert res.get_json()["project"]["current_stage_id"] == "quoted"


class TestValidationEndpoints:

    def test_available_transitions(self, client, make_project, member, auth_headers):
        project = make_project(current_stage_id="technical_review")
        res = client.get(f"/api/v1/projects/{project.id}/transitions", headers=auth_headers(member))
        assert res.status_code == 200
        ids = [t["stage"]["id"] for t in res.get_json()["transitions"]]
        assert ids == ["supplier_rfq_sent", "quoted"]

    def test_validate_is_dry_run(self, client, engine, make_project, member, auth_headers):
        project = make_project(current_stage_id="supplier_rfq_sent")
        res = client.post(f"/api/v1/projects/{project.id}/transitions/validate",
                          json={"target_stage_id": "quoted"}, headers=auth_headers(member))
        assert res.status_code == 200
        data = res.get_json()
        assert data["can_transition"] is False
        assert data["errors"]
        assert engine.store.read_project(project.id).current_stage_id == "supplier_rfq_sent"

    def test_validate_structural(self, client, quotable, member, auth_headers):
        res = client.post(f"/api/v1/projects/{quotable.id}/transitions/validate",
                          json={"target_stage_id": "completed"}, headers=auth_headers(member))
        assert res.get_json()["is_valid"] is False

    def test_recommendations(self, client, make_project, member, auth_headers):
        project = make_project(current_stage_id="technical_review")
        res = client.get(
            f"/api/v1/projects/{project.id}/transitions/recommendations?target_stage_id=quoted",
            headers=auth_headers(member),
        )
        assert res.status_code == 200
        data = res.get_json()
        assert data["can_proceed"] is False
        assert data["requires_manager_approval"] is True
        assert any(w.startswith("Stage Skip Validation") for w in data["warnings"])

    def test_recommendations_require_target(self, client, quotable, member, auth_headers):
        res = client.get(f"/api/v1/projects/{quotable.id}/transitions/recommendations",
                         headers=auth_headers(member))
        assert res.status_code == 400


class TestAutoAdvance:

    def test_check_and_apply(self, client, engine, make_project, add_document, member, auth_headers):
        project = make_project(current_stage_id="procurement_planning")
        add_document(project.id, "work_order")
        add_document(project.id, "quality_plan")

        check = client.get(f"/api/v1/projects/{project.id}/auto-advance", headers=auth_headers(member))
        assert check.get_json()["can_auto_advance"] is True
        assert check.get_json()["next_stage_id"] == "in_production"

        res = client.post(f"/api/v1/projects/{project.id}/auto-advance", headers=auth_headers(member))
        assert res.status_code == 200
        assert res.get_json()["advanced"] is True
        assert engine.store.read_project(project.id).current_stage_id == "in_production"

    def test_not_eligible(self, client, make_project, member, auth_headers):
        project = make_project(current_stage_id="supplier_rfq_sent")
        res = client.post(f"/api/v1/projects/{project.id}/auto-advance", headers=auth_headers(member))
        assert res.status_code == 200
        assert res.get_json()["advanced"] is False


# ═════════════════════════════════════════════════════════════════════════════
# History & analytics
# ═════════════════════════════════════════════════════════════════════════════

class TestHistory:

    def test_stage_history_with_durations(self, client, quotable, member, auth_headers):
        headers = auth_headers(member)
        _transition(client, headers, quotable.id, target_stage_id="quoted")
        res = client.get(f"/api/v1/projects/{quotable.id}/stage-history", headers=headers)
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 1
        assert data["history"][0]["is_current"] is True
        assert data["history"][0]["to_stage_name"] == "Quoted"

    def test_stats_and_recent(self, client, quotable, member, auth_headers):
        headers = auth_headers(member)
        _transition(client, headers, quotable.id, target_stage_id="quoted")

        stats = client.get("/api/v1/organizations/org-acme/stage-transitions/stats", headers=headers)
        assert stats.status_code == 200
        assert stats.get_json()["total_transitions"] == 1

        recent = client.get("/api/v1/organizations/org-acme/stage-transitions/recent?limit=5",
                            headers=headers)
        assert recent.get_json()["total"] == 1

    def test_stats_bad_date(self, client, member, auth_headers):
        res = client.get("/api/v1/organizations/org-acme/stage-transitions/stats?date_from=yesterday",
                         headers=auth_headers(member))
        assert res.status_code == 400

    def test_stats_other_organization_404(self, client, member, auth_headers):
        res = client.get("/api/v1/organizations/org-globex/stage-transitions/stats",
                         headers=auth_headers(member))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Change ingress & health
# ═════════════════════════════════════════════════════════════════════════════

class TestChangeIngress:

    def test_publish_without_subscribers(self, client):
        res = client.post("/api/v1/organizations/org-acme/changes", json={})
        assert res.status_code == 202
        assert res.get_json() == {"organization_id": "org-acme", "delivered": 0}

    def test_publish_reaches_subscriber(self, client, engine):
        seen = []
        unsubscribe = engine.feed.subscribe("org-acme", lambda: seen.append(1))
        try:
            res = client.post("/api/v1/organizations/org-acme/changes", json={})
        finally:
            unsubscribe()
        assert res.get_json()["delivered"] == 1
        assert seen == [1]


class TestHealth:

    def test_liveness(self, client):
        assert client.get("/api/v1/health").status_code == 200

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["checks"]["cache"]["backend"] == "memory"

    def test_live_details(self, client):
        res = client.get("/api/v1/health/live")
        data = res.get_json()
        assert data["checks"]["app"]["stages"] == 8
        assert data["checks"]["transitions_in_flight"] == {}

    def test_non_json_body_rejected(self, client, quotable, member, auth_headers):
        res = client.post(f"/api/v1/projects/{quotable.id}/transitions", data="target=quoted",
                          headers={**auth_headers(member), "Content-Type": "text/plain"})
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════════
# CLI
# ═════════════════════════════════════════════════════════════════════════════

class TestCli:

    def test_list_stages(self, app):
        result = app.test_cli_runner().invoke(args=["list-stages"])
        assert result.exit_code == 0
        assert "inquiry_received" in result.output
        assert "quoted, supplier_rfq_sent" in result.output

    def test_reconcile_projects(self, app, engine, make_project, member, auth_headers, client):
        project = make_project()
        client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(member))

        result = app.test_cli_runner().invoke(args=["reconcile-projects", "--organization", "org-acme"])

        assert result.exit_code == 0
        assert "org-acme:" in result.output
        assert engine.cache.is_valid(project.id)


@pytest.fixture()
def live_reconciler(engine, monkeypatch):
    """Reconciler switched on, with refreshes collected instead of run."""
    pending = []
    reconciler = ChangeReconciler(engine.cache, runner=pending.append)
    monkeypatch.setattr(engine, "reconciler", reconciler)
    monkeypatch.setattr(engine, "reconciler_enabled", True)
    yield reconciler, pending
    reconciler.close()


class TestReconcilerCoherence:

    def test_transition_as_first_request_subscribes(self, client, engine, quotable, member,
                                                    auth_headers, live_reconciler):
        reconciler, pending = live_reconciler
        res = _transition(client, auth_headers(member), quotable.id, target_stage_id="quoted")
        assert res.status_code == 200
        assert engine.cache.is_valid(quotable.id)
        assert reconciler.is_subscribed("org-acme")

        res = client.post("/api/v1/organizations/org-acme/changes", json={})

        assert res.get_json()["delivered"] == 1
        assert not engine.cache.is_valid(quotable.id)
        for refresh in pending:
            refresh()
        assert engine.cache.is_valid(quotable.id)
        assert engine.cache.get(quotable.id)["current_stage_id"] == "quoted"

    def test_auto_advance_check_subscribes(self, client, make_project, member, auth_headers,
                                           live_reconciler):
        reconciler, _ = live_reconciler
        project = make_project()
        res = client.get(f"/api/v1/projects/{project.id}/auto-advance", headers=auth_headers(member))
        assert res.status_code == 200
        assert reconciler.is_subscribed("org-acme")

    def test_disabled_reconciler_never_subscribes(self, client, make_project, member, auth_headers,
                                                  engine):
        project = make_project()
        client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(member))
        assert not engine.reconciler.is_subscribed("org-acme")
