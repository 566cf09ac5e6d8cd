"""
SQL project store tests: snapshot reads and the compare-and-set stage
mutation.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from factory_pulse.core.exceptions import BackendFailure, NotFoundError, StaleProjectState
from factory_pulse.services.project_store import SqlProjectStore, _failure_code


@pytest.fixture()
def store():
    return SqlProjectStore()


class TestRead:

    def test_read_project_snapshot(self, store, make_project):
        project = make_project(tags=["a", "b"], meta={"source": "email"})
        snapshot = store.read_project(project.id)
        assert snapshot.current_stage_id == "inquiry_received"
        assert snapshot.tags == ("a", "b")
        assert snapshot.metadata == {"source": "email"}
        assert snapshot.stage_entered_at.tzinfo is not None

    def test_read_missing(self, store):
        with pytest.raises(NotFoundError):
            store.read_project("nope")

    def test_list_project_ids(self, store, make_project):
        a = make_project()
        make_project(organization_id="org-globex")
        assert store.list_project_ids("org-acme") == [a.id]


class TestMutate:

    def test_compare_and_set_success(self, store, make_project):
        project = make_project(current_stage_id="quoted")
        now = datetime.now(timezone.utc)
        updated = store.mutate_project_stage(project.id, "order_confirmed", now,
                                             expected_stage_id="quoted")
        assert updated.current_stage_id == "order_confirmed"
        assert updated.version == 1

    def test_compare_and_set_miss(self, store, make_project):
        project = make_project(current_stage_id="quoted")
        with pytest.raises(StaleProjectState) as exc_info:
            store.mutate_project_stage(project.id, "order_confirmed", datetime.now(timezone.utc),
                                       expected_stage_id="technical_review")
        assert exc_info.value.actual_stage_id == "quoted"
        assert exc_info.value.code == "stale_state"
        assert store.read_project(project.id).current_stage_id == "quoted"

    def test_entered_at_clamped_to_previous(self, store, make_project):
        later = datetime.now(timezone.utc) + timedelta(hours=5)
        project = make_project(current_stage_id="quoted", stage_entered_at=later)
        updated = store.mutate_project_stage(project.id, "order_confirmed",
                                             later - timedelta(days=1), expected_stage_id="quoted")
        assert updated.stage_entered_at == later

    def test_status_written_when_given(self, store, make_project):
        project = make_project(current_stage_id="in_production")
        updated = store.mutate_project_stage(project.id, "completed", datetime.now(timezone.utc),
                                             expected_stage_id="in_production", status="completed")
        assert updated.status == "completed"

    def test_missing_project(self, store):
        with pytest.raises(NotFoundError):
            store.mutate_project_stage("nope", "quoted", datetime.now(timezone.utc),
                                       expected_stage_id="technical_review")


class TestFailureCodes:

    def test_timeout_detection(self):
        exc = OperationalError("UPDATE projects", {}, Exception("canceling statement due to statement timeout"))
        assert _failure_code(exc) == "timeout"
        assert _failure_code(TimeoutError()) == "timeout"

    def test_other_database_errors(self):
        exc = OperationalError("UPDATE projects", {}, Exception("disk I/O error"))
        assert _failure_code(exc) == "database"


class TestCommittedSnapshot:

    def test_mutation_does_not_reread_after_commit(self, store, make_project, monkeypatch):
        project = make_project(current_stage_id="quoted")

        def unavailable(*args, **kwargs):
            raise BackendFailure("read_project", "timeout")

        monkeypatch.setattr(store, "read_project", unavailable)
        now = datetime.now(timezone.utc)
        updated = store.mutate_project_stage(project.id, "order_confirmed", now,
                                             expected_stage_id="quoted", status="active")

        assert updated.current_stage_id == "order_confirmed"
        assert updated.version == 1
        assert updated.stage_entered_at == now
        assert updated.title == project.title
        monkeypatch.undo()
        assert store.read_project(project.id) == updated


class TestTimeoutBound:

    def test_unenforced_timeout_logged_once(self, make_project, caplog):
        store = SqlProjectStore(default_timeout=3)
        project = make_project()
        with caplog.at_level("WARNING", logger="factory_pulse.services.project_store"):
            store.read_project(project.id)
            store.read_project(project.id)
        unenforced = [r for r in caplog.records
                      if getattr(r, "event_type", None) == "store_timeout_unenforced"]
        assert len(unenforced) == 1
