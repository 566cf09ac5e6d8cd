"""
Shared pytest fixtures for the Factory Pulse workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - engine: the app's WorkflowEngine
    - member / manager / outsider: ActorContext values
    - make_project / add_document / add_review / add_quote: ORM seed helpers
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from factory_pulse import create_app
from factory_pulse.actor import ActorContext
from factory_pulse.models import db as _db
from factory_pulse.models.collaborators import ProjectDocument, ProjectReview, SupplierQuote
from factory_pulse.models.project import Project

ORG = "org-acme"
OTHER_ORG = "org-globex"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    from factory_pulse.services.engine import get_engine

    with app.app_context():
        get_engine().cache.clear()
        yield
        get_engine().cache.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def engine(app):
    from factory_pulse.services.engine import get_engine
    return get_engine()


# ── Actors ───────────────────────────────────────────────────────────────


@pytest.fixture()
def member():
    return ActorContext(actor_id="u-member", organization_id=ORG, privilege_level="member")


@pytest.fixture()
def manager():
    return ActorContext(actor_id="u-manager", organization_id=ORG, privilege_level="manager")


@pytest.fixture()
def outsider():
    return ActorContext(actor_id="u-outsider", organization_id=OTHER_ORG, privilege_level="admin")


def headers_for(actor: ActorContext) -> dict:
    return {
        "X-Actor-Id": actor.actor_id,
        "X-Organization-Id": actor.organization_id,
        "X-Privilege-Level": actor.privilege_level,
    }


@pytest.fixture()
def auth_headers():
    """Function: ActorContext -> gateway headers."""
    return headers_for


# ── Seed helpers ─────────────────────────────────────────────────────────


def _make_project(**overrides) -> Project:
    fields = {
        "organization_id": ORG,
        "code": "PRJ-2025-001",
        "title": "Hydraulic manifold batch",
        "description": "500 machined aluminium manifolds",
        "customer_id": "cust-1",
        "priority": "high",
        "estimated_value": 42000.0,
        "due_date": date(2030, 1, 31),
        "current_stage_id": "inquiry_received",
        "stage_entered_at": datetime.now(timezone.utc) - timedelta(days=3),
        "status": "active",
        "tags": ["aluminium"],
        "meta": {},
    }
    fields.update(overrides)
    project = Project(**fields)
    _db.session.add(project)
    _db.session.commit()
    return project


@pytest.fixture()
def make_project():
    """Factory: insert a Project row and return it (committed)."""
    return _make_project


@pytest.fixture()
def add_document():
    def _add(project_id, document_type, file_name=None, status="uploaded"):
        doc = ProjectDocument(
            organization_id=ORG, project_id=project_id, document_type=document_type,
            file_name=file_name or f"{document_type}.pdf", status=status,
        )
        _db.session.add(doc)
        _db.session.commit()
        return doc
    return _add


@pytest.fixture()
def add_review():
    def _add(project_id, status="approved", review_type="engineering"):
        review = ProjectReview(
            organization_id=ORG, project_id=project_id, review_type=review_type,
            reviewer_id="u-eng", status=status,
        )
        _db.session.add(review)
        _db.session.commit()
        return review
    return _add


@pytest.fixture()
def add_quote():
    def _add(project_id, status="received", supplier_id="sup-1", amount=1000.0):
        quote = SupplierQuote(
            organization_id=ORG, project_id=project_id, supplier_id=supplier_id,
            status=status, amount=amount,
        )
        _db.session.add(quote)
        _db.session.commit()
        return quote
    return _add
