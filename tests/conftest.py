"""
Shared pytest fixtures for the Ticketflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - document_store: the in-memory store the testing config installs
    - eo / do_user / other_do / employee / vendor / finance_officer /
      finance_officer_2: directory users
    - make_ticket / make_step: ORM factories that bypass the services so
      tests can start from any status
"""

import pytest

from ticketflow import create_app
from ticketflow.integrations.document_store import get_document_store
from ticketflow.models import db as _db
from ticketflow.models.ticket import StepDependency, Ticket, WorkflowStep
from ticketflow.models.user import User


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        _db.create_all()
        store = get_document_store()
        store.clear()
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()
        store.clear()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def document_store(session):
    return get_document_store()


# ── Users ────────────────────────────────────────────────────────────────


def _make_user(name, role, department):
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        role=role,
        department=department,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def eo(session):
    return _make_user("Elif Ozkan", "EO", "Executive Office")


@pytest.fixture()
def do_user(session):
    return _make_user("Deniz Aksoy", "DO", "Facilities")


@pytest.fixture()
def other_do(session):
    return _make_user("Omer Tan", "DO", "IT")


@pytest.fixture()
def employee(session):
    return _make_user("Eda Yildiz", "EMPLOYEE", "Facilities")


@pytest.fixture()
def vendor(session):
    return _make_user("Volkan Usta", "VENDOR", None)


@pytest.fixture()
def finance_officer(session):
    return _make_user("Fatma Kaya", "FINANCE", "Finance")


@pytest.fixture()
def finance_officer_2(session):
    return _make_user("Burak Demir", "FINANCE", "Finance")


# ── ORM factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_ticket(session):
    """Create a Ticket row at an arbitrary status (bypasses guards)."""
    counter = {"n": 0}

    def _make(creator, status="ACTIVE", department="Facilities", **kwargs):
        counter["n"] += 1
        kwargs.setdefault("requires_finance_approval", True)
        kwargs.setdefault("completion_documents_required", False)
        ticket = Ticket(
            ticket_number=f"TKT-T{counter['n']:04d}",
            title=kwargs.pop("title", "Replace lobby lights"),
            status=status,
            department=department,
            created_by_id=creator.id,
            **kwargs,
        )
        _db.session.add(ticket)
        _db.session.commit()
        return ticket

    return _make


@pytest.fixture()
def make_step(session):
    """Create a WorkflowStep on ``ticket`` with optional prerequisite steps."""

    def _make(ticket, title="Step", status="CREATED", depends_on=(), **kwargs):
        step = WorkflowStep(title=title, status=status, **kwargs)
        ticket.steps.append(step)
        _db.session.flush()
        for prerequisite in depends_on:
            step.dependencies.append(StepDependency(depends_on_step_id=prerequisite.id))
        _db.session.commit()
        return step

    return _make
