"""
Shared pytest fixtures for the Municipal Document & Workflow Platform suite.

Provides:
    - app: Flask application (session-scoped, deferred realtime delivery)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - hub / chat_sessions: app-owned realtime hub and chat session registry
    - sector / profiles: pre-created directory rows
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.directory import Profile, Sector


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
    """Per-test: open app context, rollback after test, recreate tables.

    Chat sessions, queued realtime events and cached assets are reset so
    no state leaks between tests.
    """
    with app.app_context():
        yield
        app.extensions["chat_sessions"].close_all()
        app.extensions["realtime_hub"].clear()
        app.extensions["asset_cache"].clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def hub(app):
    return app.extensions["realtime_hub"]


@pytest.fixture()
def chat_sessions(app):
    return app.extensions["chat_sessions"]


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def sector():
    """A sector row ("adm")."""
    s = Sector(id="adm", name="Secretaria de Administração")
    _db.session.add(s)
    _db.session.commit()
    return s


@pytest.fixture()
def profiles(sector):
    """Two users in the "adm" sector, keyed by short name."""
    rows = {
        "ana": Profile(
            id="11111111-aaaa-4aaa-8aaa-000000000001", name="Ana Souza",
            username="ana.souza", sector=sector.name,
        ),
        "bruno": Profile(
            id="11111111-aaaa-4aaa-8aaa-000000000002", name="Bruno Lima",
            username="bruno.lima", sector=sector.name,
        ),
    }
    _db.session.add_all(rows.values())
    _db.session.commit()
    return rows
