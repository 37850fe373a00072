"""Shared test fixtures for the coach onboarding test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: admin, coach and ambassador users
- make_prospect: create a prospect directly in a given pipeline status
- login / login_admin: log the test client in
- two_sessions: independent sessions on a file-backed database, for
  interleaving concurrent transactions
"""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
import sqlalchemy as sa
from sqlalchemy import orm
from werkzeug.security import generate_password_hash

from coachhub import create_app
from coachhub.extensions import db as _db
from coachhub.models.prospect import Prospect, generate_form_token
from coachhub.models.user import User

ADMIN_EMAIL = "admin@coachhub.local"
ADMIN_PASSWORD = "admin123"
COACH_EMAIL = "coach@example.com"
COACH_PASSWORD = "coach123"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def two_sessions(app, tmp_path):
    """Two sessions with their own connections to one SQLite file.

    The in-memory test database has a single shared connection, so
    concurrent transactions are exercised here instead.
    """
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'concurrent.db'}")
    _db.metadata.create_all(engine)
    make_session = orm.sessionmaker(bind=engine)
    first, second = make_session(), make_session()
    yield first, second
    first.close()
    second.close()
    engine.dispose()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with one user per role."""
    admin = User(
        email=ADMIN_EMAIL,
        password_hash=generate_password_hash(ADMIN_PASSWORD),
        full_name="Admin User",
        role="ADMIN",
    )
    coach = User(
        email=COACH_EMAIL,
        password_hash=generate_password_hash(COACH_PASSWORD),
        full_name="Casey Coach",
        role="COACH",
    )
    ambassador = User(
        email="ambassador@example.com",
        password_hash=generate_password_hash("amb12345"),
        full_name="Avery Ambassador",
        role="AMBASSADOR",
    )
    _db.session.add_all([admin, coach, ambassador])
    _db.session.commit()

    # Plain IDs so tests can use them after the objects expire.
    return {
        "admin": admin,
        "admin_id": admin.id,
        "coach": coach,
        "coach_id": coach.id,
        "ambassador": ambassador,
        "ambassador_id": ambassador.id,
    }


@pytest.fixture
def make_prospect(db_session):
    """Factory: a prospect sitting in ``status`` with the tokens that
    status implies already issued."""
    counter = {"n": 0}

    def _make(status="ASSESSMENT_COMPLETED", **fields):
        counter["n"] += 1
        values = {
            "first_name": "Pat",
            "last_name": f"Prospect{counter['n']}",
            "email": f"pat{counter['n']}@example.com",
            "status": status,
        }
        index = Prospect.STATUSES.index(status)
        if status != "REJECTED" and index >= Prospect.STATUSES.index("BUSINESS_FORM_PENDING"):
            values["business_form_token"] = generate_form_token("bf")
        if status != "REJECTED" and index >= Prospect.STATUSES.index("ACCEPTANCE_PENDING"):
            values["acceptance_token"] = generate_form_token("ac")
        values.update(fields)
        prospect = Prospect(**values)
        _db.session.add(prospect)
        _db.session.commit()
        return prospect

    return _make


def login(client, email, password):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture
def login_admin(client, seed_data):
    """Log the test client in as the admin user."""
    resp = login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert resp.status_code == 200
    return client


@pytest.fixture
def login_coach(client, seed_data):
    resp = login(client, COACH_EMAIL, COACH_PASSWORD)
    assert resp.status_code == 200
    return client


def next_weekday(dow, tz="America/Los_Angeles", min_days_ahead=2):
    """Next date (0 = Sunday) at least ``min_days_ahead`` days out in ``tz``."""
    today = datetime.now(timezone.utc).astimezone(ZoneInfo(tz)).date()
    candidate = today + timedelta(days=min_days_ahead)
    while (candidate.weekday() + 1) % 7 != dow:
        candidate += timedelta(days=1)
    return candidate


def fixed_now(year=2030, month=1, day=1, hour=12):
    """A fixed UTC instant for deterministic occurrence tests."""
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


