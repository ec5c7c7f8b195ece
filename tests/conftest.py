"""
Shared pytest fixtures for the Collection Workflow Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org / other_org: organizations
    - admin, manager, reviewer, team_member, client_user: users (reviewer is a
      second manager, so maker-checker decisions have a distinct checker)
    - fake_sender: controllable channel double registered for every channel
"""

from dataclasses import dataclass, field

import pytest

from app import create_app
from app.core.exceptions import DispatchFailure
from app.core.roles import Actor
from app.models import db as _db
from app.models.auth import Organization, User
from app.services import channels


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
    with app.app_context():
        yield
        channels.clear_senders()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


def make_org(name="Acme Associates"):
    org = Organization(name=name, type="ca_firm", is_active=True)
    _db.session.add(org)
    _db.session.commit()
    return org


def make_user(org, role, email, **kw):
    user = User(organization_id=org.id if org else None, email=email, role=role,
                full_name=kw.pop("full_name", email.split("@")[0].title()), is_active=True, **kw)
    _db.session.add(user)
    _db.session.commit()
    return user


def actor_for(user):
    return Actor.from_user(user)


def headers_for(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture()
def org():
    return make_org()


@pytest.fixture()
def other_org():
    return make_org("Globex Lending")


@pytest.fixture()
def admin(org):
    return make_user(org, "admin", "admin@acme.test")


@pytest.fixture()
def manager(org):
    return make_user(org, "manager", "manager@acme.test")


@pytest.fixture()
def reviewer(org):
    return make_user(org, "manager", "reviewer@acme.test")


@pytest.fixture()
def team_member(org):
    return make_user(org, "team_member", "staff@acme.test")


@pytest.fixture()
def client_user(org):
    return make_user(org, "client", "client@customer.test", phone="+15550100")


# ── Channel double ───────────────────────────────────────────────────────


@dataclass
class FakeSender:
    """Records every send; fails while ``fail`` is set."""

    channel: str = "email"
    fail: bool = False
    sent: list = field(default_factory=list)
    attempts: int = 0

    def send(self, recipient, subject, body, metadata, timeout):
        self.attempts += 1
        if self.fail:
            raise DispatchFailure(self.channel, "gateway unavailable")
        self.sent.append({"user_id": recipient.user_id, "subject": subject, "body": body,
                          "metadata": metadata, "timeout": timeout})
        return f"fake-{self.attempts}"


@pytest.fixture()
def fake_sender():
    sender = FakeSender()
    for channel in ("email", "whatsapp", "sms", "voice"):
        channels.register_sender(channel, sender)
    return sender


# ── Workflow factories ───────────────────────────────────────────────────


@pytest.fixture()
def make_request(manager, client_user):
    """Factory: create (and by default send) a request with the given items."""
    from app.services import request_lifecycle

    def _make(items=None, *, send=True, enabled=None, due_date=None, creator=None):
        items = items if items is not None else [
            {"particular": "Bank statement", "document_type": "financial_statement"},
            {"particular": "PAN card", "document_type": "id_proof"},
        ]
        data = request_lifecycle.create_request(
            manager.organization_id, actor_for(creator or manager),
            client_id=client_user.id, title="FY24 documents", due_date=due_date,
            channels=enabled, items=items,
        )
        if send:
            data = request_lifecycle.send_request(data["id"], actor_for(creator or manager))
        return data

    return _make
