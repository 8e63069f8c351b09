"""
Shared fixtures: an app on in-memory SQLite, a recording mail transport and
helpers for registering users and logging in admins.
"""
import pytest
from fastapi.testclient import TestClient

from servicedesk.config import Settings
from servicedesk.errors import DeliveryError
from servicedesk.main import create_app
from servicedesk.services.notifications import Mailer


ADMIN_CREDENTIALS = "root:rootpass,ops:opspass"
ADMIN_INBOX = "admin@desk.test"


class RecordingMailer(Mailer):
    """Collects outgoing mail instead of talking to SMTP. Set ``fail`` to simulate an outage."""

    def __init__(self, settings):
        super().__init__(settings)
        self.sent = []
        self.fail = False

    def send(self, to, subject, body):
        if self.fail:
            raise DeliveryError("smtp unavailable")
        self.sent.append({"to": to, "subject": subject, "body": body})

    def to(self, address):
        return [m for m in self.sent if m["to"] == address]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        admin_credentials=ADMIN_CREDENTIALS,
        admin_email=ADMIN_INBOX,
        smtp_host="smtp.desk.test",
        mail_from="noreply@desk.test",
        storage_dir=str(tmp_path / "storage"),
        public_base_url="http://desk.test",
        enable_metrics=False,
        rate_limit="10000/minute",
    )


@pytest.fixture
def mailer(settings):
    return RecordingMailer(settings)


@pytest.fixture
def app(settings, mailer):
    return create_app(settings, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app, client):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, **overrides):
    payload = {
        "name": "Asha Rao",
        "company_name": "Rao Foods",
        "phone": "555-1",
        "email": "a@x.com",
        "password": "s3cret-pass",
        "address": "12 MG Road",
        "lat": 12.9,
        "lng": 77.6,
    }
    payload.update(overrides)
    return client.post("/auth/register", json=payload)


@pytest.fixture
def user_token(client):
    resp = register(client)
    assert resp.status_code == 201, resp.text
    return resp.json()["access_token"]


@pytest.fixture
def other_token(client):
    resp = register(client, name="Ben Ortiz", phone="555-2", email="b@x.com", lat=19.07, lng=72.87)
    assert resp.status_code == 201, resp.text
    return resp.json()["access_token"]


@pytest.fixture
def admin_token(client):
    resp = client.post("/auth/login", json={"admin_username": "root", "admin_password": "rootpass"})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def create_case(client, token, path="/tickets", **fields):
    data = {"category": "Plumbing", "title": "Leaking tap", "description": "Kitchen tap drips all night"}
    data.update(fields)
    return client.post(path, data=data, headers=auth(token))
