"""
Pytest configuration and shared fixtures.

Test env vars are set here before any relaychat import, then the settings
cache is cleared so they take effect. External collaborators (mail, push,
object storage) are replaced with in-memory fakes injected through
build_services; realtime events are captured by a recording transport.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_relaychat.db")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from relaychat.config import get_settings
get_settings.cache_clear()

from relaychat import models  # noqa: F401,E402
from relaychat.cache import ResponseCache  # noqa: E402
from relaychat.codes import MemoryCodeStore  # noqa: E402
from relaychat.main import app  # noqa: E402
from relaychat.object_store import StoredObject  # noqa: E402
from relaychat.push import PushReport  # noqa: E402
from relaychat.services import build_services  # noqa: E402
from relaychat.storage import Base, SessionLocal, engine  # noqa: E402


class FakeMailer:
    def __init__(self):
        self.sent = {}

    async def send_otp(self, email, code, ttl_seconds):
        self.sent[email] = code


class FakePush:
    def __init__(self):
        self.calls = []
        self.invalid = set()

    async def send_to_tokens(self, tokens, title, body, data=None):
        self.calls.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        bad = [t for t in tokens if t in self.invalid]
        return PushReport(
            success_count=len(tokens) - len(bad),
            failure_count=len(bad),
            invalid_tokens=bad,
        )


class FakeObjectStore:
    def __init__(self):
        self.objects = {}
        self.deleted = []
        self.undeletable = set()

    async def put(self, data, file_name, mime_type, folder, owner):
        path = f"{folder}/{owner}/{file_name}"
        self.objects[path] = data
        return StoredObject(url=f"https://files.test/{path}", path=path)

    async def delete(self, path):
        if path in self.undeletable:
            return False
        self.deleted.append(path)
        self.objects.pop(path, None)
        return True

    async def signed_url(self, path, file_name="", expiry_days=None):
        return f"https://files.test/{path}?signature=fresh"


class RecordingTransport:
    """Records every emitted event, then forwards to the real socket hub."""

    def __init__(self, hub):
        self.hub = hub
        self.events = []

    async def send(self, session_id, event, payload):
        self.events.append((session_id, event, payload))
        return await self.hub.send(session_id, event, payload)

    def to(self, session_id, event=None):
        return [
            payload for sid, name, payload in self.events
            if sid == session_id and (event is None or name == event)
        ]

    def named(self, event):
        return [(sid, payload) for sid, name, payload in self.events if name == event]


@pytest.fixture
def services():
    built = build_services(
        get_settings(),
        push_gateway=FakePush(),
        object_store=FakeObjectStore(),
        mailer=FakeMailer(),
        code_store=MemoryCodeStore(),
        cache=ResponseCache(None),
    )
    built.router.transport = RecordingTransport(built.hub)
    return built


@pytest.fixture(scope="function")
def client(services):
    """Create test client with fresh database and fake services for each test."""
    Base.metadata.create_all(bind=engine)
    app.state.services = services

    with TestClient(app) as test_client:
        yield test_client

    app.state.services = None
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Bare session on a fresh schema, for tests below the HTTP layer."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def login(client, services):
    """Full OTP login; `login(email)` returns (user_id, auth headers)."""

    def _login(email):
        response = client.post("/api/auth/send-otp", json={"email": email})
        assert response.status_code == 200
        code = services.mailer.sent[email.lower()]

        response = client.post("/api/auth/verify-otp", json={"email": email, "otp": code})
        assert response.status_code == 200
        body = response.json()
        return body["user"]["id"], {"Authorization": f"Bearer {body['token']}"}

    return _login
