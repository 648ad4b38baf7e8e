"""
Shared fixtures: in-memory document store, fake push/telephony services,
and an app wired to them with a frozen clock.
"""
import os
from datetime import datetime, timezone

import pytest

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.pop("MONGO_URL", None)

from fastapi.testclient import TestClient

from notifications import CallResult, NotificationDispatcher, PushResult
from matching import ContactMatcher
from routing import MessageRouter
from invites import InviteResolver
from server import SessionService, create_app
from store import MemoryDocumentStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MAIN_UID = "main_u1"


class FakePushService:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def send(self, tokens, notification, data):
        self.calls.append({"tokens": list(tokens), "notification": notification, "data": data})
        if self.fail:
            raise RuntimeError("push gateway down")
        return PushResult(success_count=len(tokens), failure_count=0)


class FakeTelephony:
    def __init__(self):
        self.calls = []
        self.result = CallResult(ok=True, call_control_id="call_123")

    async def call(self, to_number, context=None):
        self.calls.append((to_number, context))
        return self.result


class Seeder:
    """Writes fixture documents straight into the memory store."""

    def __init__(self, store):
        self.store = store

    def user(self, uid, role="main_user", email="", phone="", first_name="", last_name=""):
        self.store.put(f"users/{uid}", {
            "role": role,
            "email": email,
            "phone": phone,
            "firstName": first_name,
            "lastName": last_name,
        })

    def link(self, main_uid, ec_uid, email=None, phone=None, status="ACTIVE", top_id=None,
             top=True, sub=True, top_fields=None, sub_fields=None):
        """Both mirrors of one main user <-> contact link."""
        identity = {}
        if email:
            identity["emergencyContactEmail"] = email
        if phone:
            identity["phone"] = phone
        if top:
            data = {"mainUserUid": main_uid, "status": status, **identity}
            if ec_uid:
                data["emergencyContactUid"] = ec_uid
            data.update(top_fields or {})
            self.store.put(f"emergencyContacts/{top_id or f'top_{main_uid}_{ec_uid}'}", data)
        if sub:
            data = {"status": status, **identity}
            if ec_uid:
                data["emergencyContactUid"] = ec_uid
            data.update(sub_fields or {})
            self.store.put(f"users/{main_uid}/emergency_contact/{ec_uid or 'pending'}", data)

    def device(self, uid, device_id, token, disabled=False):
        self.store.put(f"users/{uid}/devices/{device_id}", {"token": token, "disabled": disabled})


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def push():
    return FakePushService()


@pytest.fixture
def telephony():
    return FakeTelephony()


@pytest.fixture
def sessions():
    return SessionService(secret_key="test-secret", expire_days=1)


@pytest.fixture
def matcher(store):
    return ContactMatcher(store)


@pytest.fixture
def dispatcher(store, push):
    return NotificationDispatcher(store, push)


@pytest.fixture
def router(store, matcher, dispatcher):
    return MessageRouter(store, matcher, dispatcher, clock=lambda: NOW)


@pytest.fixture
def resolver(store):
    return InviteResolver(store, "https://app.example.com", clock=lambda: NOW, token_factory=lambda: "tok-1")


@pytest.fixture
def app(store, sessions, push, telephony):
    return create_app(store=store, sessions=sessions, push_service=push, telephony=telephony, clock=lambda: NOW)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth(sessions):
    def _headers(uid):
        return {"Authorization": f"Bearer {sessions.create(uid)}"}
    return _headers
