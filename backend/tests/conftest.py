"""Tests configuration and fixtures."""

import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone

# Settings are cached on first import; keep test values out of the real env.
os.environ.setdefault("JWT_SECRET", "test_secret_key_for_jwt_signing_min_32_chars")
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "clinic_chat_test_logs"))
os.environ.setdefault("APP_DEBUG", "false")

import pytest
from mongomock_motor import AsyncMongoMockClient

from clinic_chat.constants import Role
from clinic_chat.database import close_db, init_db
from clinic_chat.models import User
from clinic_chat.security import create_access_token
from clinic_chat.services.chat_service import ChatService
from clinic_chat.services.identity_service import Identity, JWTIdentityProvider


T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; ``step`` is added after every reading."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(0)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.now
        self.now = self.now + self.step
        return value

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingBroadcaster:
    """Stands in for the socket gateway and remembers every event."""

    def __init__(self) -> None:
        self.events = []
        self.fail = False

    async def broadcast(self, session_id, event, payload, skip_sid=None) -> int:
        if self.fail:
            raise RuntimeError("socket layer unavailable")
        self.events.append((session_id, event, payload))
        return 1

    def of(self, event: str) -> list:
        return [payload for _, name, payload in self.events if name == event]


@pytest.fixture
async def db():
    """Fresh in-memory database per test."""
    client = AsyncMongoMockClient()
    await init_db(client)
    yield client
    close_db()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def identity_provider() -> JWTIdentityProvider:
    return JWTIdentityProvider()


@pytest.fixture
def chat_service(db, broadcaster, identity_provider, clock) -> ChatService:
    return ChatService(broadcaster=broadcaster, identity_provider=identity_provider, clock=clock)


@pytest.fixture
def make_user(db):
    phones = itertools.count(1)

    async def _make(role: Role, name: str, is_active: bool = True) -> Identity:
        user = User(name=name, phone=f"+9647700000{next(phones):03d}", role=role, is_active=is_active)
        await user.insert()
        return Identity(user_id=str(user.id), role=role, display_name=name)

    return _make


@pytest.fixture
async def patient(make_user) -> Identity:
    return await make_user(Role.PATIENT, "Sara Ali")


@pytest.fixture
async def doctor(make_user) -> Identity:
    return await make_user(Role.DOCTOR, "Hassan Kareem")


@pytest.fixture
async def other_doctor(make_user) -> Identity:
    return await make_user(Role.DOCTOR, "Mona Jawad")


@pytest.fixture
async def outsider(make_user) -> Identity:
    return await make_user(Role.PATIENT, "Omar Saad")


def token_for(identity: Identity, **extra) -> str:
    return create_access_token({"sub": identity.user_id, "role": identity.role.value, **extra})


@pytest.fixture
def issue_token():
    return token_for
