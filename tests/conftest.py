"""Shared pytest fixtures for EventCall."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventcall import database, storage
from eventcall.models import Base
from eventcall.ownership import Identity
from eventcall.remote import FileDataStore
from eventcall.schemas import RSVP, Event
from eventcall.submitter import RemoteSubmitter

OWNER = Identity(email="owner@example.com", username="owner")
STRANGER = Identity(email="someone@else.com", username="someone")


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


async def no_sleep(_: float) -> None:
    return None


class RecordingTransport:
    """Serve canned responses in order and remember every request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request {request.method} {request.url}")
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def calls(self) -> int:
        return len(self.requests)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture()
def file_store(tmp_path) -> FileDataStore:
    return FileDataStore(tmp_path / "store")


def make_submitter(responses, *, max_retries: int = 3) -> tuple[RemoteSubmitter, RecordingTransport]:
    recorder = RecordingTransport(responses)
    submitter = RemoteSubmitter(
        dispatch_url="https://backend.test/api/dispatch",
        max_retries=max_retries,
        retry_delay=2.0,
        transport=recorder.transport(),
        sleep=no_sleep,
    )
    return submitter, recorder


def make_event(**overrides) -> Event:
    data = {
        "id": "evt-1",
        "title": "Spring Formal",
        "date": "2030-04-12",
        "time": "18:30",
        "createdBy": OWNER.email,
        "createdByUsername": OWNER.username,
    }
    data.update(overrides)
    return Event.model_validate(data)


def make_rsvp(rsvp_id: str, *, email: str | None = None, attending=True, guests: int = 0, **extra) -> RSVP:
    data = {
        "rsvpId": rsvp_id,
        "eventId": extra.pop("event_id", "evt-1"),
        "name": extra.pop("name", f"Guest {rsvp_id}"),
        "email": email or f"{rsvp_id}@example.com",
        "attending": attending,
        "guestCount": guests,
        "editToken": extra.pop("edit_token", f"token-{rsvp_id}"),
    }
    data.update(extra)
    return RSVP.model_validate(data)


def read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))
