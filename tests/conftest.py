import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# Project root: modules are imported by name, as app.py does.
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _root not in sys.path:
    sys.path.insert(0, _root)

from config import Settings
from container import build_container
from database import init_schema, make_engine, make_session_factory
from errors import UpstreamServiceError
from llm import LLMReply
from models import ItineraryRecord
from storage import ItineraryStore


def make_itinerary(owner='alice@example.com', **overrides) -> dict:
    """A valid raw itinerary document (camelCase wire form)."""
    doc = {
        'id':           str(uuid.uuid4()),
        'title':        'Portugal in January',
        'description':  '',
        'startDate':    '2025-01-01',
        'endDate':      '2025-01-07',
        'createdBy':    owner,
        'destinations': ['Lisbon'],
        'segments':     [],
    }
    doc.update(overrides)
    return doc


def insert_raw_record(session_factory, record_id, owner, document: str):
    """Write a row directly, bypassing validation, to simulate damaged storage."""
    with session_factory() as session:
        with session.begin():
            session.add(ItineraryRecord(id=record_id, created_by=owner, title=None, document=document))


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeDesignerLLM:
    """
    Scripted DesignerLLM.

    failures: exceptions raised (in order) before any reply is produced.
    replies:  LLMReply objects returned in order; the last one repeats.
    on_call:  optional callable run while the call is in flight.
    """

    def __init__(self, replies=None, failures=None):
        self.replies       = list(replies or [LLMReply(text='Sounds like a lovely trip.')])
        self.failures      = list(failures or [])
        self.calls         = []
        self.streams_open  = 0
        self.streams_closed = 0
        self.closed        = False
        self.on_call       = None

    def _next_reply(self) -> LLMReply:
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def complete(self, history, itinerary):
        self.calls.append((tuple(history), itinerary))
        if self.on_call is not None:
            self.on_call()
        if self.failures:
            raise self.failures.pop(0)
        return self._next_reply()

    async def stream(self, history, itinerary):
        self.calls.append((tuple(history), itinerary))
        if self.on_call is not None:
            self.on_call()
        if self.failures:
            raise self.failures.pop(0)
        reply = self._next_reply()
        self.streams_open += 1
        try:
            for word in reply.text.split(' '):
                yield word + ' '
            yield reply
        finally:
            self.streams_closed += 1

    async def aclose(self):
        self.closed = True


def transient_failure():
    return UpstreamServiceError('LLM service error (529)', retryable=True)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def session_factory():
    engine = make_engine('sqlite://')
    init_schema(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ItineraryStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        database_url           = 'sqlite://',
        sweep_interval_seconds = 0,
        upstream_retry_delay   = 0.0,
        jwt_secret             = 'test-secret',
        cors_origins           = ['http://testserver'],
    )


@pytest.fixture
def llms():
    """credential -> FakeDesignerLLM, filled in as designer instances are created."""
    return {}


@pytest.fixture
def container(settings, llms):
    def _factory(credential):
        llms.setdefault(credential, FakeDesignerLLM())
        return llms[credential]
    return build_container(settings, llm_factory=_factory)


@pytest.fixture
def client(container):
    from fastapi.testclient import TestClient
    from app import create_app

    with TestClient(create_app(container=container)) as c:
        yield c
