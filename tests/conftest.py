"""
Pytest configuration and fixtures
"""
import uuid
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from faultline.cache import MemoryTimeline, NullCache
from faultline.database import init_db, make_session_factory
from faultline.errors import StoreUnavailable
from faultline.queue import InlineDispatchQueue
from faultline.services import build_services
from faultline.store import SqlStore


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime = datetime(2024, 1, 15, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FailingStore:
    """Store whose every operation reports an outage."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise StoreUnavailable(f"{name} failed: database is down")
        return fail


async def make_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    return engine


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest_asyncio.fixture
async def db_engine():
    engine = await make_engine()
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine):
    return SqlStore(make_session_factory(db_engine))


@pytest.fixture
def sent_requests():
    return []


@pytest_asyncio.fixture
async def http_client(sent_requests):
    """Records outgoing notifications; hosts containing "fail" answer 500."""

    def handler(request: httpx.Request) -> httpx.Response:
        sent_requests.append(request)
        if "fail" in request.url.host:
            return httpx.Response(500, text="upstream exploded")
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    yield client
    await client.aclose()


@pytest.fixture
def services(store, http_client, clock):
    return build_services(
        store,
        NullCache(),
        MemoryTimeline(),
        InlineDispatchQueue(backoff_seconds=0),
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture
def make_event(clock):
    """Factory for SDK error payloads, timestamped at the fake clock's now."""

    def factory(**overrides):
        event = {
            "event_id": uuid.uuid4().hex,
            "timestamp": clock.now.isoformat(),
            "level": "error",
            "platform": "node",
            "message": "Cannot read property 'name' of undefined",
            "exception": {
                "type": "TypeError",
                "value": "Cannot read property 'name' of undefined",
                "stacktrace": [
                    {"filename": "app/user.ts", "function": "getUser", "lineno": 42},
                    {"filename": "node_modules/express/lib/router.js", "function": "handle", "lineno": 7},
                ],
            },
            "environment": "production",
            "release": "1.0.0",
            "user": {"id": "user-1"},
        }
        event.update(overrides)
        return event

    return factory
