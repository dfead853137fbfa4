"""Async test fixtures for contact sync tests using SQLite."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crmsync.database import get_db, get_session_factory
from crmsync.errors import UpstreamCorruptRecord
from crmsync.models.base import Base
from crmsync.upstream.client import ContactPage, get_upstream_client_factory


def make_record(index: int, **properties: Any) -> dict[str, Any]:
    """A raw upstream contact in the CRM v3 object shape."""
    props = {
        "hs_object_id": str(1000 + index),
        "firstname": f"User{index}",
        "lastname": "Tester",
        "email": f"user{index}@example.com",
        "lastmodifieddate": "2024-01-01T00:00:00Z",
    }
    props.update(properties)
    return {"id": str(1000 + index), "properties": props}


class FakeUpstream:
    """Offset-cursor upstream double.

    ``corrupt`` holds record indexes that make any page covering them fail
    with a 5xx. ``failures`` is a queue of exceptions raised by the next
    ``list_contacts`` calls before a page is served.
    """

    def __init__(self, records=None, *, corrupt=(), failures=(), contacts=None, errors=None):
        self.records = list(records or [])
        self.corrupt = set(corrupt)
        self.failures = list(failures)
        self.contacts: dict[str, dict] = dict(contacts or {})
        self.errors: dict[str, Exception] = dict(errors or {})
        self.calls: list[tuple[str | None, int]] = []
        self.fetched_ids: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None

    async def list_contacts(self, properties, *, limit, after=None):
        self.calls.append((after, limit))
        if self.failures:
            raise self.failures.pop(0)
        start = int(after) if after else 0
        end = min(start + limit, len(self.records))
        if any(i in self.corrupt for i in range(start, end)):
            raise UpstreamCorruptRecord(
                f"page at {after!r} size {limit} failed", cursor=after, size=limit, status_code=500
            )
        next_cursor = str(end) if end < len(self.records) else None
        return ContactPage(records=self.records[start:end], next_cursor=next_cursor)

    async def get_contact(self, object_id, properties=()):
        self.fetched_ids.append(object_id)
        if object_id in self.errors:
            raise self.errors[object_id]
        return self.contacts.get(object_id)

    def advance_cursor(self, cursor, count):
        return str(int(cursor or 0) + count)


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def raw_contact():
    return make_record


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest_asyncio.fixture
async def client(session_factory, upstream):
    """HTTPX async test client against the sync app."""
    from crmsync.app import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_upstream_client_factory] = lambda: (lambda: upstream)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
