import sys
import pathlib
import warnings
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

# Reduce SQLAlchemy logger verbosity during tests
import logging as _logging
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from todolane.db import Database
from todolane.feeds import FeedService
from todolane.main import create_app
from todolane.projects import ProjectService
from todolane.todos import TodoService


class FixedClock:
    """Callable clock for services; tests move it with ``set``."""

    def __init__(self, now: datetime):
        self.now = now

    def set(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def ics_calendar(*events: str) -> bytes:
    body = '\r\n'.join(['BEGIN:VCALENDAR', 'VERSION:2.0', 'PRODID:-//todolane tests//EN', *events, 'END:VCALENDAR'])
    return (body + '\r\n').encode('utf-8')


def ics_event(uid: str | None, summary: str | None, dtstart: str, extra: tuple[str, ...] = ()) -> str:
    lines = ['BEGIN:VEVENT']
    if uid is not None:
        lines.append(f'UID:{uid}')
    lines.append('DTSTAMP:20240101T000000Z')
    lines.append(dtstart)
    if summary is not None:
        lines.append(f'SUMMARY:{summary}')
    lines.extend(extra)
    lines.append('END:VEVENT')
    return '\r\n'.join(lines)


def feed_transport(routes: dict[str, tuple[int, bytes]]) -> httpx.MockTransport:
    """MockTransport answering by full URL with (status, body); unknown URLs get a 404."""
    def handler(request: httpx.Request) -> httpx.Response:
        status, body = routes.get(str(request.url), (404, b"not found"))
        return httpx.Response(status, content=body)
    return httpx.MockTransport(handler)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'todos.db'}")
    await database.init()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def projects(db):
    return ProjectService(db)


@pytest_asyncio.fixture
async def todos(db, clock):
    return TodoService(db, clock=clock)


@pytest.fixture
def make_feeds(db, projects, todos, clock):
    """Factory building a FeedService against a mocked feed transport."""
    def _make(transport: httpx.AsyncBaseTransport, local_tz=timezone.utc) -> FeedService:
        return FeedService(db, todos, projects, transport=transport, local_tz=local_tz, clock=clock)
    return _make


@pytest_asyncio.fixture
async def app(db):
    # routes mutated per test through app.state.feed_routes
    routes: dict[str, tuple[int, bytes]] = {}
    application = create_app(db=db, feed_transport=feed_transport(routes), refresher_enabled=False)
    application.state.feed_routes = routes
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.refresher.drain()
