"""Shared test fixtures for the engagesync test suite."""

import math
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from engagesync.core.config import Settings
from engagesync.core.database import Base, make_engine, make_session_maker
# Import all models so their metadata is registered on Base
import engagesync.models.database  # noqa: F401
import engagesync.models.sync_log  # noqa: F401


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """
    Provide a session factory over a file-backed SQLite database.

    The sync code opens many short-lived sessions, which an in-memory
    database cannot share, so each test gets its own database file.
    """
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield make_session_maker(engine)

    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(session_maker) -> AsyncSession:
    async with session_maker() as session:
        yield session


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=str(tmp_path / "test.db"),
        phoneburner_base_url="https://pb.test/rest/1",
        nocodb_base_url="https://nocodb.test",
        nocodb_table_id="tbl1",
        nocodb_api_token="noco-token",
        rate_limit_delay_ms=0,
        time_budget_ms=1_000_000,
        max_retries=3,
    )


class FakeClock:
    """Monotonic clock and sleep that only move when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _page(items: list, page: int, size: int) -> list:
    return items[(page - 1) * size:page * size]


class FakePhoneBurner:
    """
    In-memory dialer API served through ``httpx.MockTransport``.

    Every request advances the fake clock by ``request_cost`` seconds so
    tests can steer the time budget by request count.
    """

    def __init__(
        self,
        contacts: int = 0,
        sessions: int = 0,
        calls_per_session: int = 2,
        clock: FakeClock | None = None,
        request_cost: float = 0.0,
    ):
        self.contacts = [
            {
                "contact_user_id": str(1000 + i),
                "first_name": f"First{i}",
                "last_name": f"Last{i}",
                "email": f"Contact{i}@Example.com",
                "phone": f"+4470000{i:05d}",
                "company": f"Company {i}",
            }
            for i in range(contacts)
        ]
        self.sessions = [
            {
                "dialsession_id": f"s{i}",
                "member_user_id": "m1",
                "first_name": "Rep",
                "last_name": "One",
                "start_when": "2025-01-28 10:00:00",
                "end_when": "2025-01-28 11:00:00",
                "call_count": calls_per_session,
            }
            for i in range(sessions)
        ]
        self.calls_per_session = calls_per_session
        self.usage = {
            "m1": {"name": "Rep One", "sessions": 3, "calls": 40, "connected": 12, "voicemail": 9, "talktime": 15},
        }
        self.clock = clock
        self.request_cost = request_cost
        self.requests: list[httpx.Request] = []
        self.status_override: int | None = None
        self.failing_paths: set[str] = set()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def paths(self) -> list[str]:
        return [r.url.path.removeprefix("/rest/1") for r in self.requests]

    def calls_for(self, session_id: str) -> list[dict]:
        index = int(session_id.removeprefix("s"))
        return [
            {
                "call_id": f"{session_id}-c{j}",
                "contact_user_id": str(1000 + (index + j) % max(len(self.contacts), 1)),
                "phone_dialed": "+447000000000",
                "start_when": "2025-01-28 10:05:00",
                "duration": 90 if j % 2 == 0 else 10,
                "disposition": "Send Email" if j % 2 == 0 else "Voicemail",
            }
            for j in range(self.calls_per_session)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.clock is not None:
            self.clock.advance(self.request_cost)

        if self.status_override is not None:
            return httpx.Response(self.status_override, json={"error": "forced"})

        path = request.url.path.removeprefix("/rest/1")
        if path in self.failing_paths:
            return httpx.Response(500, text="upstream exploded")

        params = request.url.params
        page = int(params.get("page", 1))
        size = int(params.get("page_size", 100))

        if path == "/contacts":
            total_pages = max(1, math.ceil(len(self.contacts) / size))
            return httpx.Response(200, json={"contacts": {
                "page": page,
                "total_pages": total_pages,
                "total_results": len(self.contacts),
                "contacts": _page(self.contacts, page, size),
            }})

        if path == "/dialsession":
            total_pages = max(1, math.ceil(len(self.sessions) / size))
            # Single-page listings arrive as an array wrapped in another array
            items = _page(self.sessions, page, size)
            return httpx.Response(200, json={"dialsessions": {
                "page": page,
                "total_pages": total_pages,
                "dialsessions": [items] if total_pages == 1 else items,
            }})

        if path == "/dialsession/usage":
            return httpx.Response(200, json={"usage": self.usage})

        if path.startswith("/dialsession/"):
            session_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"dialsession": {
                "dialsession_id": session_id,
                "calls": self.calls_for(session_id),
            }})

        if path == "/members":
            return httpx.Response(200, json={"members": {"members": [
                {"user_id": "m1", "first_name": "Rep", "last_name": "One"},
            ]}})

        return httpx.Response(404, json={"error": "not found"})


class FakeNocoDB:
    """In-memory NocoDB records endpoint."""

    def __init__(self, rows: int = 0):
        self.rows = [
            {
                "Id": i + 1,
                "Call Title": f"Acme{i} <ext> Intro call",
                "Host Email": "rep@ourfirm.com",
                "All Participants": f"rep@ourfirm.com, owner{i}@acme{i}.com",
                "Date Time": "2025-01-28T10:00:00.000Z",
                "Overall Quality Score": "7.5" if i % 2 == 0 else "",
                "Seller Interest Score": 6,
                "Duration": "1800",
            }
            for i in range(rows)
        ]
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("xc-token") != "noco-token":
            return httpx.Response(401, json={"msg": "Invalid token"})

        params = request.url.params
        limit = int(params.get("limit", 25))
        offset = int(params.get("offset", 0))
        chunk = self.rows[offset:offset + limit]
        return httpx.Response(200, json={
            "list": chunk,
            "pageInfo": {
                "totalRows": len(self.rows),
                "page": offset // limit + 1,
                "pageSize": limit,
                "isLastPage": offset + limit >= len(self.rows),
            },
        })
