"""Pytest configuration and shared fixtures: SQLite test database, fake Strava API, seeding helpers."""

import json
import os
from datetime import date, datetime, time, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Set test config before app imports so settings/engine use it
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["STRAVA_CLIENT_ID"] = "12345"
os.environ["STRAVA_CLIENT_SECRET"] = "strava-secret"
os.environ["STRAVA_REDIRECT_URI"] = "http://localhost:8000/api/v1/strava/callback"
os.environ["ACTIVITY_SOURCE"] = "event_table"
os.environ["REDIS_URL"] = ""

from fitclub.api.deps import get_strava_client
from fitclub.core.auth import create_access_token
from fitclub.db.base import Base
from fitclub.db.session import get_db
from fitclub.main import app
from fitclub.models.event import Event
from fitclub.models.event_registration import PAYMENT_PAID, EventRegistration
from fitclub.models.strava_credentials import StravaCredentials
from fitclub.models.user import User
from fitclub.services.activity_cache import MemoryCacheStore
from fitclub.services.crypto import encrypt_token
from fitclub.services.strava_client import RequestCounter, StravaClient

FAR_FUTURE = 4102444800  # 2100-01-01


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite/aiosqlite begin transactions lazily, which breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test with all tables created."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fitclub.db'}")
    _enable_sqlite_savepoints(eng)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


def local_noon_utc(day: date) -> datetime:
    """Noon on the host-local calendar day, as a UTC instant."""
    return datetime.combine(day, time(12, 0)).astimezone(timezone.utc)


def raw_activity(activity_id: int, day: date, type_: str = "Run", distance: float = 5000.0, **extra) -> dict:
    """Strava-shaped activity starting at local noon on `day`."""
    start = local_noon_utc(day)
    return {
        "id": activity_id,
        "name": f"{type_} {activity_id}",
        "type": type_,
        "distance": distance,
        "moving_time": 1800,
        "elapsed_time": 1900,
        "total_elevation_gain": 12.5,
        "start_date": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "start_date_local": f"{day.isoformat()}T12:00:00Z",
        **extra,
    }


class FakeStrava:
    """In-process stand-in for the Strava token and activities endpoints."""

    def __init__(self):
        self.activities: dict[str, list[dict]] = {}  # access token -> raw activities
        self.refresh_grants: dict[str, dict] = {}  # refresh token -> token response
        self.code_grant = {
            "access_token": "code-access",
            "refresh_token": "code-refresh",
            "expires_at": FAR_FUTURE,
            "athlete": {"id": 4242},
        }
        self.activity_responses: list[httpx.Response] = []  # queued overrides, consumed first
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth/token"):
            body = json.loads(request.content)
            if body["grant_type"] == "authorization_code":
                return httpx.Response(200, json=self.code_grant)
            grant = self.refresh_grants.get(body.get("refresh_token"))
            if grant is None:
                return httpx.Response(400, json={"message": "Bad Request", "errors": [{"code": "invalid"}]})
            return httpx.Response(200, json=grant)
        if request.url.path.endswith("/athlete/activities"):
            if self.activity_responses:
                return self.activity_responses.pop(0)
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            if token not in self.activities:
                return httpx.Response(401, json={"message": "Authorization Error"})
            return httpx.Response(200, json=self.activities[token])
        return httpx.Response(404)

    def activity_calls(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/athlete/activities")]

    def token_calls(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith("/oauth/token")]


@pytest.fixture
def fake_strava():
    return FakeStrava()


@pytest_asyncio.fixture
async def strava_http(fake_strava):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_strava.handler)) as http:
        yield http


@pytest.fixture
def strava_client(strava_http):
    return StravaClient(strava_http, counter=RequestCounter(), sleep=AsyncMock())


class Seeder:
    """Creates committed rows so every session (and the API) sees them."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def user(self, email: str, first_name: str | None = None, last_name: str | None = None, role: str = "user") -> int:
        async with self.session_maker() as s:
            user = User(email=email, first_name=first_name, last_name=last_name, role=role)
            s.add(user)
            await s.commit()
            return user.id

    async def event(self, name: str, start_date: date, end_date: date | None = None, is_active: bool = True) -> int:
        async with self.session_maker() as s:
            ev = Event(name=name, start_date=start_date, end_date=end_date, is_active=is_active)
            s.add(ev)
            await s.commit()
            return ev.id

    async def register(self, event_id: int, user_id: int, payment_status: str = PAYMENT_PAID, at: datetime | None = None) -> None:
        async with self.session_maker() as s:
            reg = EventRegistration(event_id=event_id, user_id=user_id, payment_status=payment_status)
            if at is not None:
                reg.registration_date = at
            s.add(reg)
            await s.commit()

    async def connect(self, user_id: int, access_token: str | None = None, refresh_token: str | None = None, expires_at: int = FAR_FUTURE) -> str:
        """Store a Strava credential; returns the access token."""
        access_token = access_token or f"access-{user_id}"
        async with self.session_maker() as s:
            s.add(
                StravaCredentials(
                    user_id=user_id,
                    access_token=access_token,
                    encrypted_refresh_token=encrypt_token(refresh_token or f"refresh-{user_id}"),
                    expires_at=expires_at,
                )
            )
            user = await s.get(User, user_id)
            user.strava_connected = True
            await s.commit()
        return access_token


@pytest.fixture
def seed(session_maker):
    return Seeder(session_maker)


def bearer(email: str) -> dict:
    """Authorization header with an identity-provider token for `email`."""
    token = create_access_token({"sub": f"idp-{email}", "email": email, "aud": "authenticated"})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_maker, strava_http):
    """AsyncClient against the app, with the test database and fake Strava wired in."""

    async def _get_db():
        async with session_maker() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_strava_client] = lambda: StravaClient(
        strava_http, counter=RequestCounter(), sleep=AsyncMock()
    )
    app.state.cache_store = MemoryCacheStore()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.cache_store = None
