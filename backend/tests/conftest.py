"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import anyio
import jwt
import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app import database
from app.config import get_settings
from app.database import get_db
from app.main import app
from app.models import AccountStatus, Base, User
from app.services import realtime
from app.services.delivery import DeliveryRouter
from app.services.presence import PresenceTracker


class DummyWebSocket:
    """Stand-in for a live event stream connection."""

    def __init__(self, *, fail: bool = False, send_delay: float = 0.0) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None
        self._fail = fail
        self._send_delay = send_delay

    async def send_json(self, data: dict[str, Any]) -> None:
        if self._send_delay:
            await anyio.sleep(self._send_delay)
        if self._fail:
            raise RuntimeError("socket is closing")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        return [item for item in self.sent if event_type is None or item.get("type") == event_type]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(session_factory) -> Callable[..., int]:
    """Create a user and return its id."""

    def factory(
        username: str,
        *,
        display_name: str | None = None,
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> int:
        with session_factory() as session:
            user = User(username=username, display_name=display_name, status=status)
            session.add(user)
            session.commit()
            return user.id

    return factory


@pytest.fixture()
def make_socket() -> Callable[..., DummyWebSocket]:
    return DummyWebSocket


def create_access_token(claims: dict[str, Any], expires_delta: timedelta = timedelta(minutes=15)) -> str:
    """Sign *claims* the way the external identity provider does."""

    settings = get_settings()
    payload = {**claims, "exp": datetime.now(timezone.utc) + expires_delta}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def auth_headers(user_id: int) -> dict[str, str]:
    token = create_access_token({"sub": str(user_id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def mint_token() -> Callable[..., str]:
    return create_access_token


@pytest.fixture()
def token_for() -> Callable[[int], str]:
    return lambda user_id: create_access_token({"sub": str(user_id)})


@pytest.fixture()
def headers_for() -> Callable[[int], dict[str, str]]:
    return auth_headers


@pytest.fixture()
def realtime_state(monkeypatch, session_factory) -> tuple[DeliveryRouter, PresenceTracker]:
    """Fresh delivery router and presence tracker wired into the app."""

    monkeypatch.setattr(database, "SessionLocal", session_factory)
    router = DeliveryRouter(None, node_id="test-node")
    tracker = PresenceTracker(
        router,
        realtime.resolve_presence_audience,
        grace_seconds=0,
        heartbeat_timeout_seconds=60,
        sweep_interval_seconds=60,
    )
    monkeypatch.setattr(realtime, "delivery_router", router)
    monkeypatch.setattr(realtime, "presence_tracker", tracker)
    return router, tracker


@pytest.fixture()
def client(session_factory, realtime_state) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
