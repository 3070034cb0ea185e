# tests/conftest.py
from __future__ import annotations

import os
import uuid
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from itertools import count
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-clinx-relay")
os.environ.setdefault("INVITE_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("STORE_RETRY_BASE_DELAY_SECONDS", "0")

from clinx_relay.core.security import create_access_token
from clinx_relay.db.session import Base
from clinx_relay.db.session import get_db as app_get_session
from clinx_relay.main import app as fastapi_app
from clinx_relay.models import User
from clinx_relay.realtime.dispatcher import Dispatcher
from clinx_relay.realtime.registry import PresenceRegistry
from clinx_relay.realtime.rooms import RoomKey
from clinx_relay.services.channels import ChannelService
from clinx_relay.services.groups import GroupService
from clinx_relay.services.invites import InviteService
from clinx_relay.services.messaging import MessagingService
from clinx_relay.services.notifications import NotificationService
from clinx_relay.services.teams import TeamService

TEST_DB_URL = "sqlite://"

_USER_COUNTER = count(1)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    # Service commits and rollbacks only ever touch a SAVEPOINT.
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture()
def dispatcher(registry: PresenceRegistry) -> Dispatcher:
    return Dispatcher(registry)


@pytest.fixture(autouse=True)
def live_state(app: FastAPI, registry: PresenceRegistry, dispatcher: Dispatcher) -> Iterator[None]:
    """Give every test a fresh process-local registry and dispatcher."""
    previous = (app.state.registry, app.state.dispatcher)
    app.state.registry = registry
    app.state.dispatcher = dispatcher
    try:
        yield
    finally:
        app.state.registry, app.state.dispatcher = previous


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@dataclass
class RecordingSession:
    """In-memory live session that records every event it is sent."""

    user_id: int
    name: str = "user"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    fail: bool = False
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def send(self, event: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture()
def connect(registry: PresenceRegistry) -> Callable[..., RecordingSession]:
    """Register a recording session for a user and join it to extra rooms."""

    def _connect(user: User, *rooms: RoomKey, fail: bool = False) -> RecordingSession:
        session = RecordingSession(user_id=user.id, name=user.name, fail=fail)
        registry.register(session)
        for room in rooms:
            registry.join_room(session.session_id, room)
        return session

    return _connect


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., User]:
    def _make_user(name: str | None = None, email: str | None = None) -> User:
        n = next(_USER_COUNTER)
        user = User(name=name or f"User {n}", email=email or f"user{n}@example.com")
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture()
def alice(make_user: Callable[..., User]) -> User:
    return make_user("Alice", "alice@example.com")


@pytest.fixture()
def bob(make_user: Callable[..., User]) -> User:
    return make_user("Bob", "bob@example.com")


@pytest.fixture()
def carol(make_user: Callable[..., User]) -> User:
    return make_user("Carol", "carol@example.com")


@pytest.fixture()
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _auth_headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _auth_headers


@pytest.fixture()
def notifier(db_session: Session, dispatcher: Dispatcher) -> NotificationService:
    return NotificationService(db_session, dispatcher)


@pytest.fixture()
def messaging(db_session: Session, dispatcher: Dispatcher, notifier: NotificationService) -> MessagingService:
    return MessagingService(db_session, dispatcher, notifier)


@pytest.fixture()
def groups(
    db_session: Session,
    registry: PresenceRegistry,
    dispatcher: Dispatcher,
    notifier: NotificationService,
) -> GroupService:
    return GroupService(db_session, registry, dispatcher, notifier)


@pytest.fixture()
def channels(db_session: Session, registry: PresenceRegistry, dispatcher: Dispatcher) -> ChannelService:
    return ChannelService(db_session, registry, dispatcher)


@pytest.fixture()
def teams(
    db_session: Session,
    registry: PresenceRegistry,
    dispatcher: Dispatcher,
    notifier: NotificationService,
) -> TeamService:
    return TeamService(db_session, registry, dispatcher, notifier)


@pytest.fixture()
def invites(
    db_session: Session,
    registry: PresenceRegistry,
    dispatcher: Dispatcher,
    notifier: NotificationService,
) -> InviteService:
    return InviteService(db_session, registry, dispatcher, notifier)
