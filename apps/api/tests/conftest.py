"""
Test configuration and fixtures.

Provides:
- SQLite database with savepoint isolation (rollback after each test)
- Users with and without verified LINE links
- A LINE API double behind httpx.MockTransport
- HTTPX AsyncClient wired to the app with dependency overrides
"""
import itertools
import json
import os
import uuid
from dataclasses import dataclass, field
from typing import AsyncGenerator, Generator

# Settings are read at import time; configure before importing the app
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", "sqlite://")
os.environ["LINE_CHANNEL_SECRET"] = "test-channel-secret"
os.environ["LINE_ACCESS_TOKEN"] = "test-access-token"
os.environ["LINE_RICH_MENU_ID"] = ""
os.environ["NOTIFY_RETRY_DELAY_SECONDS"] = "0"
os.environ["FRONTEND_URL"] = "https://desk.test"
os.environ["S3_BUCKET"] = ""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.orm import Session

from repairdesk.core.deps import get_blob_storage, get_db, get_line_client
from repairdesk.db.base import Base
from repairdesk.db.enums import LineLinkStatus, RepairTicketStatus, Role, UrgencyLevel
from repairdesk.db.models import LineOALink, RepairTicket, RepairTicketAssignee, User
from repairdesk.db.session import SessionLocal, engine
from repairdesk.main import app
from repairdesk.services.line_api import LineMessagingClient


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

if engine.dialect.name == "sqlite":
    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a database session with savepoint for test isolation.

    App code can call commit()/rollback(); both act on a savepoint inside
    the outer transaction, which is rolled back at the end of the test.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


def _make_user(db: Session, *, role: Role = Role.USER, name: str | None = None) -> User:
    user = User(
        email=f"user-{uuid.uuid4().hex[:8]}@test.com",
        name=name or f"{role.value.title()} {uuid.uuid4().hex[:4]}",
        role=role,
    )
    db.add(user)
    db.flush()
    return user


def _link_line(
    db: Session,
    user: User,
    line_user_id: str | None = None,
    status: LineLinkStatus = LineLinkStatus.VERIFIED,
) -> LineOALink:
    link = LineOALink(
        user_id=user.id,
        line_user_id=line_user_id or f"U{uuid.uuid4().hex}",
        status=status,
    )
    db.add(link)
    db.flush()
    return link


@pytest.fixture
def make_user(db: Session):
    def factory(role: Role = Role.USER, name: str | None = None) -> User:
        return _make_user(db, role=role, name=name)
    return factory


@pytest.fixture
def link_line(db: Session):
    """Create a LINE link for a user (VERIFIED unless told otherwise)."""
    def factory(user: User, line_user_id: str | None = None, status: LineLinkStatus = LineLinkStatus.VERIFIED) -> LineOALink:
        return _link_line(db, user, line_user_id, status)
    return factory


@pytest.fixture
def make_ticket(db: Session):
    """Insert a committed ticket; ``assignee_ids`` become current assignees."""
    sequence = itertools.count(1)

    def factory(*, assignee_ids: list[int] | None = None, **fields) -> RepairTicket:
        data = {
            "ticket_code": f"TRR-01012569{next(sequence):03d}",
            "status": RepairTicketStatus.PENDING,
            "urgency": UrgencyLevel.NORMAL,
            "reporter_name": "Somchai Reporter",
            "problem_title": "Printer jam",
        }
        data.update(fields)
        ticket = RepairTicket(**data)
        db.add(ticket)
        db.flush()
        db.add_all(
            RepairTicketAssignee(repair_ticket_id=ticket.id, user_id=uid) for uid in assignee_ids or []
        )
        db.commit()
        return ticket
    return factory


@pytest.fixture(scope="function")
def reporter(db: Session) -> User:
    return _make_user(db, role=Role.USER, name="Somchai Reporter")


@pytest.fixture(scope="function")
def technician(db: Session) -> User:
    return _make_user(db, role=Role.IT, name="Anan Tech")


@pytest.fixture(scope="function")
def admin(db: Session) -> User:
    return _make_user(db, role=Role.ADMIN, name="Admin Person")


# =============================================================================
# LINE API double
# =============================================================================


@dataclass
class LineApiDouble:
    """Records outbound LINE calls; can be told to fail."""

    calls: list[dict] = field(default_factory=list)
    fail_times: int = 0
    fail_always: bool = False
    failure_status: int = 500
    # 1-based call numbers that fail once each
    fail_calls: set[int] = field(default_factory=set)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.calls.append({"method": request.method, "path": request.url.path, "json": body})
        if len(self.calls) in self.fail_calls:
            return httpx.Response(self.failure_status, json={"message": "boom"})
        if self.fail_always or self.fail_times > 0:
            self.fail_times = max(0, self.fail_times - 1)
            return httpx.Response(self.failure_status, json={"message": "boom"})
        if request.url.path == "/v2/bot/info":
            return httpx.Response(200, json={"displayName": "Repair Desk", "basicId": "@repair"})
        if request.url.path.startswith("/v2/bot/profile/"):
            user_id = request.url.path.rsplit("/", 1)[1]
            return httpx.Response(
                200, json={"userId": user_id, "displayName": "LINE Name", "pictureUrl": "https://pic.test/a.png"}
            )
        return httpx.Response(200, json={})

    def sends(self, kind: str | None = None) -> list[dict]:
        """Message calls (push/reply/multicast), optionally filtered by kind."""
        paths = {
            "push": "/v2/bot/message/push",
            "reply": "/v2/bot/message/reply",
            "multicast": "/v2/bot/message/multicast",
        }
        wanted = {paths[kind]} if kind else set(paths.values())
        return [c for c in self.calls if c["path"] in wanted]


@pytest.fixture(scope="function")
def line_api() -> LineApiDouble:
    return LineApiDouble()


@pytest.fixture(scope="function")
def line_client(line_api: LineApiDouble) -> LineMessagingClient:
    return LineMessagingClient(
        "test-access-token",
        base_url="https://line.test",
        transport=httpx.MockTransport(line_api.handler),
    )


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="function")
async def client(db: Session, line_client: LineMessagingClient) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app with DB and LINE overrides."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_line_client] = lambda: line_client
    app.dependency_overrides[get_blob_storage] = lambda: None

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


def _actor_headers(user: User) -> dict[str, str]:
    return {"X-User-Id": str(user.id), "X-User-Role": user.role.value}


@pytest.fixture
def headers_for():
    """Gateway identity headers for a user."""
    return _actor_headers
