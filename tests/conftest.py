# tests/conftest.py
import os
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DB_USER", "circle")
os.environ.setdefault("DB_PASSWORD", "circle")
os.environ.setdefault("DB_NAME", "circle_test")
os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("DB_AUTO_CREATE", "false")

import app.models  # noqa: E402,F401
from app.core.config import Settings  # noqa: E402
from app.core.database import Base, SchemaCapabilities  # noqa: E402
from app.models.user import User  # noqa: E402
from app.repositories.friendship import FriendshipRepository  # noqa: E402
from app.services.realtime import RealtimeHub  # noqa: E402

# Throttles and batch pauses off unless a test turns them on
FAST_SETTINGS = {
    "PRESENCE_UPDATE_THROTTLE_SECONDS": 0,
    "NOTIFICATION_THROTTLE_SECONDS": 0,
    "ACTIVITY_THROTTLE_SECONDS": 0,
    "PRESENCE_BATCH_PAUSE_SECONDS": 0,
    "NOTIFICATION_BATCH_PAUSE_SECONDS": 0,
    "ACTIVITY_BATCH_PAUSE_SECONDS": 0,
    "NOTIFICATION_ACK_TIMEOUT_SECONDS": 0.1,
}


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Records frames instead of writing to sockets"""

    def __init__(self):
        self.sent: List[Tuple[str, str, Any]] = []
        self.closed: Dict[str, Tuple[int, str]] = {}
        self.registered: Set[str] = set()
        self.resolved: List[Tuple[str, Any]] = []
        self.dead: Set[str] = set()
        # What every emit_with_ack returns; None simulates a timeout
        self.ack_response: Any = {"status": "received"}

    def register(self, connection_id: str, websocket: Any = None) -> None:
        self.registered.add(connection_id)

    def unregister(self, connection_id: str) -> None:
        self.registered.discard(connection_id)

    async def emit(self, connection_id: str, event: str, data: Any = None) -> bool:
        if connection_id in self.dead:
            return False
        self.sent.append((connection_id, event, data))
        return True

    async def emit_with_ack(self, connection_id: str, event: str, data: Any = None, timeout: float = 5.0) -> Any:
        if not await self.emit(connection_id, event, data):
            return None
        return self.ack_response

    def resolve_ack(self, ack_id: str, payload: Any = None) -> bool:
        self.resolved.append((ack_id, payload))
        return True

    async def send_error(self, connection_id: str, error_message: str, error_code: Optional[str] = None) -> bool:
        return await self.emit(connection_id, "error", {"message": error_message, "code": error_code})

    async def close(self, connection_id: str, code: int = 1000, reason: str = "") -> None:
        self.closed[connection_id] = (code, reason)

    def events(self, connection_id: Optional[str] = None, event: Optional[str] = None) -> List[Tuple[str, str, Any]]:
        return [
            frame for frame in self.sent
            if (connection_id is None or frame[0] == connection_id) and (event is None or frame[1] == event)
        ]

    def data(self, connection_id: str, event: str) -> List[Any]:
        return [frame[2] for frame in self.events(connection_id, event)]

    def clear(self) -> None:
        self.sent.clear()


def make_settings(**overrides) -> Settings:
    return Settings(**{**FAST_SETTINGS, **overrides})


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_hub(session_factory, transport, clock):
    def _make(capabilities: Optional[SchemaCapabilities] = None, **overrides) -> RealtimeHub:
        return RealtimeHub(
            make_settings(**overrides),
            session_factory,
            transport,
            capabilities or SchemaCapabilities.everything(),
            clock=clock,
        )
    return _make


@pytest.fixture
def hub(make_hub) -> RealtimeHub:
    return make_hub()


@pytest_asyncio.fixture
async def users(session_factory) -> Dict[str, User]:
    """alice, bob, carol and dave, in id order"""
    names = ["alice", "bob", "carol", "dave"]
    async with session_factory() as db:
        created = {}
        for name in names:
            user = User(email=f"{name}@example.com", username=name, full_name=name.title())
            db.add(user)
            await db.flush()
            created[name] = user
        await db.commit()
    return created


async def befriend(session_factory, user1: User, user2: User) -> int:
    async with session_factory() as db:
        friendship = await FriendshipRepository(db).create_friendship(user1.id, user2.id)
        await db.commit()
        return friendship.id


async def block(session_factory, blocker: User, blocked: User) -> None:
    async with session_factory() as db:
        await FriendshipRepository(db).create_block(blocker.id, blocked.id, None)
        await db.commit()


async def connect(hub: RealtimeHub, user: User, connection_id: Optional[str] = None) -> str:
    connection_id = connection_id or f"{user.username}-{hub.registry.connection_count_for(user.id) + 1}"
    hub.transport.register(connection_id)
    assert await hub.registry.add_connection(connection_id, user.id)
    return connection_id
