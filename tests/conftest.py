"""Shared test infrastructure for the Rendezvous test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- session_factory: sessionmaker bound to the same in-memory engine
- file_session_factory: file-backed SQLite, for tests needing independent connections
- notifier: mock NotificationService capturing outbound notifications
- clock: controllable clock that ticks one second per read
- make_store / make_engagement: factories for stores and engagements in a given state
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from rendezvous.infra.database import Base

import rendezvous.domain.models  # noqa: F401

from rendezvous.app.config import Settings
from rendezvous.domain.enums import EngagementAction, EngagementStatus
from rendezvous.services.engagement_state_machine import EngagementStateMachine
from rendezvous.services.engagement_store import EngagementStore
from rendezvous.services.side_effect_dispatcher import SideEffectDispatcher

INITIATOR = "user_alice"
RECIPIENT = "user_bob"
OUTSIDER = "user_mallory"

SCHEDULE = {"day": "Friday", "time": "7:00 PM", "venue": "Cafe X"}


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory():
    """Async SQLite in-memory engine with all tables created.

    StaticPool keeps one connection so every session sees the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Async session on the in-memory database; rolled back at teardown."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def file_session_factory(tmp_path):
    """File-backed SQLite so two sessions hold independent connections."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rendezvous_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class FakeClock:
    """Starts at a fixed instant and ticks one second on every read."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class FakeCodeGenerator:
    """Hands out predetermined codes in order, then falls back to a counter."""

    def __init__(self, codes=None):
        self.codes = list(codes or [])
        self._next = 1000

    def generate(self) -> str:
        if self.codes:
            return self.codes.pop(0)
        self._next += 1
        return str(self._next)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 6, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings():
    """Settings with every external collaborator unconfigured."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        notification_webhook_url="",
        chat_service_url="",
        notification_max_attempts=3,
        notification_retry_base_seconds=30,
        handshake_max_failures=0,
        handshake_cooldown_seconds=0,
        reminder_lead_hours=24,
    )


@pytest.fixture
def notifier():
    """Mock NotificationService that captures outbound notifications.

    Returns a MagicMock with send_notification patched to append
    (user_id, kind, payload, idempotency_key) tuples to a .sent list.
    """
    mock = MagicMock()
    mock.sent = []

    async def _capture_send(user_id, kind, payload, idempotency_key=None):
        mock.sent.append((user_id, kind, payload, idempotency_key))
        return {"ok": True}

    mock.send_notification = AsyncMock(side_effect=_capture_send)
    return mock


@pytest.fixture
def dispatcher(notifier, test_settings, clock):
    return SideEffectDispatcher(notifier=notifier, settings=test_settings, clock=clock)


@pytest.fixture
def make_store(dispatcher, clock):
    """Factory for an EngagementStore with deterministic codes.

    Usage:
        store = make_store(db_session, codes=["4821", "9053"])
    """
    def _factory(db, codes=None, max_failures=0, cooldown_seconds=0, dispatcher_override=None):
        return EngagementStore(
            db,
            code_generator=FakeCodeGenerator(codes),
            dispatcher=dispatcher_override or dispatcher,
            state_machine=EngagementStateMachine(
                handshake_max_failures=max_failures,
                handshake_cooldown_seconds=cooldown_seconds,
            ),
            clock=clock,
        )

    return _factory


@pytest.fixture
def store(db_session, make_store):
    return make_store(db_session, codes=["4821", "9053", "7310", "2468"])


# Actions that walk a fresh request up to each status
_PATH = [
    (EngagementStatus.REQUESTED, RECIPIENT, EngagementAction.ACCEPT, None),
    (EngagementStatus.ACCEPTED, INITIATOR, EngagementAction.SCHEDULE, SCHEDULE),
    (EngagementStatus.SCHEDULED, INITIATOR, EngagementAction.START_VERIFICATION, None),
]


@pytest.fixture
def make_engagement():
    """Factory that creates an engagement and advances it to ``status``.

    Usage:
        engagement = await make_engagement(store, EngagementStatus.SCHEDULED)
    """
    async def _factory(store, status=EngagementStatus.REQUESTED, schedule=None):
        engagement = await store.create_engagement(INITIATOR, RECIPIENT, match_id="match_1")
        for from_status, actor, action, payload in _PATH:
            if engagement.status == status.value:
                break
            if action == EngagementAction.SCHEDULE and schedule is not None:
                payload = schedule
            engagement = await store.apply_transition(engagement.id, actor, from_status, action, payload)

        if status == EngagementStatus.IN_PROGRESS:
            engagement = await store.apply_transition(
                engagement.id, RECIPIENT, EngagementStatus.VERIFICATION_PENDING,
                EngagementAction.SUBMIT_HANDSHAKE_CODE, {"code": engagement.handshake_code},
            )
        assert engagement.status == status.value
        return engagement

    return _factory
