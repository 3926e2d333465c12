"""
Pytest configuration and fixtures.

Sets up import paths and a throwaway SQLite record store for the test suite.
"""

import os
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Add tests directory to path for fixtures
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

# Settings are read on first import, so these must be set before any consultbook import.
# SQLite's CURRENT_TIMESTAMP is UTC, so the store clock runs in UTC here.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Singapore")
os.environ.setdefault("STORE_TIMEZONE", "UTC")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from consultbook.models import Agent, Base, Lead
from consultbook.services.availability import AvailabilitySource
from consultbook.services.booking import BookingOrchestrator
from consultbook.services.records import RecordStore
from consultbook.services.slots import SlotGenerator
from fixtures.fakes import (
    MONDAY_10AM,
    NO_WAIT,
    FakeCalendar,
    FakeConferencing,
    FakeNotifier,
    fixed_clock,
)


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'consultbook.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> RecordStore:
    return RecordStore(session_factory)


@pytest.fixture
async def agent(session_factory) -> Agent:
    """Weekday agent, 09:00-18:00 Singapore time, with calendar and Zoom identities."""
    record = Agent(
        full_name="Alice Tan",
        email="alice@example.com",
        work_start_hour=9,
        work_end_hour=18,
        working_days="0,1,2,3,4",
        timezone="Asia/Singapore",
        zoom_user_id="alice@example.com",
        calendar_id="alice@example.com",
    )
    async with session_factory() as session, session.begin():
        session.add(record)
    return record


@pytest.fixture
async def lead(session_factory) -> Lead:
    record = Lead(full_name="Ben Lim", phone_number="+6591234567", email="ben@example.com")
    async with session_factory() as session, session.begin():
        session.add(record)
    return record


@pytest.fixture
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture
def conferencing() -> FakeConferencing:
    return FakeConferencing()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def availability(calendar) -> AvailabilitySource:
    return AvailabilitySource(calendar, retry_policy=NO_WAIT)


@pytest.fixture
def slot_generator(availability) -> SlotGenerator:
    return SlotGenerator(availability, clock=fixed_clock(MONDAY_10AM))


@pytest.fixture
def orchestrator(store, availability, calendar, conferencing, notifier) -> BookingOrchestrator:
    return BookingOrchestrator(
        store,
        availability,
        calendar,
        conferencing,
        notifier,
        clock=fixed_clock(MONDAY_10AM),
        external_retry=NO_WAIT,
        store_retry=NO_WAIT,
    )
