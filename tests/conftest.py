import datetime
import os

# database.py refuses to import without a URL
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from access import BuildingAccessGate, UserDirectory
from config import ReservationSettings
from database import init_db, make_session_factory
from models import Building, BuildingMember, Room, Story, User
from reservations import ReservationService, RoomLocks

# A Monday at noon
NOW = datetime.datetime(2030, 1, 14, 12, 0)
TOMORROW = NOW.date() + datetime.timedelta(days=1)

ORGANIZER = 1
COLLEAGUE = 2
OUTSIDER = 4
STANDUP_ROOM = 1
HUDDLE_ROOM = 2
MISSING_ROOM = 99


def at(hour: int, minute: int = 0, day: datetime.date = TOMORROW) -> str:
    return datetime.datetime.combine(day, datetime.time(hour, minute)).isoformat()


def make_service(session, settings, locks=None, clock=lambda: NOW) -> ReservationService:
    return ReservationService(
        session=session,
        access_gate=BuildingAccessGate(session),
        directory=UserDirectory(session),
        settings=settings,
        locks=locks or RoomLocks(),
        clock=clock,
    )


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> ReservationSettings:
    return ReservationSettings()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def org(engine):
    """Users 1-5; users 1-3 work in HQ, which holds both rooms."""
    async with make_session_factory(engine)() as session:
        session.add_all(
            User(id=user_id, email=f"user{user_id}@example.com") for user_id in range(1, 6)
        )
        session.add(Building(id=1, name="HQ"))
        session.add(Building(id=2, name="Annex"))
        session.add_all(BuildingMember(building_id=1, user_id=u) for u in (1, 2, 3))
        session.add(BuildingMember(building_id=2, user_id=OUTSIDER))
        session.add(Story(id=1, name="Ground floor", building_id=1))
        session.add(Room(id=STANDUP_ROOM, name="Standup", capacity=5, story_id=1))
        session.add(Room(id=HUDDLE_ROOM, name="Huddle", capacity=3, story_id=1))
        await session.commit()


@pytest.fixture
async def session(engine, org):
    async with make_session_factory(engine)() as session:
        yield session


@pytest.fixture
def service(session, settings) -> ReservationService:
    return make_service(session, settings)
