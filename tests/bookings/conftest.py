import os
import sys
import tempfile
from datetime import datetime
from zoneinfo import ZoneInfo

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Service settings are read at import time, so they must be in place first.
_DB_DIR = tempfile.mkdtemp(prefix="bookings-tests-")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(_DB_DIR, "service.db")
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["BOOKING_TIMEZONE"] = "Asia/Kolkata"

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings_service.clock import FixedClock
from bookings_service.database import init_db, make_engine
from bookings_service.engine import BookingEngine
from bookings_service.models import Room
from bookings_service.notifications import NotificationSink
from bookings_service.realtime import Broadcaster
from common.cache import InMemoryRoomStatusCache

IST = ZoneInfo("Asia/Kolkata")

ROOMS = [
    ("101", 1, 40),
    ("102", 1, 40),
    ("103", 1, 10),
    ("201", 2, 60),
]


def ist(year, month, day, hour, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=IST)


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.events = []

    async def notify(self, kind, recipients, payload):
        self.events.append((kind, tuple(recipients), payload))

    def kinds(self):
        return [kind for kind, _, _ in self.events]


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        self.room_events = []
        self.booking_events = []

    async def broadcast_room_status(self, room_number, building_number, status):
        self.room_events.append((room_number, building_number, status))

    async def broadcast_booking_update(self, owner_id, booking):
        self.booking_events.append((owner_id, booking))


@pytest.fixture
def clock():
    return FixedClock(ist(2025, 9, 10, 8, 0))


@pytest.fixture
async def session_factory(tmp_path):
    db_engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await init_db(db_engine)
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        for room_number, building_number, capacity in ROOMS:
            db.add(Room(room_number=room_number, building_number=building_number, capacity=capacity))
        await db.commit()
    yield factory
    await db_engine.dispose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def cache():
    return InMemoryRoomStatusCache(ttl_seconds=15)


@pytest.fixture
def engine(session_factory, clock, cache, notifier, broadcaster):
    return BookingEngine(
        session_factory,
        clock=clock,
        cache=cache,
        notifier=notifier,
        broadcaster=broadcaster,
        timezone="Asia/Kolkata",
    )
