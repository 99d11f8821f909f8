import asyncio
from datetime import date, time

import pytest
from sqlalchemy import select

from conftest import ist

from bookings_service.bulk import BULK_NOTES, RecurrenceRule
from bookings_service.conflicts import ConflictDetector
from bookings_service.engine import BookingEngine, BookingMeta
from bookings_service.errors import (
    ConflictError,
    IllegalTransitionError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from bookings_service.intervals import Interval, RoomKey
from bookings_service.models import Booking, BookingStatus, Room, RoomStatus
from bookings_service.notifications import EVERYONE, NotificationKind
from bookings_service.repository import BookingRepository
from common.cache import InMemoryRoomStatusCache


async def book(engine, room_number, start, end, owner_id="u1", owner_name="Asha", building_number=1, **meta):
    return await engine.create_booking(
        room_number,
        building_number,
        None,
        start,
        end,
        owner_id,
        BookingMeta(owner_name=owner_name, **meta),
    )


async def stored_occupancy(engine, room_number, building_number):
    async with engine.transaction() as repo:
        room = await repo.get_room(room_number, building_number)
        return room.occupancy


# ---------- Create / conflicts ----------


async def test_room_101_morning_scenario(engine, clock, notifier):
    first = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), subject="Physics")
    assert first.status == BookingStatus.CONFIRMED
    assert first.date == date(2025, 9, 10)

    with pytest.raises(ConflictError) as exc_info:
        await book(engine, "101", ist(2025, 9, 10, 9, 30), ist(2025, 9, 10, 10, 30), owner_id="u2", owner_name="Ravi")
    conflict = exc_info.value
    assert conflict.blocking.id == first.id
    assert conflict.owner_name == "Asha"
    assert "Room 101 (Building 1)" in conflict.detail
    assert "09:00 to 10:00" in conflict.detail

    # Touching windows share an endpoint but do not overlap.
    follow_up = await book(engine, "101", ist(2025, 9, 10, 10), ist(2025, 9, 10, 11), owner_id="u2", owner_name="Ravi")
    assert follow_up.status == BookingStatus.CONFIRMED

    assert notifier.kinds() == [NotificationKind.BOOKING_CREATED, NotificationKind.BOOKING_CREATED]
    assert all(recipients == (EVERYONE,) for _, recipients, _ in notifier.events)
    assert await engine.project_status("101", 1) == RoomStatus.AVAILABLE

    clock.set(ist(2025, 9, 10, 9, 0))
    report = await engine.tick()
    assert report.started == [first.id]
    assert await engine.project_status("101", 1) == RoomStatus.BOOKED
    kind, recipients, payload = notifier.events[-1]
    assert kind == NotificationKind.BOOKING_STARTED
    assert recipients == ("u1",)
    assert payload["status"] == "ongoing"

    # Ongoing bookings finish once their end is strictly in the past.
    clock.set(ist(2025, 9, 10, 10, 0, 5))
    report = await engine.tick()
    assert report.finished == [first.id]
    assert report.started == [follow_up.id]
    assert await engine.project_status("101", 1) == RoomStatus.BOOKED

    clock.set(ist(2025, 9, 10, 11, 0, 5))
    report = await engine.tick()
    assert report.finished == [follow_up.id]
    assert await engine.project_status("101", 1) == RoomStatus.AVAILABLE


async def test_contained_and_enclosing_windows_conflict(engine):
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 12))
    with pytest.raises(ConflictError):
        await book(engine, "101", ist(2025, 9, 10, 10), ist(2025, 9, 10, 11), owner_id="u2")
    with pytest.raises(ConflictError):
        await book(engine, "101", ist(2025, 9, 10, 8), ist(2025, 9, 10, 13), owner_id="u2")


async def test_same_window_in_another_room_is_free(engine):
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    other = await book(engine, "102", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), owner_id="u2")
    assert other.room_number == "102"


async def test_conflict_names_the_earliest_blocking_booking(engine):
    early = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    await book(engine, "101", ist(2025, 9, 10, 10), ist(2025, 9, 10, 11), owner_id="u2", owner_name="Ravi")
    with pytest.raises(ConflictError) as exc_info:
        await book(engine, "101", ist(2025, 9, 10, 9, 30), ist(2025, 9, 10, 10, 30), owner_id="u3")
    assert exc_info.value.blocking.id == early.id


async def test_detector_picks_blocking_row_from_candidates(engine):
    early = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    late = await book(engine, "101", ist(2025, 9, 10, 10, 30), ist(2025, 9, 10, 11), owner_id="u2")

    async with engine.transaction() as repo:
        rows = await repo.conflict_candidates("101", 1, ist(2025, 9, 10, 10, 30))
        assert [b.id for b in rows] == [early.id]

        detector = ConflictDetector(repo)
        gap = Interval(ist(2025, 9, 10, 10), ist(2025, 9, 10, 10, 30))
        assert await detector.find_conflict("101", 1, None, gap) is None

        wide = Interval(ist(2025, 9, 10, 9, 30), ist(2025, 9, 10, 10, 45))
        assert (await detector.find_conflict("101", 1, None, wide)).id == early.id
        assert (await detector.find_conflict("101", 1, None, wide, exclude_booking_id=early.id)).id == late.id


async def test_concurrent_creates_for_one_window_yield_single_booking(engine, notifier):
    start, end = ist(2025, 9, 10, 14), ist(2025, 9, 10, 15)
    results = await asyncio.gather(
        *[
            engine.create_booking("101", 1, None, start, end, f"u{i}", BookingMeta(owner_name=f"User {i}"))
            for i in range(8)
        ],
        return_exceptions=True,
    )
    created = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 7
    assert all(c.blocking.id == created[0].id for c in conflicts)
    assert notifier.kinds() == [NotificationKind.BOOKING_CREATED]


async def test_create_rejects_bad_input(engine):
    with pytest.raises(ValidationError):
        await book(engine, "101", ist(2025, 9, 10, 10), ist(2025, 9, 10, 10))
    with pytest.raises(ValidationError):
        await book(engine, "101", ist(2025, 9, 10, 11), ist(2025, 9, 10, 10))
    with pytest.raises(ValidationError, match="not found"):
        await book(engine, "999", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    with pytest.raises(ValidationError, match="holds 10"):
        await book(engine, "103", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), number_of_students=25)


async def test_booking_already_covering_now_marks_room_booked(engine, broadcaster):
    booking = await book(engine, "101", ist(2025, 9, 10, 7, 30), ist(2025, 9, 10, 9))
    # Promotion to ongoing is the sweeper's job.
    assert booking.status == BookingStatus.CONFIRMED
    assert await stored_occupancy(engine, "101", 1) == RoomStatus.BOOKED
    assert ("101", 1, "Booked") in broadcaster.room_events


# ---------- Cancel / delete ----------


async def test_cancel_frees_the_window(engine, notifier):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    cancelled = await engine.cancel_booking(booking.id, "u1")
    assert cancelled.status == BookingStatus.CANCELLED
    assert notifier.kinds()[-1] == NotificationKind.BOOKING_CANCELLED

    again = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), owner_id="u2")
    assert again.status == BookingStatus.CONFIRMED


async def test_cancel_is_not_repeatable(engine):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    await engine.cancel_booking(booking.id, "u1")
    with pytest.raises(IllegalTransitionError):
        await engine.cancel_booking(booking.id, "u1")


async def test_cancel_requires_ownership(engine):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    with pytest.raises(NotFoundError):
        await engine.cancel_booking(booking.id, "someone-else")
    with pytest.raises(NotFoundError):
        await engine.cancel_booking(booking.id + 100, "u1")


async def test_cancel_ongoing_booking_frees_room(engine, clock, broadcaster):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 15))
    await engine.tick()
    assert await engine.project_status("101", 1) == RoomStatus.BOOKED

    await engine.cancel_booking(booking.id, "u1")
    assert await engine.project_status("101", 1) == RoomStatus.AVAILABLE
    assert await stored_occupancy(engine, "101", 1) == RoomStatus.AVAILABLE
    assert broadcaster.room_events[-1] == ("101", 1, "Available")


async def test_finished_booking_cannot_be_cancelled(engine, clock):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 30))
    await engine.tick()
    clock.set(ist(2025, 9, 10, 10, 30))
    await engine.tick()
    with pytest.raises(IllegalTransitionError):
        await engine.cancel_booking(booking.id, "u1")


async def test_delete_confirmed_booking(engine, notifier):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    await engine.delete_booking(booking.id, "u1")
    assert await engine.list_bookings("u1") == []
    kind, _, payload = notifier.events[-1]
    assert kind == NotificationKind.BOOKING_DELETED
    assert payload["deleted"] is True


async def test_delete_ongoing_booking_is_rejected(engine, clock):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 5))
    await engine.tick()
    with pytest.raises(ValidationError, match="cancel it instead"):
        await engine.delete_booking(booking.id, "u1")
    with pytest.raises(NotFoundError):
        await engine.delete_booking(booking.id, "u2")


# ---------- Swap ----------


async def test_swap_moves_booking_to_destination(engine, notifier):
    source = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), subject="Chemistry")
    replacement = await engine.swap_booking(source.id, "102", 1, "u1")

    assert replacement.room_number == "102"
    assert replacement.status == BookingStatus.CONFIRMED
    assert replacement.swapped_from_id == source.id
    assert replacement.subject == "Chemistry"
    assert (replacement.start_time, replacement.end_time) == (source.start_time, source.end_time)

    statuses = {b.id: b.status for b in await engine.list_bookings("u1")}
    assert statuses == {source.id: BookingStatus.SWAPPED, replacement.id: BookingStatus.CONFIRMED}

    kind, _, payload = notifier.events[-1]
    assert kind == NotificationKind.BOOKING_SWAPPED
    assert payload["from_room_number"] == "101"

    # The source room is free again for the same window.
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), owner_id="u2")


async def test_swap_to_same_room_is_rejected(engine):
    source = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    with pytest.raises(ValidationError, match="same room"):
        await engine.swap_booking(source.id, "101", 1, "u1")


async def test_swap_into_taken_room_leaves_source_untouched(engine):
    source = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    await book(engine, "102", ist(2025, 9, 10, 9, 30), ist(2025, 9, 10, 11), owner_id="u2", owner_name="Ravi")

    with pytest.raises(ConflictError) as exc_info:
        await engine.swap_booking(source.id, "102", 1, "u1")
    assert exc_info.value.owner_name == "Ravi"

    [mine] = await engine.list_bookings("u1")
    assert mine.id == source.id
    assert mine.status == BookingStatus.CONFIRMED


async def test_swap_checks_destination_capacity(engine):
    source = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), number_of_students=30)
    with pytest.raises(ValidationError):
        await engine.swap_booking(source.id, "103", 1, "u1")


async def test_swap_during_window_carries_occupancy_over(engine, clock, notifier):
    source = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 0))
    await engine.tick()

    clock.set(ist(2025, 9, 10, 9, 20))
    replacement = await engine.swap_booking(source.id, "201", 2, "u1")
    assert replacement.status == BookingStatus.ONGOING
    assert await engine.project_status("101", 1) == RoomStatus.AVAILABLE
    assert await engine.project_status("201", 2) == RoomStatus.BOOKED

    started_before = notifier.kinds().count(NotificationKind.BOOKING_STARTED)
    clock.set(ist(2025, 9, 10, 9, 30))
    report = await engine.tick()
    assert report.started == []
    assert notifier.kinds().count(NotificationKind.BOOKING_STARTED) == started_before

    clock.set(ist(2025, 9, 10, 10, 0, 5))
    report = await engine.tick()
    assert report.finished == [replacement.id]


async def test_opposite_swaps_both_go_through(engine):
    first = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    second = await book(engine, "102", ist(2025, 9, 10, 11), ist(2025, 9, 10, 12), owner_id="u2")

    moved = await asyncio.gather(
        engine.swap_booking(first.id, "102", 1, "u1"),
        engine.swap_booking(second.id, "101", 1, "u2"),
    )
    assert [b.room_number for b in moved] == ["102", "101"]


async def test_writers_lock_room_rows_in_key_order_before_bookings(engine, monkeypatch):
    first = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    second = await book(engine, "102", ist(2025, 9, 10, 11), ist(2025, 9, 10, 12), owner_id="u2")

    locked = []
    get_room, get_booking = BookingRepository.get_room, BookingRepository.get_booking

    async def recording_get_room(self, room_number, building_number, for_update=False):
        if for_update:
            locked.append(("room", building_number, room_number))
        return await get_room(self, room_number, building_number, for_update)

    async def recording_get_booking(self, booking_id, owner_id=None, for_update=False):
        if for_update:
            locked.append(("booking", booking_id))
        return await get_booking(self, booking_id, owner_id, for_update)

    monkeypatch.setattr(BookingRepository, "get_room", recording_get_room)
    monkeypatch.setattr(BookingRepository, "get_booking", recording_get_booking)

    await engine.swap_booking(second.id, "101", 1, "u2")
    assert locked == [("room", 1, "101"), ("room", 1, "102"), ("booking", second.id)]

    locked.clear()
    replacement = await engine.swap_booking(first.id, "102", 1, "u1")
    assert locked == [("room", 1, "101"), ("room", 1, "102"), ("booking", first.id)]

    locked.clear()
    await engine.cancel_booking(replacement.id, "u1")
    assert locked == [("room", 1, "102"), ("booking", replacement.id)]


# ---------- Sweeper ----------


async def test_tick_is_idempotent(engine, clock, notifier, broadcaster):
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 10))

    first = await engine.tick()
    events_after_first = len(notifier.events)
    room_events_after_first = len(broadcaster.room_events)

    second = await engine.tick()
    assert first.changed
    assert not second.changed
    assert len(notifier.events) == events_after_first
    assert len(broadcaster.room_events) == room_events_after_first


async def test_stale_confirmation_is_finished_with_single_notice(engine, clock, notifier):
    booking = await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    # The service was down for the whole window.
    clock.set(ist(2025, 9, 10, 11, 0))
    report = await engine.tick()

    assert report.expired == [booking.id]
    assert report.started == []
    [mine] = await engine.list_bookings("u1")
    assert mine.status == BookingStatus.FINISHED
    assert notifier.kinds() == [NotificationKind.BOOKING_CREATED, NotificationKind.BOOKING_ENDED]


async def test_malformed_row_is_skipped(engine, clock, session_factory):
    good = await book(engine, "101", ist(2025, 9, 10, 6), ist(2025, 9, 10, 7))
    async with session_factory() as db:
        broken = Booking(
            owner_id="u9",
            room_number="102",
            building_number=1,
            date=date(2025, 9, 10),
            start_time=ist(2025, 9, 10, 7),
            end_time=ist(2025, 9, 10, 6),
            status=BookingStatus.CONFIRMED,
        )
        db.add(broken)
        await db.commit()
        broken_id = broken.id

    report = await engine.tick()
    assert report.expired == [good.id]
    assert report.failures == 1
    async with engine.transaction() as repo:
        assert (await repo.get_booking(broken_id)).status == BookingStatus.CONFIRMED


async def test_tick_corrects_occupancy_drift(engine, session_factory, broadcaster):
    async with session_factory() as db:
        room = (await db.execute(select(Room).where(Room.room_number == "201"))).scalar_one()
        room.occupancy = RoomStatus.BOOKED
        await db.commit()

    report = await engine.tick()
    assert report.rooms_corrected == [RoomKey(2, "201")]
    assert ("201", 2, "Available") in broadcaster.room_events
    assert await stored_occupancy(engine, "201", 2) == RoomStatus.AVAILABLE


# ---------- Maintenance / occupancy ----------


async def test_maintenance_overrides_bookings(engine, clock):
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    clock.set(ist(2025, 9, 10, 9, 0))
    await engine.tick()

    assert await engine.set_room_maintenance("101", 1, True) == RoomStatus.MAINTENANCE
    assert await engine.project_status("101", 1) == RoomStatus.MAINTENANCE

    clock.set(ist(2025, 9, 10, 9, 30))
    report = await engine.tick()
    assert report.rooms_corrected == []
    assert await engine.project_status("101", 1) == RoomStatus.MAINTENANCE

    assert await engine.set_room_maintenance("101", 1, False) == RoomStatus.BOOKED


class GatedCache(InMemoryRoomStatusCache):
    """Holds every cache fill until the test opens the gate."""

    def __init__(self):
        super().__init__(ttl_seconds=15)
        self.filling = asyncio.Event()
        self.gate = asyncio.Event()

    async def set_room_status(self, room_number, building_number, status):
        self.filling.set()
        await self.gate.wait()
        await super().set_room_status(room_number, building_number, status)


async def test_slow_cache_fill_does_not_outlive_a_new_booking(session_factory, clock, notifier, broadcaster):
    cache = GatedCache()
    engine = BookingEngine(
        session_factory,
        clock=clock,
        cache=cache,
        notifier=notifier,
        broadcaster=broadcaster,
        timezone="Asia/Kolkata",
    )
    clock.set(ist(2025, 9, 10, 9, 30))

    read = asyncio.create_task(engine.project_status("101", 1))
    await cache.filling.wait()
    create = asyncio.create_task(book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10)))
    done, _ = await asyncio.wait({create}, timeout=0.2)
    # The create waits for the room until the stale fill has landed.
    assert not done

    cache.gate.set()
    assert await read == RoomStatus.AVAILABLE
    await create
    assert await engine.project_status("101", 1) == RoomStatus.BOOKED


async def test_project_status_unknown_room(engine):
    with pytest.raises(ValidationError):
        await engine.project_status("999", 9)


async def test_available_rooms_skip_booked_and_maintenance(engine):
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10))
    await engine.set_room_maintenance("103", 1, True)

    free = await engine.available_rooms(None, ist(2025, 9, 10, 9, 30), ist(2025, 9, 10, 10, 30), building_number=1)
    assert [room.room_number for room in free] == ["102"]

    everywhere = await engine.available_rooms(None, ist(2025, 9, 10, 10), ist(2025, 9, 10, 11))
    assert [(r.building_number, r.room_number) for r in everywhere] == [(1, "101"), (1, "102"), (2, "201")]


async def test_active_bookings_in_building(engine, clock):
    now_booking = await book(engine, "101", ist(2025, 9, 10, 7, 30), ist(2025, 9, 10, 9))
    await book(engine, "102", ist(2025, 9, 10, 12), ist(2025, 9, 10, 13))
    await book(engine, "201", ist(2025, 9, 10, 7), ist(2025, 9, 10, 9), building_number=2)

    active = await engine.active_bookings(1)
    assert [b.id for b in active] == [now_booking.id]


# ---------- Bulk ----------


async def test_bulk_schedule_skips_colliding_dates(engine, clock, notifier):
    clock.set(ist(2025, 8, 31, 8, 0))
    await book(engine, "101", ist(2025, 9, 10, 9), ist(2025, 9, 10, 10), owner_id="u2", owner_name="Ravi")
    await book(engine, "101", ist(2025, 9, 22, 9, 30), ist(2025, 9, 22, 10, 30), owner_id="u2", owner_name="Ravi")

    rule = RecurrenceRule(
        room_number="101",
        building_number=1,
        start_date=date(2025, 9, 1),
        duration_months=1,
        weekdays=frozenset({1, 3}),
        start_time=time(9, 0),
        end_time=time(10, 0),
        subject="Algebra",
        owner_id="admin-1",
        owner_name="Admin",
    )
    result = await engine.expand_bulk_schedule(rule)

    assert result.created_count == 8
    assert [day for day, _ in result.skipped] == [date(2025, 9, 10), date(2025, 9, 22)]
    assert all("Ravi" in reason for _, reason in result.skipped)
    assert all(b.notes == BULK_NOTES for b in result.created)
    assert result.created[-1].date == date(2025, 10, 1)
    assert notifier.kinds().count(NotificationKind.BOOKING_CREATED) == 10


async def test_bulk_rule_validation():
    with pytest.raises(ValidationError):
        RecurrenceRule(
            room_number="101",
            building_number=1,
            start_date=date(2025, 9, 1),
            duration_months=1,
            weekdays=frozenset({0}),
            start_time=time(9, 0),
            end_time=time(10, 0),
            subject="Algebra",
            owner_id="admin-1",
        )


async def test_bulk_schedule_skips_dates_the_datastore_rejects(engine, clock, monkeypatch):
    clock.set(ist(2025, 8, 31, 8, 0))
    create_locked = engine._create_locked

    async def flaky_create(key, day, window, owner_id, meta):
        if day == date(2025, 9, 3):
            raise TransientStoreError("Datastore error: OperationalError")
        return await create_locked(key, day, window, owner_id, meta)

    monkeypatch.setattr(engine, "_create_locked", flaky_create)
    rule = RecurrenceRule(
        room_number="101",
        building_number=1,
        start_date=date(2025, 9, 1),
        duration_months=1,
        weekdays=frozenset({1, 3}),
        start_time=time(9, 0),
        end_time=time(10, 0),
        subject="Algebra",
        owner_id="admin-1",
        owner_name="Admin",
    )
    result = await engine.expand_bulk_schedule(rule)

    assert result.created_count == 9
    assert result.skipped == [(date(2025, 9, 3), "Datastore error: OperationalError")]
    assert date(2025, 9, 10) in [b.date for b in result.created]
