from datetime import datetime
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ACTIVE_STATUSES, Booking, BookingStatus, Room, RoomStatus


class SweepCandidate(NamedTuple):
    booking_id: int
    room_number: str
    building_number: int


def covering_now(now: datetime):
    """SQL predicate for bookings that make a room occupied at ``now``."""
    return or_(
        Booking.status == BookingStatus.ONGOING,
        and_(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.start_time <= now,
            Booking.end_time >= now,
        ),
    )


class BookingRepository:
    """All datastore access for the engine, scoped to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ---------- Rooms ----------

    async def get_room(self, room_number: str, building_number: int, for_update: bool = False) -> Optional[Room]:
        q = select(Room).where(
            Room.room_number == room_number,
            Room.building_number == building_number,
        )
        if for_update:
            q = q.with_for_update()
        return (await self.db.execute(q)).scalar_one_or_none()

    async def list_rooms(self, building_number: Optional[int] = None) -> Sequence[Room]:
        q = select(Room)
        if building_number is not None:
            q = q.where(Room.building_number == building_number)
        q = q.order_by(Room.building_number, Room.room_number)
        return (await self.db.execute(q)).scalars().all()

    # ---------- Conflicts ----------

    async def conflict_candidates(
        self,
        room_number: str,
        building_number: int,
        end_time: datetime,
    ) -> Sequence[Booking]:
        """
        Active bookings in the room that start before ``end_time``.

        Only narrows the rows; ``intervals.first_overlapping`` decides which
        of them actually block.
        """
        q = (
            select(Booking)
            .where(Booking.room_number == room_number)
            .where(Booking.building_number == building_number)
            .where(Booking.status.in_(list(ACTIVE_STATUSES)))
            .where(Booking.start_time < end_time)
            .order_by(Booking.start_time, Booking.id)
        )
        return (await self.db.execute(q)).scalars().all()

    # ---------- Bookings ----------

    async def add_booking(self, booking: Booking) -> Booking:
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def get_booking(
        self,
        booking_id: int,
        owner_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Booking]:
        q = select(Booking).where(Booking.id == booking_id)
        if owner_id is not None:
            q = q.where(Booking.owner_id == owner_id)
        if for_update:
            q = q.with_for_update()
        return (await self.db.execute(q)).scalar_one_or_none()

    async def delete_booking(self, booking: Booking) -> None:
        await self.db.delete(booking)
        await self.db.flush()

    async def compare_and_set_status(
        self,
        booking_id: int,
        expected: BookingStatus,
        target: BookingStatus,
        now: datetime,
    ) -> bool:
        """
        Move one row from ``expected`` to ``target`` atomically.

        Returns False when the row was not in ``expected`` any more, which
        means some other writer already applied a transition.
        """
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected)
            .values(status=target, updated_at=now)
        )
        return result.rowcount == 1

    async def bookings_covering(self, room_number: str, building_number: int, now: datetime) -> Sequence[Booking]:
        q = select(Booking).where(
            Booking.room_number == room_number,
            Booking.building_number == building_number,
            covering_now(now),
        )
        return (await self.db.execute(q)).scalars().all()

    async def bookings_for_owner(self, owner_id: str) -> Sequence[Booking]:
        q = (
            select(Booking)
            .where(Booking.owner_id == owner_id)
            .order_by(Booking.start_time.desc())
        )
        return (await self.db.execute(q)).scalars().all()

    async def active_in_building(self, building_number: int, now: datetime) -> Sequence[Booking]:
        q = (
            select(Booking)
            .where(Booking.building_number == building_number, covering_now(now))
            .order_by(Booking.room_number, Booking.start_time)
        )
        return (await self.db.execute(q)).scalars().all()

    # ---------- Sweeper selections ----------

    async def _sweep_candidates(self, *criteria) -> List[SweepCandidate]:
        q = (
            select(Booking.id, Booking.room_number, Booking.building_number)
            .where(*criteria)
            .order_by(Booking.id)
        )
        return [SweepCandidate(*row) for row in (await self.db.execute(q)).all()]

    async def due_to_start(self, now: datetime) -> List[SweepCandidate]:
        return await self._sweep_candidates(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.start_time <= now,
            Booking.end_time >= now,
        )

    async def due_to_finish(self, now: datetime) -> List[SweepCandidate]:
        return await self._sweep_candidates(
            Booking.status == BookingStatus.ONGOING,
            Booking.end_time < now,
        )

    async def stale_confirmations(self, now: datetime) -> List[SweepCandidate]:
        return await self._sweep_candidates(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.end_time < now,
        )

    # ---------- Occupancy ----------

    async def set_occupancy(self, room: Room, status: RoomStatus) -> None:
        room.occupancy = status
        await self.db.flush()

