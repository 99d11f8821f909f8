from datetime import datetime
from typing import Iterable, Tuple

from .models import BookingStatus, Room, RoomStatus
from .repository import BookingRepository


def project_status(admin_status: RoomStatus, bookings: Iterable, now: datetime) -> RoomStatus:
    """
    Derive a room's display status.

    Parameters
    ----------
    admin_status : RoomStatus
        Operator flag. MAINTENANCE overrides everything.
    bookings : iterable of Booking
        Bookings for the room; any status, filtering happens here.
    now : datetime
        Current time.

    Returns
    -------
    RoomStatus
        MAINTENANCE, BOOKED if an ongoing booking exists or a confirmed
        booking's window covers ``now`` (inclusive), else AVAILABLE.
    """
    if admin_status == RoomStatus.MAINTENANCE:
        return RoomStatus.MAINTENANCE
    for booking in bookings:
        if booking.status == BookingStatus.ONGOING:
            return RoomStatus.BOOKED
        if booking.status == BookingStatus.CONFIRMED and booking.start_time <= now <= booking.end_time:
            return RoomStatus.BOOKED
    return RoomStatus.AVAILABLE


async def reproject(repo: BookingRepository, room: Room, now: datetime) -> Tuple[RoomStatus, RoomStatus]:
    """
    Recompute a room's occupancy from its bookings and persist it if it moved.

    Returns
    -------
    tuple
        ``(previous, current)``; callers broadcast only when they differ.
    """
    previous = room.occupancy
    bookings = await repo.bookings_covering(room.room_number, room.building_number, now)
    current = project_status(room.admin_status, bookings, now)
    if current != previous:
        await repo.set_occupancy(room, current)
    return previous, current
