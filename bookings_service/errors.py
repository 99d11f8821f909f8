from typing import Optional
from zoneinfo import ZoneInfo

from .config import BOOKING_TIMEZONE


class BookingEngineError(Exception):
    """Base class for errors raised by the booking engine."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ConflictError(BookingEngineError):
    """
    The requested window overlaps an active booking for the same room.

    Attributes
    ----------
    blocking : Booking
        The booking that holds the room.
    owner_name : str
        Display name of the blocking booking's owner.
    """

    status_code = 409

    def __init__(self, blocking, detail: Optional[str] = None):
        self.blocking = blocking
        self.owner_name = blocking.owner_name or "another user"
        if detail is None:
            tz = ZoneInfo(BOOKING_TIMEZONE)
            detail = (
                f"Room {blocking.room_number} (Building {blocking.building_number}) "
                f"is already booked by {self.owner_name} from "
                f"{blocking.start_time.astimezone(tz):%H:%M} to {blocking.end_time.astimezone(tz):%H:%M}"
            )
        super().__init__(detail)


class ValidationError(BookingEngineError):
    """Malformed input: bad times, unknown room, illegal transition, etc."""

    status_code = 400


class IllegalTransitionError(ValidationError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move a {current.value} booking to {target.value}")


class NotFoundError(BookingEngineError):
    """The booking does not exist or is not owned by the caller."""

    status_code = 404


class TransientStoreError(BookingEngineError):
    """Datastore I/O failed; the operation may be retried."""

    status_code = 503
