from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, NamedTuple, Optional
from zoneinfo import ZoneInfo

from .errors import ValidationError
from .models import ACTIVE_STATUSES


class RoomKey(NamedTuple):
    """Composite identity of a room: (building, room)."""
    building_number: int
    room_number: str

    def __str__(self) -> str:
        return f"{self.building_number}-{self.room_number}"


@dataclass(frozen=True)
class Interval:
    """
    Half-open time window ``[start, end)``.

    Both endpoints must be timezone-aware and ``end`` strictly after ``start``.
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        ensure_aware(self.start, "start")
        ensure_aware(self.end, "end")
        if self.end <= self.start:
            raise ValidationError("end_time must be after start_time")


def overlaps(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    # Touching endpoints (e1 == s2) are not a conflict.
    return s1 < e2 and s2 < e1


def ensure_aware(value: datetime, field: str = "time") -> datetime:
    if not isinstance(value, datetime):
        raise ValidationError(f"{field} must be a datetime")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field} must be timezone-aware")
    return value


def local_window(day: date, start: time, end: time, tz_name: str) -> Interval:
    """
    Combine a calendar date and two wall-clock times into an Interval.

    Parameters
    ----------
    day : date
        The booking date.
    start, end : time
        Wall-clock times in ``tz_name``.
    tz_name : str
        IANA zone name, e.g. 'Asia/Kolkata'.

    Raises
    ------
    ValidationError
        If the zone is unknown or end is not after start.
    """
    try:
        tz = ZoneInfo(tz_name)
    except (KeyError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone {tz_name!r}") from exc
    return Interval(
        datetime.combine(day, start, tzinfo=tz),
        datetime.combine(day, end, tzinfo=tz),
    )


def first_overlapping(
    candidate: Interval,
    bookings: Iterable,
    exclude_booking_id: Optional[int] = None,
):
    """
    Return the earliest active booking overlapping ``candidate``, or None.

    Decides conflicts for ``ConflictDetector``: only ``confirmed`` and
    ``ongoing`` bookings block, ties go to the lowest start then lowest id.
    """
    blocking = [
        b
        for b in bookings
        if b.status in ACTIVE_STATUSES
        and b.id != exclude_booking_id
        and overlaps(b.start_time, b.end_time, candidate.start, candidate.end)
    ]
    if not blocking:
        return None
    return min(blocking, key=lambda b: (b.start_time, b.id))
