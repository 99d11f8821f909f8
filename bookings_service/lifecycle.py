"""
Booking lifecycle state machine.

Normal path::

    confirmed --(start reached)--> ongoing --(end passed)--> finished

Explicit actions take ``confirmed`` or ``ongoing`` to ``cancelled`` or
``swapped``. ``finished``, ``cancelled`` and ``swapped`` are absorbing.

Everything here is pure: callers pass in the current status and time and
get back a decision. Persistence and side effects live in ``engine``.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .errors import IllegalTransitionError
from .models import BookingStatus
from .notifications import NotificationKind

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.ONGOING, BookingStatus.CANCELLED, BookingStatus.SWAPPED}
    ),
    BookingStatus.ONGOING: frozenset(
        {BookingStatus.FINISHED, BookingStatus.CANCELLED, BookingStatus.SWAPPED}
    ),
    BookingStatus.FINISHED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.SWAPPED: frozenset(),
}

# Notification emitted when a booking enters the given status.
TRANSITION_NOTIFICATIONS: Dict[BookingStatus, NotificationKind] = {
    BookingStatus.ONGOING: NotificationKind.BOOKING_STARTED,
    BookingStatus.FINISHED: NotificationKind.BOOKING_ENDED,
    BookingStatus.CANCELLED: NotificationKind.BOOKING_CANCELLED,
    BookingStatus.SWAPPED: NotificationKind.BOOKING_SWAPPED,
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    """
    Raise IllegalTransitionError unless ``current -> target`` is in the table.
    """
    if not can_transition(current, target):
        raise IllegalTransitionError(current, target)


def initial_status(start: datetime, end: datetime, now: datetime, carry_over: bool = False) -> BookingStatus:
    """
    Status a new booking is created in.

    Ordinary bookings always start ``confirmed`` and are promoted by the
    sweeper. A booking created to carry over a swap starts ``ongoing`` when
    its window already covers ``now``, so the room hand-over does not fire a
    second "booking started".
    """
    if carry_over and start <= now <= end:
        return BookingStatus.ONGOING
    return BookingStatus.CONFIRMED


def due_transition(status: BookingStatus, start: datetime, end: datetime, now: datetime) -> Optional[BookingStatus]:
    """
    The clock-driven transition a booking is due for at ``now``, if any.

    Returns
    -------
    BookingStatus or None
        ``ongoing`` for a confirmed booking whose window covers now,
        ``finished`` for an ongoing booking whose end has passed, None
        otherwise (including every terminal status).
    """
    if status == BookingStatus.CONFIRMED and start <= now <= end:
        return BookingStatus.ONGOING
    if status == BookingStatus.ONGOING and end < now:
        return BookingStatus.FINISHED
    return None


def is_stale_confirmation(status: BookingStatus, end: datetime, now: datetime) -> bool:
    """A confirmed booking whose whole window passed without being started."""
    return status == BookingStatus.CONFIRMED and end < now
