import logging
from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Dict, Iterable, Tuple
from zoneinfo import ZoneInfo

from .config import BOOKING_TIMEZONE
from .models import Notification

logger = logging.getLogger(__name__)

# Recipient meaning "every user's feed".
EVERYONE = "*"


class NotificationKind(str, PyEnum):
    BOOKING_CREATED = "booking-created"
    BOOKING_CANCELLED = "booking-cancelled"
    BOOKING_SWAPPED = "booking-swapped"
    BOOKING_STARTED = "booking-started"
    BOOKING_ENDED = "booking-ended"
    BOOKING_DELETED = "booking-deleted"


# Reminders go to the owner and are flagged urgent.
URGENT_KINDS = frozenset({NotificationKind.BOOKING_STARTED, NotificationKind.BOOKING_ENDED})


def booking_payload(booking, **extra) -> Dict[str, Any]:
    payload = {
        "booking_id": booking.id,
        "owner_id": booking.owner_id,
        "owner_name": booking.owner_name,
        "room_number": booking.room_number,
        "building_number": booking.building_number,
        "date": booking.date.isoformat() if booking.date else None,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "status": booking.status.value,
    }
    payload.update(extra)
    return payload


def _hhmm(iso_value: str) -> str:
    return datetime.fromisoformat(iso_value).astimezone(ZoneInfo(BOOKING_TIMEZONE)).strftime("%H:%M")


def render(kind: NotificationKind, payload: Dict[str, Any]) -> Tuple[str, str]:
    """
    Build the (title, message) pair shown in the notification feed.

    Parameters
    ----------
    kind : NotificationKind
        Which event happened.
    payload : dict
        Output of ``booking_payload``; swaps also carry ``from_room_number``
        and ``from_building_number``.

    Returns
    -------
    tuple of str
        Title and message.
    """
    who = payload.get("owner_name") or "Someone"
    room = f"Room {payload['room_number']} (Building {payload['building_number']})"
    window = f"{_hhmm(payload['start_time'])} - {_hhmm(payload['end_time'])}"

    if kind == NotificationKind.BOOKING_CREATED:
        return "New Room Booking", f"{who} booked {room} on {payload['date']} from {window}"
    if kind == NotificationKind.BOOKING_CANCELLED:
        return "Booking Cancelled", f"{who} cancelled booking for {room} {window}"
    if kind == NotificationKind.BOOKING_DELETED:
        return "Booking Deleted", f"{who} deleted booking for {room} {window}"
    if kind == NotificationKind.BOOKING_SWAPPED:
        source = f"{payload.get('from_building_number')}-{payload.get('from_room_number')}"
        return "Room Swap", f"{who} swapped Room {source} with {room} {window}"
    if kind == NotificationKind.BOOKING_STARTED:
        return (
            "Booking Started",
            f"Your booking for {room} has started and will end at {_hhmm(payload['end_time'])}",
        )
    if kind == NotificationKind.BOOKING_ENDED:
        return "Booking Ended", f"Your booking for {room} has ended. Please vacate the room."
    raise ValueError(f"Unknown notification kind {kind!r}")


class NotificationSink:
    """Fire-and-forget notification target."""

    async def notify(self, kind: NotificationKind, recipients: Iterable[str], payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    async def notify(self, kind, recipients, payload):
        title, message = render(kind, payload)
        logger.info("notify %s -> %s: %s", kind.value, ",".join(recipients), message)


class DatabaseNotificationSink(NotificationSink):
    """
    Persist one feed entry per recipient.

    Uses its own session so that a failed insert never touches the
    transaction that produced the booking change.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def notify(self, kind, recipients, payload):
        title, message = render(kind, payload)
        async with self.session_factory() as db:
            for recipient in recipients:
                db.add(
                    Notification(
                        recipient=recipient,
                        kind=kind.value,
                        title=title,
                        message=message,
                        booking_id=payload.get("booking_id"),
                        urgent=kind in URGENT_KINDS,
                    )
                )
            await db.commit()
