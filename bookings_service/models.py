from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base, UTCDateTime, utcnow


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    confirmed
        Booking holds the room for a window that has not started yet.
    ongoing
        The booking window covers the current time.
    finished
        The window has passed. Historical.
    cancelled
        Cancelled by its owner. Historical.
    swapped
        Replaced by a booking for another room over the same window. Historical.
    """
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    SWAPPED = "swapped"


# Statuses that hold a room and therefore participate in conflict checks.
ACTIVE_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.ONGOING})


class RoomStatus(str, PyEnum):
    """Display status of a room. Only AVAILABLE and MAINTENANCE are administrative."""
    AVAILABLE = "Available"
    BOOKED = "Booked"
    MAINTENANCE = "Maintenance"


class Room(Base):
    """
    SQLAlchemy model representing a bookable room.

    Attributes
    ----------
    id : int
        Primary key.
    room_number : str
        Room label within its building (e.g. '101').
    building_number : int
        Building the room belongs to.
    capacity : int
        Maximum number of occupants.
    admin_status : RoomStatus
        Operator-set flag, AVAILABLE or MAINTENANCE.
    occupancy : RoomStatus
        Last projected display status, written only by re-derivation.
    """
    __tablename__ = "rooms"
    __table_args__ = (
        UniqueConstraint("room_number", "building_number", name="uq_room_building"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_number = Column(String(20), nullable=False)
    building_number = Column(Integer, nullable=False, index=True)
    capacity = Column(Integer, nullable=False, default=0)
    admin_status = Column(Enum(RoomStatus), nullable=False, default=RoomStatus.AVAILABLE)
    occupancy = Column(Enum(RoomStatus), nullable=False, default=RoomStatus.AVAILABLE)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Booking(Base):
    """
    SQLAlchemy model representing a room booking.

    Attributes
    ----------
    id : int
        Primary key.
    owner_id : str
        Opaque reference to the user who owns the booking.
    owner_name : str
        Display name of the owner, used in conflict messages.
    room_number, building_number : str, int
        Composite room identity.
    date : date
        Calendar date the booking was requested for.
    start_time, end_time : datetime
        Timezone-aware window, half-open ``[start_time, end_time)``.
    status : BookingStatus
        Current lifecycle state.
    subject, number_of_students, notes
        Immutable metadata captured at creation.
    swapped_from_id : int
        For bookings created by a swap, the booking they replaced.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_room_status", "room_number", "building_number", "status"),
        Index("ix_bookings_status_times", "status", "start_time", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(64), index=True, nullable=False)
    owner_name = Column(String(120), nullable=True)
    room_number = Column(String(20), nullable=False)
    building_number = Column(Integer, nullable=False)
    date = Column(Date, nullable=False, index=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.CONFIRMED)
    subject = Column(String(255), nullable=True)
    number_of_students = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    swapped_from_id = Column(Integer, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, room={self.building_number}-{self.room_number}, "
            f"status={self.status})>"
        )


class Notification(Base):
    """
    Persisted notification feed entry.

    ``recipient`` is an owner id, or ``"*"`` for an entry every user sees.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient = Column(String(64), index=True, nullable=False)
    kind = Column(String(40), nullable=False)
    title = Column(String(120), nullable=False)
    message = Column(Text, nullable=False)
    booking_id = Column(Integer, nullable=True)
    urgent = Column(Boolean, default=False)
    is_read = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, default=utcnow)
