from datetime import date as date_type, datetime, time
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from .models import BookingStatus, RoomStatus


class RoomSlot(BaseModel):
    """
    Base schema for a room and a wall-clock window on one date.

    Times are local to the service's booking timezone, the way the booking
    form sends them ("09:00").
    """
    room_number: str = Field(..., min_length=1, max_length=20)
    building_number: int = Field(..., ge=1)
    date: date_type
    start_time: time
    end_time: time


class BookingCreate(RoomSlot):
    """
    Schema for creating a new booking.

    Descriptive fields are captured once and never edited afterwards.
    """
    subject: Optional[str] = Field(default=None, max_length=255)
    number_of_students: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class BookingRead(BaseModel):
    """
    Schema returned when reading booking information.
    """
    id: int
    owner_id: str
    owner_name: Optional[str] = None
    room_number: str
    building_number: int
    date: date_type
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    subject: Optional[str] = None
    number_of_students: Optional[int] = None
    notes: Optional[str] = None
    swapped_from_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SwapRequest(BaseModel):
    """Destination room for moving a booking over the same window."""
    room_number: str = Field(..., min_length=1, max_length=20)
    building_number: int = Field(..., ge=1)
    subject: Optional[str] = Field(default=None, max_length=255)
    number_of_students: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class BulkScheduleCreate(BaseModel):
    """
    Schema for an admin's weekly recurring schedule.

    ``weekdays`` uses 1 = Monday ... 7 = Sunday.
    """
    room_number: str = Field(..., min_length=1, max_length=20)
    building_number: int = Field(..., ge=1)
    start_date: date_type
    duration_months: int = Field(..., ge=1, le=24)
    weekdays: List[int] = Field(..., min_length=1)
    start_time: time
    end_time: time
    subject: str = Field(..., min_length=1, max_length=255)
    notes: Optional[str] = None

    @field_validator("weekdays")
    @classmethod
    def weekdays_in_range(cls, value: List[int]) -> List[int]:
        if any(day < 1 or day > 7 for day in value):
            raise ValueError("weekdays must be between 1 and 7")
        return value


class SkippedOccurrence(BaseModel):
    date: date_type
    reason: str


class BulkScheduleResult(BaseModel):
    count: int
    created: List[BookingRead]
    skipped: List[SkippedOccurrence]


class RoomRead(BaseModel):
    room_number: str
    building_number: int
    capacity: int
    admin_status: RoomStatus
    occupancy: RoomStatus

    model_config = ConfigDict(from_attributes=True)


class RoomStatusRead(BaseModel):
    room_number: str
    building_number: int
    status: RoomStatus


class MaintenanceUpdate(BaseModel):
    maintenance: bool


class SweepReportRead(BaseModel):
    started: List[int]
    finished: List[int]
    expired: List[int]
    rooms_corrected: List[str]
    failures: int
