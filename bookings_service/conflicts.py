from datetime import date as date_type
from typing import Optional

from .errors import ConflictError
from .intervals import Interval, first_overlapping
from .repository import BookingRepository


class ConflictDetector:
    """
    Decides whether a candidate window is free for a room.

    The calendar ``date`` is accepted for reporting only: overlap is judged
    on the timestamps, so windows that cross midnight are still caught.
    Callers must hold the room's lock for the whole detect-then-create.
    """

    def __init__(self, repo: BookingRepository):
        self.repo = repo

    async def find_conflict(
        self,
        room_number: str,
        building_number: int,
        date: Optional[date_type],
        window: Interval,
        exclude_booking_id: Optional[int] = None,
    ):
        rows = await self.repo.conflict_candidates(room_number, building_number, window.end)
        return first_overlapping(window, rows, exclude_booking_id)

    async def ensure_free(
        self,
        room_number: str,
        building_number: int,
        date: Optional[date_type],
        window: Interval,
        exclude_booking_id: Optional[int] = None,
    ) -> None:
        """
        Raise ConflictError naming the blocking owner if the window is taken.
        """
        blocking = await self.find_conflict(
            room_number, building_number, date, window, exclude_booking_id
        )
        if blocking is not None:
            raise ConflictError(blocking)
