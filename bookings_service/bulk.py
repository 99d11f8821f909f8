from dataclasses import dataclass, field
from datetime import date, time, timedelta
from typing import FrozenSet, Iterator, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .errors import ValidationError
from .intervals import Interval, local_window

BULK_NOTES = "Bulk scheduled by admin"


@dataclass(frozen=True)
class RecurrenceRule:
    """
    A weekly recurring schedule for one room.

    ``weekdays`` uses ISO numbering: 1 = Monday ... 7 = Sunday.
    The rule covers ``start_date`` through ``start_date + duration_months``
    inclusive.
    """
    room_number: str
    building_number: int
    start_date: date
    duration_months: int
    weekdays: FrozenSet[int]
    start_time: time
    end_time: time
    subject: str
    owner_id: str
    owner_name: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if self.duration_months < 1:
            raise ValidationError("duration must be at least one month")
        if not self.weekdays:
            raise ValidationError("at least one weekday is required")
        bad = [d for d in self.weekdays if d not in range(1, 8)]
        if bad:
            raise ValidationError(f"weekdays must be 1-7, got {sorted(bad)}")
        if self.end_time <= self.start_time:
            raise ValidationError("end_time must be after start_time")

    @property
    def end_date(self) -> date:
        return self.start_date + relativedelta(months=self.duration_months)


@dataclass
class BulkResult:
    created: List = field(default_factory=list)
    skipped: List[Tuple[date, str]] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


def occurrences(rule: RecurrenceRule, tz_name: str) -> Iterator[Tuple[date, Interval]]:
    """
    Yield ``(date, window)`` for every day the rule lands on, in order.
    """
    day = rule.start_date
    last = rule.end_date
    while day <= last:
        if day.isoweekday() in rule.weekdays:
            yield day, local_window(day, rule.start_time, rule.end_time, tz_name)
        day += timedelta(days=1)
