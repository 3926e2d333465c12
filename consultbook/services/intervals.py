"""Working-hours windows and half-open busy intervals."""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from consultbook.errors import ValidationError
from consultbook.services.timewindow import at_hour, get_zone, to_business_time

WEEKDAY_NAMES = {
    0: "Monday",
    1: "Tuesday",
    2: "Wednesday",
    3: "Thursday",
    4: "Friday",
    5: "Saturday",
    6: "Sunday",
}


def parse_weekdays(raw: str) -> frozenset[int]:
    """Parse a stored weekday list such as ``"0,1,2,3,4"``."""
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ValidationError(f"Malformed working days: {raw!r}") from exc


@dataclass(frozen=True)
class WorkingHours:
    """An agent's bookable window: ``[start_hour, end_hour)`` on each active weekday.

    Weekdays follow ``date.weekday()``: Monday is 0, Sunday is 6.
    """

    start_hour: int
    end_hour: int
    weekdays: frozenset[int]
    timezone: str

    def __post_init__(self) -> None:
        if not (0 <= self.start_hour <= 23 and 1 <= self.end_hour <= 24):
            raise ValidationError(
                f"Working hours out of range: {self.start_hour}-{self.end_hour}"
            )
        if self.start_hour >= self.end_hour:
            raise ValidationError(
                f"Working hours start ({self.start_hour}) must be before end ({self.end_hour})"
            )
        if not set(self.weekdays) <= set(WEEKDAY_NAMES):
            raise ValidationError(f"Weekdays must be within 0..6, got {sorted(self.weekdays)}")
        get_zone(self.timezone)

    def is_active(self, day: date) -> bool:
        return day.weekday() in self.weekdays

    def window(self, day: date) -> tuple[datetime, datetime]:
        """Start and end of the working window on ``day``, in business time."""
        tz = get_zone(self.timezone)
        return (
            to_business_time(at_hour(day, self.start_hour, tz)),
            to_business_time(at_hour(day, self.end_hour, tz)),
        )

    def local_date(self, instant: datetime) -> date:
        return instant.astimezone(get_zone(self.timezone)).date()

    def contains(self, start: datetime, end: datetime) -> bool:
        """True when ``[start, end)`` lies inside one active day's working window."""
        day = self.local_date(start)
        if not self.is_active(day):
            return False
        window_start, window_end = self.window(day)
        return window_start <= start and end <= window_end


@dataclass(frozen=True)
class BusyInterval:
    """An externally known commitment covering ``[start, end)``."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # Strict on both sides so back-to-back ranges sharing an endpoint never clash.
        return start < self.end and end > self.start

    def subtract(self, other: "BusyInterval") -> list["BusyInterval"]:
        """The parts of this interval not covered by ``other``."""
        if not other.overlaps(self.start, self.end):
            return [self]
        pieces = []
        if self.start < other.start:
            pieces.append(BusyInterval(self.start, other.start))
        if other.end < self.end:
            pieces.append(BusyInterval(other.end, self.end))
        return pieces


def slot_conflicts(start: datetime, end: datetime, busy: Iterable[BusyInterval]) -> bool:
    """Single overlap filter shared by slot generation and availability checks."""
    return any(interval.overlaps(start, end) for interval in busy)


def exclude_interval(
    busy: Iterable[BusyInterval], excluded: BusyInterval | None
) -> list[BusyInterval]:
    # freeBusy returns merged intervals, so any other commitment lying wholly inside
    # ``excluded`` is indistinguishable from it and is removed as well.
    if excluded is None:
        return list(busy)
    remaining: list[BusyInterval] = []
    for interval in busy:
        remaining.extend(interval.subtract(excluded))
    return remaining


@dataclass(frozen=True)
class CandidateSlot:
    start: datetime
    end: datetime
    distance_from_preference: timedelta | None = None
