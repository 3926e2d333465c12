"""Timezone-safe handling of instants in the business timezone.

Every instant that crosses a module boundary is an aware ``datetime`` expressed in
the business timezone. Naive values only ever come from the record store, whose
native clock runs in ``store_timezone`` (checked once at startup).
"""

import logging
from datetime import date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from consultbook.config import settings
from consultbook.errors import ValidationError

logger = logging.getLogger(__name__)


@lru_cache
def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def business_tz() -> ZoneInfo:
    return get_zone(settings.business_timezone)


def store_tz() -> ZoneInfo:
    return get_zone(settings.store_timezone)


def now() -> datetime:
    """Current instant in the business timezone."""
    return datetime.now(business_tz())


def to_business_time(value: datetime | str) -> datetime:
    """Normalize any instant representation into an aware business-time datetime.

    Strings are parsed as ISO 8601. Naive datetimes are taken to be in the record
    store's timezone; when that equals the business timezone no conversion happens.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Unparsable instant: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValidationError(f"Unsupported instant: {value!r}")

    if value.tzinfo is None:
        value = value.replace(tzinfo=store_tz())
    return value.astimezone(business_tz())


def to_store_time(value: datetime) -> datetime:
    """Express an instant in the record store's timezone for persistence."""
    return to_business_time(value).astimezone(store_tz())


def at_hour(day: date, hour: int, tz: ZoneInfo | None = None) -> datetime:
    """Wall-clock ``hour`` on ``day``; hour 24 means midnight at the end of the day."""
    tz = tz or business_tz()
    if hour == 24:
        return datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return datetime.combine(day, time(hour), tzinfo=tz)


def format_for_display(value: datetime | str) -> str:
    """Human-readable business time, e.g. ``Monday, 17 June 2024, 3:00 PM``."""
    dt = to_business_time(value)
    hour = dt.hour % 12 or 12
    meridiem = "AM" if dt.hour < 12 else "PM"
    return f"{dt:%A}, {dt.day} {dt:%B %Y}, {hour}:{dt:%M} {meridiem}"


def format_for_calendar_api(value: datetime | str) -> str:
    """Offset-qualified local time, ``YYYY-MM-DDTHH:mm:ss+HH:MM``."""
    return to_business_time(value).isoformat(timespec="seconds")
