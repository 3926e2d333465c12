"""Preferred-time extraction from free-form lead messages.

Only 12-hour times with an explicit am/pm are recognised ("3pm tomorrow",
"tuesday at 2:30pm", "around 11am"). Bare "3" or "15:00" are ignored.
"""

import logging
import re
from datetime import date, datetime, time, timedelta

from consultbook.services.timewindow import business_tz, now as business_now, to_business_time

logger = logging.getLogger(__name__)

_TIME = r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>am|pm)\b"
_RELATIVE_DAY = r"(?P<day>today|tomorrow|tmrw|tmr|yesterday)"
_WEEKDAY = (
    r"(?P<weekday>monday|tuesday|wednesday|thursday|friday|saturday|sunday"
    r"|mon|tues|tue|wed|thurs|thur|thu|fri|sat|sun)"
)
_JOINER = r"\s*(?:at\s+|around\s+|@\s*)?"

_DAY_OFFSETS = {"today": 0, "tomorrow": 1, "tmr": 1, "tmrw": 1, "yesterday": -1}

_WEEKDAYS = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}

# Most specific first, so a bare "3pm" never shadows "3pm tomorrow".
_PATTERNS = [
    re.compile(rf"\b{_RELATIVE_DAY}\b{_JOINER}\b{_TIME}"),
    re.compile(rf"\b{_TIME}\s*{_RELATIVE_DAY}\b"),
    re.compile(rf"\b{_WEEKDAY}\b{_JOINER}\b{_TIME}"),
    re.compile(rf"\b{_TIME}\s*(?:on\s+)?(?:this\s+|next\s+)?{_WEEKDAY}\b"),
    re.compile(rf"\b(?:at|around|by|for|from|after|before)\s+{_TIME}"),
]


def _clock_time(match: re.Match) -> time | None:
    hour = int(match.group("hour"))
    minute = int(match.group("minute") or 0)
    if not 1 <= hour <= 12 or not 0 <= minute <= 59:
        return None
    if match.group("meridiem") == "am":
        hour = 0 if hour == 12 else hour
    else:
        hour = 12 if hour == 12 else hour + 12
    return time(hour, minute)


def _resolve_date(match: re.Match, today: date) -> date:
    groups = match.groupdict()
    if groups.get("day"):
        return today + timedelta(days=_DAY_OFFSETS[groups["day"]])
    if groups.get("weekday"):
        target = _WEEKDAYS[groups["weekday"][:3]]
        # A named weekday is never today: "tuesday" said on a Tuesday means next week.
        ahead = (target - today.weekday()) % 7 or 7
        return today + timedelta(days=ahead)
    return today


def parse_preferred_time(text: str | None, now: datetime | None = None) -> datetime | None:
    """Return the first future instant mentioned in ``text``, or None.

    Candidates at or before ``now`` are skipped and the next pattern is tried.
    """
    if not text or not isinstance(text, str):
        return None

    current = to_business_time(now) if now is not None else business_now()
    today = current.date()
    lowered = text.lower()
    # Text already resolved to a past instant; a looser pattern must not reread it as today.
    past_spans: list[tuple[int, int]] = []

    for pattern in _PATTERNS:
        for match in pattern.finditer(lowered):
            start, end = match.span()
            if any(start < past_end and past_start < end for past_start, past_end in past_spans):
                continue
            clock = _clock_time(match)
            if clock is None:
                continue
            candidate = datetime.combine(_resolve_date(match, today), clock, tzinfo=business_tz())
            if candidate <= current:
                logger.debug("Skipping past time %s in %r", candidate.isoformat(), text)
                past_spans.append((start, end))
                continue
            logger.info("Parsed preferred time %s from %r", candidate.isoformat(), text)
            return candidate
    return None
