"""Slot Generator: fixed-duration candidate slots inside an agent's working hours."""

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta

from consultbook.config import settings
from consultbook.models import Agent
from consultbook.services.availability import AvailabilitySource
from consultbook.services.intervals import CandidateSlot, WorkingHours, slot_conflicts
from consultbook.services.timewindow import now as business_now
from consultbook.services.timewindow import to_business_time

logger = logging.getLogger(__name__)


class SlotGenerator:
    def __init__(
        self,
        availability: AvailabilitySource,
        *,
        clock: Callable[[], datetime] = business_now,
        slot_minutes: int | None = None,
        buffer_minutes: int | None = None,
        max_results: int | None = None,
    ):
        self._availability = availability
        self._clock = clock
        self.slot_duration = timedelta(minutes=slot_minutes or settings.slot_duration_minutes)
        self.buffer = timedelta(
            minutes=settings.booking_buffer_minutes if buffer_minutes is None else buffer_minutes
        )
        self.max_results = max_results or settings.max_slot_results

    async def find_slots(
        self,
        agent: Agent,
        preferred: datetime | None = None,
        search_days: int | None = None,
    ) -> list[CandidateSlot]:
        """Up to ``max_results`` free slots, nearest to ``preferred`` first when given.

        Busy time is fetched once for the whole window. A failed fetch raises
        ExternalServiceError rather than returning an empty list.
        """
        search_days = settings.slot_search_days if search_days is None else search_days
        hours = agent.working_hours
        if not hours.weekdays:
            logger.info("Agent %s has no active weekdays", agent.id)
            return []
        current = self._clock()
        if preferred is not None:
            preferred = to_business_time(preferred)
            if preferred <= current:
                preferred = None

        search_start = self._search_start(hours, current, preferred, search_days)
        if search_start is None:
            logger.info("Agent %s has no working day in the next %d days", agent.id, search_days)
            return []

        first_day = hours.local_date(search_start)
        last_day = first_day + timedelta(days=search_days)
        search_end = hours.window(last_day)[1]

        busy = await self._availability.get_busy_intervals(agent, search_start, search_end)

        earliest = current + self.buffer
        slots = [
            CandidateSlot(start=start, end=start + self.slot_duration)
            for start in self._candidate_starts(hours, first_day, last_day, search_start)
            if start > earliest and not slot_conflicts(start, start + self.slot_duration, busy)
        ]

        if preferred is not None:
            slots = [
                CandidateSlot(slot.start, slot.end, abs(slot.start - preferred)) for slot in slots
            ]
            slots.sort(key=lambda slot: slot.distance_from_preference)

        logger.info(
            "Found %d free slot(s) for agent %s between %s and %s",
            len(slots), agent.id, search_start.isoformat(), search_end.isoformat(),
        )
        return slots[: self.max_results]

    def _search_start(
        self,
        hours: WorkingHours,
        current: datetime,
        preferred: datetime | None,
        search_days: int,
    ) -> datetime | None:
        if preferred is not None:
            return hours.window(hours.local_date(preferred))[0]

        next_hour = current.replace(minute=0, second=0, microsecond=0)
        if next_hour < current:
            next_hour += timedelta(hours=1)

        today = hours.local_date(current)
        for offset in range(search_days + 1):
            day = today + timedelta(days=offset)
            if not hours.is_active(day):
                continue
            window_start, window_end = hours.window(day)
            if offset == 0:
                if next_hour + self.slot_duration > window_end:
                    continue
                return max(next_hour, window_start)
            return window_start
        return None

    def _candidate_starts(
        self, hours: WorkingHours, first_day: date, last_day: date, search_start: datetime
    ):
        """Slot starts on active weekdays only, stepping through each working window."""
        day = first_day
        while day <= last_day:
            if hours.is_active(day):
                window_start, window_end = hours.window(day)
                start = window_start
                while start + self.slot_duration <= window_end:
                    if start >= search_start:
                        yield start
                    start += self.slot_duration
            day += timedelta(days=1)
