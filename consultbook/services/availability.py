"""Availability Source: the agent's calendar is the source of truth for busy time.

Both the batched slot search and single-slot checks go through
``slot_conflicts`` so the two paths can never disagree. Fetch failures surface as
ExternalServiceError; nothing here ever treats a failed fetch as "free".
"""

import logging
from datetime import datetime, timedelta

from consultbook.errors import ValidationError
from consultbook.models import Agent
from consultbook.services.calendar import GoogleCalendarClient
from consultbook.services.intervals import BusyInterval, exclude_interval, slot_conflicts
from consultbook.services.retry import RetryPolicy, with_retry
from consultbook.services.timewindow import to_business_time

logger = logging.getLogger(__name__)


class AvailabilitySource:
    def __init__(self, calendar: GoogleCalendarClient, retry_policy: RetryPolicy | None = None):
        self._calendar = calendar
        self._retry_policy = retry_policy or RetryPolicy.external()

    @property
    def calendar(self) -> GoogleCalendarClient:
        return self._calendar

    async def get_busy_intervals(
        self, agent: Agent, start: datetime, end: datetime
    ) -> list[BusyInterval]:
        if not agent.calendar_id:
            # No calendar identity means nothing external can block the agent.
            logger.info("Agent %s has no calendar; treating as free", agent.id)
            return []
        start, end = to_business_time(start), to_business_time(end)
        if end <= start:
            raise ValidationError("Busy-interval query must end after it starts")
        return await with_retry(
            lambda: self._calendar.query_busy(agent.calendar_id, start, end),
            policy=self._retry_policy,
            operation_name=f"freebusy:{agent.id}",
        )

    async def is_available(
        self,
        agent: Agent,
        instant: datetime,
        duration: timedelta,
        exclude: BusyInterval | None = None,
    ) -> bool:
        """True when ``[instant, instant + duration)`` is free.

        ``exclude`` removes a window from the busy data first, so an appointment
        being rescheduled does not block itself.
        """
        start = to_business_time(instant)
        end = start + duration
        busy = await self.get_busy_intervals(agent, start, end)
        busy = exclude_interval(busy, exclude)
        available = not slot_conflicts(start, end, busy)
        logger.info(
            "Agent %s %s at %s", agent.id, "available" if available else "busy", start.isoformat()
        )
        return available
