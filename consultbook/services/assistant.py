"""Find-and-book flow for a lead's free-text booking request.

A message either names a time ("3pm tomorrow"), confirms a previously offered
alternative ("yes"), or neither. A calendar or record-store outage is reported
as a system error, never as "no slots".
"""

import logging
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from consultbook.config import settings
from consultbook.errors import ExternalServiceError, TransactionFailedError, ValidationError
from consultbook.models import Agent, Appointment, Lead, LeadStatus
from consultbook.services import messages
from consultbook.services.booking import BookingOrchestrator, BookingResult
from consultbook.services.intervals import CandidateSlot
from consultbook.services.preferred_time import parse_preferred_time
from consultbook.services.records import RecordStore
from consultbook.services.slots import SlotGenerator
from consultbook.services.timewindow import now as business_now

logger = logging.getLogger(__name__)

_CONFIRMATION = re.compile(
    r"\b(yes|yeah|yep|yup|ok|okay|sure|confirm|confirmed|sounds good|book it"
    r"|that works|works for me|go ahead|perfect|great)\b"
)


def is_confirmation(text: str | None) -> bool:
    return bool(text and _CONFIRMATION.search(text.lower()))


class BookingOutcome(StrEnum):
    BOOKED = "booked"
    ALTERNATIVE_OFFERED = "alternative_offered"
    NO_SLOTS = "no_slots"
    ASK_FOR_TIME = "ask_for_time"
    SYSTEM_ERROR = "system_error"


@dataclass
class BookingReply:
    outcome: BookingOutcome
    message: str
    appointment: Appointment | None = None
    join_url: str | None = None
    slots: list[CandidateSlot] = field(default_factory=list)


class BookingAssistant:
    def __init__(
        self,
        store: RecordStore,
        slots: SlotGenerator,
        orchestrator: BookingOrchestrator,
        *,
        clock: Callable[[], datetime] = business_now,
        offer_ttl_minutes: int | None = None,
    ):
        self._store = store
        self._slots = slots
        self._orchestrator = orchestrator
        self._clock = clock
        self.offer_ttl = timedelta(minutes=offer_ttl_minutes or settings.offer_ttl_minutes)

    async def handle(
        self,
        lead_id: uuid.UUID,
        agent_id: uuid.UUID,
        message: str,
        display_name: str | None = None,
        notes: str | None = None,
    ) -> BookingReply:
        lead = await self._store.get_lead(lead_id)
        agent = await self._store.get_agent(agent_id)
        current = self._clock()
        preferred = parse_preferred_time(message, now=current)

        try:
            if preferred is None and is_confirmation(message):
                reply = await self._confirm_offer(lead, agent, current, display_name, notes)
                if reply is not None:
                    return reply

            if preferred is not None:
                return await self._book_preferred(lead, agent, preferred, current, display_name, notes)

            slots = await self._slots.find_slots(agent)
        except (ExternalServiceError, TransactionFailedError):
            logger.exception("Booking request from lead %s failed", lead.id)
            return BookingReply(BookingOutcome.SYSTEM_ERROR, messages.format_system_error())

        if not slots:
            return BookingReply(BookingOutcome.NO_SLOTS, messages.format_no_availability())
        return BookingReply(
            BookingOutcome.ASK_FOR_TIME, messages.format_ask_for_time(slots), slots=slots
        )

    async def _confirm_offer(
        self,
        lead: Lead,
        agent: Agent,
        current: datetime,
        display_name: str | None,
        notes: str | None,
    ) -> BookingReply | None:
        offer = await self._store.get_offer(lead.id)
        if offer is None:
            return None
        if offer.is_expired(current):
            logger.info("Offer for lead %s expired; ignoring confirmation", lead.id)
            await self._store.clear_offer(lead.id)
            return None

        offered_at = offer.offered_at
        await self._store.clear_offer(lead.id)
        try:
            result = await self._orchestrator.create(
                lead.id, offer.agent_id, offered_at, display_name, notes
            )
        except ValidationError as exc:
            logger.info("Offered slot %s for lead %s no longer bookable: %s", offered_at, lead.id, exc)
            return await self._offer_nearest(lead, agent, offered_at, current)
        return self._booked(result, agent)

    async def _book_preferred(
        self,
        lead: Lead,
        agent: Agent,
        preferred: datetime,
        current: datetime,
        display_name: str | None,
        notes: str | None,
    ) -> BookingReply:
        try:
            result = await self._orchestrator.create(lead.id, agent.id, preferred, display_name, notes)
        except ValidationError as exc:
            logger.info("Requested %s for lead %s not bookable: %s", preferred, lead.id, exc)
            return await self._offer_nearest(lead, agent, preferred, current)
        await self._store.clear_offer(lead.id)
        return self._booked(result, agent)

    async def _offer_nearest(
        self, lead: Lead, agent: Agent, requested: datetime, current: datetime
    ) -> BookingReply:
        slots = [
            slot
            for slot in await self._slots.find_slots(agent, preferred=requested)
            if slot.start != requested
        ]
        if not slots:
            return BookingReply(BookingOutcome.NO_SLOTS, messages.format_no_availability(requested))

        nearest = slots[0]
        await self._store.save_offer(lead.id, agent.id, nearest.start, current + self.offer_ttl)
        try:
            await self._store.update_lead_status(lead.id, LeadStatus.BOOKING_ALTERNATIVES_OFFERED)
        except Exception:
            logger.exception("Could not mark lead %s as offered alternatives", lead.id)
        return BookingReply(
            BookingOutcome.ALTERNATIVE_OFFERED,
            messages.format_alternative_offered(requested, nearest.start),
            slots=slots,
        )

    @staticmethod
    def _booked(result: BookingResult, agent: Agent) -> BookingReply:
        appointment = result.appointment
        passcode = result.conferencing.passcode if result.join_url else None
        return BookingReply(
            BookingOutcome.BOOKED,
            messages.format_booking_confirmed(
                agent.full_name, appointment.starts_at, result.join_url, passcode
            ),
            appointment=appointment,
            join_url=result.join_url,
        )
