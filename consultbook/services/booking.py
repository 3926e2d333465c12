"""Booking transaction orchestrator: create, reschedule and cancel appointments.

There is no distributed transaction across the conferencing service, the
calendar and the record store. Conferencing and calendar resources are created
first and degrade to placeholders on failure; the record-store write decides
whether the appointment exists, and when it fails the real external resources
created for it are deleted again.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from consultbook.config import settings
from consultbook.errors import (
    SlotUnavailableError,
    TransactionFailedError,
    ValidationError,
)
from consultbook.models import Agent, Appointment, AppointmentStatus, Lead, LeadStatus
from consultbook.services.availability import AvailabilitySource
from consultbook.services.calendar import GoogleCalendarClient
from consultbook.services.conferencing import PLACEHOLDER_JOIN_URL, ZoomClient
from consultbook.services.intervals import BusyInterval
from consultbook.services.messages import format_cancellation_notice
from consultbook.services.records import RecordStore
from consultbook.services.retry import RetryPolicy, with_retry
from consultbook.services.timewindow import format_for_display, to_business_time
from consultbook.services.timewindow import now as business_now
from consultbook.services.whatsapp import WhatsAppNotifier

logger = logging.getLogger(__name__)


class ResourceState(StrEnum):
    CREATED = "created"
    PLACEHOLDER = "placeholder"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class ExternalResource:
    """Outcome of creating a conferencing meeting or calendar event.

    Only ``CREATED`` resources are real; placeholders must never be shown to a
    lead as a working link or deleted at the provider.
    """

    state: ResourceState
    id: str | None = None
    join_url: str | None = None
    passcode: str | None = None

    @classmethod
    def created(
        cls, resource_id: str, join_url: str | None = None, passcode: str | None = None
    ) -> "ExternalResource":
        return cls(ResourceState.CREATED, resource_id, join_url, passcode)

    @classmethod
    def placeholder(cls, join_url: str | None = None) -> "ExternalResource":
        return cls(ResourceState.PLACEHOLDER, join_url=join_url)

    @classmethod
    def not_attempted(cls) -> "ExternalResource":
        return cls(ResourceState.NOT_ATTEMPTED)

    @property
    def is_real(self) -> bool:
        return self.state == ResourceState.CREATED


@dataclass
class BookingResult:
    appointment: Appointment
    conferencing: ExternalResource
    calendar: ExternalResource

    @property
    def join_url(self) -> str | None:
        return self.conferencing.join_url if self.conferencing.is_real else None


def _append_note(existing: str | None, line: str) -> str:
    return f"{existing}\n{line}" if existing else line


class BookingOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        availability: AvailabilitySource,
        calendar: GoogleCalendarClient,
        conferencing: ZoomClient,
        notifier: WhatsAppNotifier | None = None,
        *,
        clock: Callable[[], datetime] = business_now,
        slot_minutes: int | None = None,
        buffer_minutes: int | None = None,
        external_retry: RetryPolicy | None = None,
        store_retry: RetryPolicy | None = None,
    ):
        self._store = store
        self._availability = availability
        self._calendar = calendar
        self._conferencing = conferencing
        self._notifier = notifier
        self._clock = clock
        self.duration = timedelta(minutes=slot_minutes or settings.slot_duration_minutes)
        self.buffer = timedelta(
            minutes=settings.booking_buffer_minutes if buffer_minutes is None else buffer_minutes
        )
        self._external_retry = external_retry or RetryPolicy.external()
        self._store_retry = store_retry or RetryPolicy.store()

    @property
    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    # -- create ------------------------------------------------------------

    async def create(
        self,
        lead_id: uuid.UUID,
        agent_id: uuid.UUID,
        start: datetime | str,
        display_name: str | None = None,
        notes: str | None = None,
    ) -> BookingResult:
        """Book ``start`` for the lead with the agent.

        Raises ValidationError (or SlotUnavailableError) when the slot cannot be
        booked, ExternalServiceError when availability cannot be confirmed, and
        TransactionFailedError when the record could not be written.
        """
        agent = await self._store.get_agent(agent_id)
        lead = await self._store.get_lead(lead_id)
        start = to_business_time(start)
        end = start + self.duration
        self._check_bookable(agent, start, end)

        # Fail closed: an unreachable calendar aborts the booking.
        if not await self._availability.is_available(agent, start, self.duration):
            raise SlotUnavailableError(f"{format_for_display(start)} is no longer available")

        name = display_name or lead.full_name or "Client"
        when = format_for_display(start)
        conferencing = await self._create_meeting(
            agent, f"Consultation with {name}", start, agenda=notes or ""
        )
        calendar = await self._create_event(
            agent,
            f"Consultation: {name}",
            self._event_description(lead, conferencing, notes),
            start,
            end,
        )

        fields = dict(
            lead_id=lead.id,
            agent_id=agent.id,
            appointment_time=start,
            duration_minutes=self.duration_minutes,
            status=AppointmentStatus.SCHEDULED,
            consultation_notes=notes,
            conferencing_meeting_id=conferencing.id,
            conferencing_join_url=conferencing.join_url,
            conferencing_passcode=conferencing.passcode,
            calendar_event_id=calendar.id,
        )
        # Once persistence starts it runs to completion (or compensation) even if
        # the caller goes away, so external resources are never orphaned.
        appointment = await asyncio.shield(
            self._persist(
                lambda: self._store.create_appointment(**fields),
                agent,
                conferencing,
                calendar,
                operation_name=f"create_appointment:{lead.id}",
            )
        )
        logger.info(
            "Booked appointment %s for lead %s with agent %s at %s (conferencing=%s, calendar=%s)",
            appointment.id, lead.id, agent.id, when, conferencing.state, calendar.state,
        )

        await self._set_lead_status(lead.id, LeadStatus.BOOKED)
        return BookingResult(appointment, conferencing, calendar)

    # -- reschedule --------------------------------------------------------

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        new_start: datetime | str,
        reason: str | None = None,
    ) -> BookingResult:
        """Move an active appointment, replacing its meeting and calendar event.

        New external resources are created and the row updated before the old
        ones are released, so a failed write leaves the original booking intact.
        """
        appointment = await self._store.get_appointment(appointment_id)
        if not appointment.is_active:
            raise ValidationError(f"Appointment {appointment_id} is {appointment.status}")
        agent = await self._store.get_agent(appointment.agent_id)
        lead = await self._store.get_lead(appointment.lead_id)

        new_start = to_business_time(new_start)
        new_end = new_start + self.duration
        self._check_bookable(agent, new_start, new_end)

        original_start = appointment.starts_at
        # The appointment's own event is the only thing allowed to overlap itself.
        own_slot = (
            BusyInterval(original_start, appointment.ends_at)
            if appointment.calendar_event_id
            else None
        )
        if not await self._availability.is_available(
            agent, new_start, self.duration, exclude=own_slot
        ):
            raise SlotUnavailableError(f"{format_for_display(new_start)} is not available")

        name = lead.full_name or "Client"
        reason_text = reason or "No reason given"
        conferencing = await self._create_meeting(
            agent,
            f"Consultation with {name} (rescheduled)",
            new_start,
            agenda=appointment.consultation_notes or "",
        )
        description = "\n".join(
            [
                f"Rescheduled from {format_for_display(original_start)}",
                f"Reason: {reason_text}",
                self._event_description(lead, conferencing, appointment.consultation_notes),
            ]
        )
        calendar = await self._create_event(
            agent, f"Consultation: {name} (rescheduled)", description, new_start, new_end
        )

        notes = _append_note(
            appointment.consultation_notes,
            f"Rescheduled from {format_for_display(original_start)}: {reason_text}",
        )
        updated = await asyncio.shield(
            self._persist(
                lambda: self._store.update_appointment(
                    appointment.id,
                    appointment_time=new_start,
                    duration_minutes=self.duration_minutes,
                    status=AppointmentStatus.RESCHEDULED,
                    consultation_notes=notes,
                    conferencing_meeting_id=conferencing.id,
                    conferencing_join_url=conferencing.join_url,
                    conferencing_passcode=conferencing.passcode,
                    calendar_event_id=calendar.id,
                ),
                agent,
                conferencing,
                calendar,
                operation_name=f"reschedule_appointment:{appointment.id}",
            )
        )

        await self._release(
            agent,
            appointment.conferencing_meeting_id,
            appointment.calendar_event_id,
            step="reschedule",
        )
        logger.info(
            "Rescheduled appointment %s from %s to %s",
            appointment.id, original_start.isoformat(), new_start.isoformat(),
        )
        return BookingResult(updated, conferencing, calendar)

    # -- cancel ------------------------------------------------------------

    async def cancel(
        self,
        appointment_id: uuid.UUID,
        reason: str | None = None,
        notify: bool = True,
    ) -> Appointment:
        appointment = await self._store.get_appointment(appointment_id)
        if not appointment.is_active:
            raise ValidationError(f"Appointment {appointment_id} is already cancelled")
        agent = await self._store.get_agent(appointment.agent_id)

        # Both deletes are attempted regardless of each other's outcome.
        await self._release(
            agent,
            appointment.conferencing_meeting_id,
            appointment.calendar_event_id,
            step="cancel",
        )

        reason_text = reason or "No reason given"
        notes = _append_note(appointment.consultation_notes, f"Cancelled: {reason_text}")
        try:
            cancelled = await with_retry(
                lambda: self._store.update_appointment(
                    appointment.id,
                    status=AppointmentStatus.CANCELLED,
                    consultation_notes=notes,
                ),
                policy=self._store_retry,
                operation_name=f"cancel_appointment:{appointment.id}",
            )
        except Exception as exc:
            raise TransactionFailedError(
                f"Could not record cancellation of appointment {appointment.id}"
            ) from exc
        logger.info("Cancelled appointment %s: %s", appointment.id, reason_text)

        await self._set_lead_status(appointment.lead_id, LeadStatus.APPOINTMENT_CANCELLED)
        if notify:
            await self._notify_cancellation(cancelled, reason_text)
        return cancelled

    # -- steps -------------------------------------------------------------

    def _check_bookable(self, agent: Agent, start: datetime, end: datetime) -> None:
        earliest = self._clock() + self.buffer
        if start <= earliest:
            raise ValidationError(
                f"{format_for_display(start)} is too soon; "
                f"appointments must start after {format_for_display(earliest)}"
            )
        if not agent.working_hours.contains(start, end):
            raise ValidationError(
                f"{format_for_display(start)} is outside {agent.full_name}'s working hours"
            )

    def _event_description(
        self, lead: Lead, conferencing: ExternalResource, notes: str | None
    ) -> str:
        lines = [f"Lead: {lead.full_name or 'Unknown'}"]
        if lead.phone_number:
            lines.append(f"Phone: {lead.phone_number}")
        if lead.email:
            lines.append(f"Email: {lead.email}")
        if conferencing.is_real:
            lines.append(f"Join: {conferencing.join_url}")
            if conferencing.passcode:
                lines.append(f"Passcode: {conferencing.passcode}")
        if notes:
            lines.append(f"Notes: {notes}")
        return "\n".join(lines)

    async def _create_meeting(
        self, agent: Agent, topic: str, start: datetime, agenda: str = ""
    ) -> ExternalResource:
        if not agent.zoom_user_id:
            logger.info("Agent %s has no conferencing identity; skipping meeting", agent.id)
            return ExternalResource.not_attempted()
        try:
            meeting = await with_retry(
                lambda: self._conferencing.create_meeting(
                    agent.zoom_user_id, topic, start, self.duration_minutes, agenda
                ),
                policy=self._external_retry,
                operation_name=f"create_meeting:{agent.id}",
            )
        except Exception:
            logger.warning(
                "Conferencing create failed for agent %s at %s; using placeholder link",
                agent.id, start.isoformat(), exc_info=True,
            )
            return ExternalResource.placeholder(PLACEHOLDER_JOIN_URL)
        return ExternalResource.created(meeting.id, meeting.join_url, meeting.passcode)

    async def _create_event(
        self, agent: Agent, summary: str, description: str, start: datetime, end: datetime
    ) -> ExternalResource:
        if not agent.calendar_id:
            logger.info("Agent %s has no calendar; skipping event", agent.id)
            return ExternalResource.not_attempted()
        try:
            event_id = await with_retry(
                lambda: self._calendar.create_event(
                    agent.calendar_id, summary, description, start, end
                ),
                policy=self._external_retry,
                operation_name=f"create_event:{agent.id}",
            )
        except Exception:
            logger.warning(
                "Calendar create failed for agent %s at %s; continuing without event",
                agent.id, start.isoformat(), exc_info=True,
            )
            return ExternalResource.placeholder()
        return ExternalResource.created(event_id)

    async def _persist(
        self,
        write: Callable,
        agent: Agent,
        conferencing: ExternalResource,
        calendar: ExternalResource,
        *,
        operation_name: str,
    ) -> Appointment:
        """Run the record-store write; on failure undo the new external resources."""
        try:
            return await with_retry(write, policy=self._store_retry, operation_name=operation_name)
        except SlotUnavailableError:
            logger.warning("%s lost the slot to a concurrent booking", operation_name)
            await self._compensate(agent, conferencing, calendar)
            raise
        except Exception as exc:
            logger.error("%s failed after retries: %s", operation_name, exc)
            await self._compensate(agent, conferencing, calendar)
            raise TransactionFailedError(f"Could not save appointment ({operation_name})") from exc

    async def _compensate(
        self, agent: Agent, conferencing: ExternalResource, calendar: ExternalResource
    ) -> None:
        await self._release(
            agent,
            conferencing.id if conferencing.is_real else None,
            calendar.id if calendar.is_real else None,
            step="compensation",
        )

    async def _release(
        self,
        agent: Agent,
        meeting_id: str | None,
        event_id: str | None,
        *,
        step: str,
    ) -> None:
        """Best-effort delete of a meeting and an event; failures are logged only."""
        if meeting_id:
            try:
                await with_retry(
                    lambda: self._conferencing.delete_meeting(agent.zoom_user_id or "", meeting_id),
                    policy=self._external_retry,
                    operation_name=f"delete_meeting:{meeting_id}",
                )
                logger.info("%s: deleted meeting %s", step, meeting_id)
            except Exception:
                logger.exception("%s: could not delete meeting %s", step, meeting_id)

        if event_id and agent.calendar_id:
            try:
                await with_retry(
                    lambda: self._calendar.delete_event(agent.calendar_id, event_id),
                    policy=self._external_retry,
                    operation_name=f"delete_event:{event_id}",
                )
                logger.info("%s: deleted calendar event %s", step, event_id)
            except Exception:
                logger.exception("%s: could not delete calendar event %s", step, event_id)

    async def _set_lead_status(self, lead_id: uuid.UUID, status: LeadStatus) -> None:
        try:
            await self._store.update_lead_status(lead_id, status)
        except Exception:
            logger.exception("Could not set lead %s status to %s", lead_id, status)

    async def _notify_cancellation(self, appointment: Appointment, reason: str) -> None:
        if self._notifier is None:
            return
        try:
            lead = await self._store.get_lead(appointment.lead_id)
            if not lead.phone_number:
                logger.info("Lead %s has no phone number; cancellation not sent", lead.id)
                return
            text = format_cancellation_notice(lead.full_name, appointment.starts_at, reason)
            await self._notifier.send(lead.phone_number, text)
        except Exception:
            logger.exception("Cancellation notice for appointment %s failed", appointment.id)
