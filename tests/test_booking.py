"""Tests for create / reschedule / cancel and their compensation paths."""

import pytest
from sqlalchemy.exc import OperationalError

from consultbook.errors import (
    ExternalServiceError,
    SlotUnavailableError,
    TransactionFailedError,
    ValidationError,
)
from consultbook.models import AppointmentStatus, LeadStatus
from consultbook.services.booking import BookingOrchestrator, ResourceState
from consultbook.services.conferencing import PLACEHOLDER_JOIN_URL
from consultbook.services.intervals import BusyInterval
from consultbook.services.records import RecordStore
from fixtures.fakes import MONDAY_10AM, NO_WAIT, fixed_clock, sgt


class BrokenStore(RecordStore):
    """Record store whose appointment writes always fail."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.write_attempts = 0

    async def create_appointment(self, **fields):
        self.write_attempts += 1
        raise OperationalError("INSERT INTO appointments", {}, Exception("database is locked"))

    async def update_appointment(self, appointment_id, **changes):
        self.write_attempts += 1
        raise OperationalError("UPDATE appointments", {}, Exception("database is locked"))


@pytest.fixture
def broken_store(session_factory) -> BrokenStore:
    return BrokenStore(session_factory)


def _orchestrator(store, availability, calendar, conferencing, notifier=None) -> BookingOrchestrator:
    return BookingOrchestrator(
        store,
        availability,
        calendar,
        conferencing,
        notifier,
        clock=fixed_clock(MONDAY_10AM),
        external_retry=NO_WAIT,
        store_retry=NO_WAIT,
    )


class TestCreate:
    async def test_books_free_slot(self, orchestrator, store, calendar, conferencing, lead, agent):
        result = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11), notes="Condo viewing")

        appointment = result.appointment
        assert appointment.id is not None
        assert appointment.status == AppointmentStatus.SCHEDULED
        assert appointment.starts_at == sgt(2024, 6, 17, 11)
        assert appointment.conferencing_meeting_id == "mtg-1"
        assert appointment.calendar_event_id == "evt-1"
        assert result.conferencing.state == ResourceState.CREATED
        assert result.join_url == "https://zoom.us/j/1"
        # The real join link is embedded in the calendar event.
        assert "https://zoom.us/j/1" in calendar.created[0]["description"]
        assert (await store.get_lead(lead.id)).status == LeadStatus.BOOKED

    async def test_inside_buffer_rejected(self, orchestrator, calendar, conferencing, lead, agent):
        with pytest.raises(ValidationError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 9, 30))
        with pytest.raises(ValidationError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 10, 30))
        assert calendar.queries == []
        assert conferencing.created == []

    async def test_outside_working_hours_rejected(self, orchestrator, lead, agent):
        with pytest.raises(ValidationError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 17, 30))
        with pytest.raises(ValidationError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 22, 11))

    async def test_busy_slot_rejected(self, orchestrator, calendar, conferencing, lead, agent):
        calendar.busy.append(BusyInterval(sgt(2024, 6, 17, 11), sgt(2024, 6, 17, 12)))
        with pytest.raises(SlotUnavailableError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert conferencing.created == []

    async def test_availability_outage_fails_closed(self, orchestrator, calendar, conferencing, lead, agent):
        calendar.fail_query = True
        with pytest.raises(ExternalServiceError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert conferencing.created == []

    async def test_conferencing_failure_degrades_to_placeholder(
        self, orchestrator, calendar, conferencing, lead, agent
    ):
        conferencing.fail_create = True
        result = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))

        assert result.conferencing.state == ResourceState.PLACEHOLDER
        assert result.appointment.conferencing_meeting_id is None
        assert result.appointment.conferencing_join_url == PLACEHOLDER_JOIN_URL
        assert result.join_url is None
        assert PLACEHOLDER_JOIN_URL not in calendar.created[0]["description"]

    async def test_calendar_failure_continues_without_event(self, orchestrator, calendar, lead, agent):
        calendar.fail_create = True
        result = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert result.calendar.state == ResourceState.PLACEHOLDER
        assert result.appointment.calendar_event_id is None
        assert result.appointment.status == AppointmentStatus.SCHEDULED

    async def test_agent_without_identities(self, orchestrator, session_factory, lead, agent):
        async with session_factory() as session, session.begin():
            record = await session.get(type(agent), agent.id)
            record.zoom_user_id = None
            record.calendar_id = None
        result = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert result.conferencing.state == ResourceState.NOT_ATTEMPTED
        assert result.calendar.state == ResourceState.NOT_ATTEMPTED

    async def test_double_booking_backstop(self, orchestrator, calendar, conferencing, lead, agent):
        await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        # Calendar has not caught up: the second booking passes the re-check.
        with pytest.raises(SlotUnavailableError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert conferencing.deleted == ["mtg-2"]
        assert calendar.deleted == ["evt-2"]


class TestCompensation:
    async def test_persistence_failure_deletes_both_resources_once(
        self, broken_store, availability, calendar, conferencing, lead, agent
    ):
        orchestrator = _orchestrator(broken_store, availability, calendar, conferencing)

        with pytest.raises(TransactionFailedError) as info:
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))

        assert isinstance(info.value.__cause__, OperationalError)
        assert broken_store.write_attempts == NO_WAIT.attempts
        assert conferencing.deleted == ["mtg-1"]
        assert calendar.deleted == ["evt-1"]

    async def test_compensation_failure_does_not_mask_error(
        self, broken_store, availability, calendar, conferencing, lead, agent
    ):
        conferencing.fail_delete = True
        orchestrator = _orchestrator(broken_store, availability, calendar, conferencing)

        with pytest.raises(TransactionFailedError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert "evt-1" in calendar.deleted

    async def test_placeholders_are_not_deleted(
        self, broken_store, availability, calendar, conferencing, lead, agent
    ):
        conferencing.fail_create = True
        orchestrator = _orchestrator(broken_store, availability, calendar, conferencing)

        with pytest.raises(TransactionFailedError):
            await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert conferencing.deleted == []
        assert calendar.deleted == ["evt-1"]


class TestReschedule:
    async def test_moves_and_recreates_resources(self, orchestrator, store, calendar, conferencing, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        calendar.busy.append(BusyInterval(sgt(2024, 6, 17, 11), sgt(2024, 6, 17, 12)))

        result = await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 18, 15), "Client travelling")

        loaded = await store.get_appointment(booked.appointment.id)
        assert loaded.status == AppointmentStatus.RESCHEDULED
        assert loaded.starts_at == sgt(2024, 6, 18, 15)
        assert loaded.conferencing_meeting_id == "mtg-2"
        assert loaded.calendar_event_id == "evt-2"
        assert "Client travelling" in loaded.consultation_notes
        assert result.join_url == "https://zoom.us/j/2"
        assert conferencing.deleted == ["mtg-1"]
        assert calendar.deleted == ["evt-1"]
        description = calendar.created[1]["description"]
        assert "Client travelling" in description
        assert "Monday, 17 June 2024, 11:00 AM" in description

    async def test_overlapping_own_slot_allowed(self, orchestrator, calendar, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        calendar.busy.append(BusyInterval(sgt(2024, 6, 17, 11), sgt(2024, 6, 17, 12)))
        # Moving by half an hour overlaps only the appointment's own event.
        result = await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 17, 11, 30))
        assert result.appointment.status == AppointmentStatus.RESCHEDULED

    async def test_conflict_with_other_commitment(self, orchestrator, calendar, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        calendar.busy.append(BusyInterval(sgt(2024, 6, 18, 15), sgt(2024, 6, 18, 16)))
        with pytest.raises(SlotUnavailableError):
            await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 18, 15))

    async def test_rescheduled_can_be_rescheduled_again(self, orchestrator, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 18, 15))
        result = await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 19, 9))
        assert result.appointment.starts_at == sgt(2024, 6, 19, 9)

    async def test_failed_write_keeps_original_resources(
        self, orchestrator, session_factory, availability, calendar, conferencing, lead, agent
    ):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        broken = _orchestrator(BrokenStore(session_factory), availability, calendar, conferencing)

        with pytest.raises(TransactionFailedError):
            await broken.reschedule(booked.appointment.id, sgt(2024, 6, 18, 15))
        # Only the new resources were rolled back.
        assert conferencing.deleted == ["mtg-2"]
        assert calendar.deleted == ["evt-2"]

    async def test_cancelled_cannot_be_rescheduled(self, orchestrator, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        await orchestrator.cancel(booked.appointment.id, "Changed plans", notify=False)
        with pytest.raises(ValidationError):
            await orchestrator.reschedule(booked.appointment.id, sgt(2024, 6, 18, 15))


class TestCancel:
    async def test_cancel_scheduled(self, orchestrator, store, calendar, conferencing, notifier, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11), notes="First visit")

        cancelled = await orchestrator.cancel(booked.appointment.id, "Client unwell")

        assert cancelled.status == AppointmentStatus.CANCELLED
        loaded = await store.get_appointment(booked.appointment.id)
        assert loaded.status == AppointmentStatus.CANCELLED
        assert loaded.consultation_notes == "First visit\nCancelled: Client unwell"
        # External references stay on the row for audit.
        assert loaded.calendar_event_id == "evt-1"
        assert conferencing.deleted == ["mtg-1"]
        assert calendar.deleted == ["evt-1"]
        assert (await store.get_lead(lead.id)).status == LeadStatus.APPOINTMENT_CANCELLED
        assert len(notifier.sent) == 1
        recipient, text = notifier.sent[0]
        assert recipient == "+6591234567"
        assert "Client unwell" in text

    async def test_both_deletes_attempted_when_first_fails(self, orchestrator, calendar, conferencing, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        conferencing.fail_delete = True

        cancelled = await orchestrator.cancel(booked.appointment.id, "No longer needed")

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert "mtg-1" in conferencing.deleted
        assert calendar.deleted == ["evt-1"]

    async def test_both_deletes_attempted_when_second_fails(self, orchestrator, calendar, conferencing, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        calendar.fail_delete = True

        cancelled = await orchestrator.cancel(booked.appointment.id, "No longer needed")

        assert cancelled.status == AppointmentStatus.CANCELLED
        assert conferencing.deleted == ["mtg-1"]
        assert "evt-1" in calendar.deleted

    async def test_notify_flag_and_notifier_failure(self, orchestrator, notifier, lead, agent):
        first = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        await orchestrator.cancel(first.appointment.id, "Quiet", notify=False)
        assert notifier.sent == []

        notifier.fail = True
        second = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 13))
        cancelled = await orchestrator.cancel(second.appointment.id, "Loud")
        assert cancelled.status == AppointmentStatus.CANCELLED

    async def test_already_cancelled(self, orchestrator, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        await orchestrator.cancel(booked.appointment.id, notify=False)
        with pytest.raises(ValidationError):
            await orchestrator.cancel(booked.appointment.id, notify=False)

    async def test_cancelled_slot_is_free_again(self, orchestrator, lead, agent):
        booked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        await orchestrator.cancel(booked.appointment.id, notify=False)
        rebooked = await orchestrator.create(lead.id, agent.id, sgt(2024, 6, 17, 11))
        assert rebooked.appointment.status == AppointmentStatus.SCHEDULED
