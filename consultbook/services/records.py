"""Record store: appointments, leads, agents and pending booking offers."""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from consultbook.errors import NotFoundError, SlotUnavailableError
from consultbook.models import Agent, Appointment, BookingOffer, Lead
from consultbook.services.timewindow import format_for_display, now, to_store_time

logger = logging.getLogger(__name__)

_TIME_FIELDS = ("appointment_time",)


class RecordStore:
    """Each operation runs in its own short transaction so it can be retried alone."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _get(self, model: type, entity: str, entity_id: uuid.UUID) -> Any:
        async with self._session_factory() as session:
            record = await session.get(model, entity_id)
        if record is None:
            raise NotFoundError(entity, entity_id)
        return record

    async def get_agent(self, agent_id: uuid.UUID) -> Agent:
        return await self._get(Agent, "agent", agent_id)

    async def get_lead(self, lead_id: uuid.UUID) -> Lead:
        return await self._get(Lead, "lead", lead_id)

    async def get_appointment(self, appointment_id: uuid.UUID) -> Appointment:
        return await self._get(Appointment, "appointment", appointment_id)

    async def create_appointment(self, **fields: Any) -> Appointment:
        """Insert an appointment row; a taken (agent, instant) raises SlotUnavailableError."""
        for name in _TIME_FIELDS:
            if name in fields:
                fields[name] = to_store_time(fields[name])
        appointment = Appointment(**fields)
        try:
            async with self._session_factory() as session, session.begin():
                session.add(appointment)
        except IntegrityError as exc:
            raise SlotUnavailableError(
                f"Slot {format_for_display(fields['appointment_time'])} is already booked"
            ) from exc

        logger.info("Appointment %s stored", appointment.id)
        return appointment

    async def update_appointment(self, appointment_id: uuid.UUID, **changes: Any) -> Appointment:
        for name in _TIME_FIELDS:
            if name in changes:
                changes[name] = to_store_time(changes[name])
        try:
            async with self._session_factory() as session, session.begin():
                appointment = await session.get(Appointment, appointment_id)
                if appointment is None:
                    raise NotFoundError("appointment", appointment_id)
                for key, value in changes.items():
                    setattr(appointment, key, value)
        except IntegrityError as exc:
            raise SlotUnavailableError("Requested slot is already booked") from exc

        logger.info("Appointment %s updated: %s", appointment_id, sorted(changes))
        return appointment

    async def update_lead_status(self, lead_id: uuid.UUID, status: str) -> None:
        async with self._session_factory() as session, session.begin():
            lead = await session.get(Lead, lead_id)
            if lead is None:
                raise NotFoundError("lead", lead_id)
            lead.status = status
        logger.info("Lead %s status -> %s", lead_id, status)

    async def save_offer(
        self,
        lead_id: uuid.UUID,
        agent_id: uuid.UUID,
        offered_time: datetime,
        expires_at: datetime,
    ) -> BookingOffer:
        """Store the lead's pending offer, superseding any earlier one."""
        offer = BookingOffer(
            lead_id=lead_id,
            agent_id=agent_id,
            offered_time=to_store_time(offered_time),
            expires_at=to_store_time(expires_at),
            created_at=to_store_time(now()),
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(BookingOffer).where(BookingOffer.lead_id == lead_id))
            session.add(offer)
        return offer

    async def get_offer(self, lead_id: uuid.UUID) -> BookingOffer | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BookingOffer).where(BookingOffer.lead_id == lead_id)
            )
            return result.scalar_one_or_none()

    async def clear_offer(self, lead_id: uuid.UUID) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(BookingOffer).where(BookingOffer.lead_id == lead_id))
