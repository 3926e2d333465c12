"""Booking endpoints for the lead-messaging and back-office callers.

Routing only: every decision is made by the services. Errors are mapped to
structured JSON bodies by the handlers registered in ``register_error_handlers``.
"""

import logging
import uuid
from functools import lru_cache

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime

from consultbook.db.session import async_session
from consultbook.errors import (
    BookingError,
    ExternalServiceError,
    NotFoundError,
    SlotUnavailableError,
    TransactionFailedError,
    ValidationError,
)
from consultbook.schemas.booking import (
    AppointmentOut,
    BookingOut,
    BookingReplyOut,
    BookingRequestIn,
    CancelRequest,
    CreateAppointmentRequest,
    ErrorResponse,
    RescheduleRequest,
    SlotOut,
    SlotsResponse,
)
from consultbook.services.assistant import BookingAssistant
from consultbook.services.availability import AvailabilitySource
from consultbook.services.booking import BookingOrchestrator, BookingResult
from consultbook.services.calendar import GoogleCalendarClient
from consultbook.services.conferencing import ZoomClient
from consultbook.services.intervals import CandidateSlot
from consultbook.services.records import RecordStore
from consultbook.services.slots import SlotGenerator
from consultbook.services.whatsapp import WhatsAppNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["appointments"])


@lru_cache
def get_store() -> RecordStore:
    return RecordStore(async_session)


@lru_cache
def _availability() -> AvailabilitySource:
    return AvailabilitySource(GoogleCalendarClient())


@lru_cache
def get_slot_generator() -> SlotGenerator:
    return SlotGenerator(_availability())


@lru_cache
def get_orchestrator() -> BookingOrchestrator:
    availability = _availability()
    return BookingOrchestrator(
        get_store(),
        availability,
        availability.calendar,
        ZoomClient(),
        WhatsAppNotifier(),
    )


@lru_cache
def get_assistant() -> BookingAssistant:
    return BookingAssistant(get_store(), get_slot_generator(), get_orchestrator())


def _slot_out(slot: CandidateSlot) -> SlotOut:
    distance = slot.distance_from_preference
    return SlotOut(
        start=slot.start,
        end=slot.end,
        distance_minutes=int(distance.total_seconds() // 60) if distance is not None else None,
    )


def _booking_out(result: BookingResult) -> BookingOut:
    return BookingOut(
        appointment=AppointmentOut.model_validate(result.appointment),
        conferencing=result.conferencing.state,
        calendar=result.calendar.state,
        join_url=result.join_url,
    )


@router.get("/agents/{agent_id}/slots", response_model=SlotsResponse)
async def list_slots(
    agent_id: uuid.UUID,
    preferred: AwareDatetime | None = None,
    days: int | None = Query(default=None, ge=1, le=60),
    store: RecordStore = Depends(get_store),
    generator: SlotGenerator = Depends(get_slot_generator),
):
    agent = await store.get_agent(agent_id)
    slots = await generator.find_slots(agent, preferred=preferred, search_days=days)
    return SlotsResponse(agent_id=agent.id, slots=[_slot_out(s) for s in slots])


@router.post("/appointments", response_model=BookingOut, status_code=201)
async def create_appointment(
    req: CreateAppointmentRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    logger.info("create_appointment: lead=%s agent=%s start=%s", req.lead_id, req.agent_id, req.start)
    result = await orchestrator.create(
        req.lead_id, req.agent_id, req.start, req.display_name, req.notes
    )
    return _booking_out(result)


@router.post("/appointments/{appointment_id}/reschedule", response_model=BookingOut)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    req: RescheduleRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    logger.info("reschedule_appointment: id=%s new_start=%s", appointment_id, req.new_start)
    result = await orchestrator.reschedule(appointment_id, req.new_start, req.reason)
    return _booking_out(result)


@router.post("/appointments/{appointment_id}/cancel", response_model=AppointmentOut)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    req: CancelRequest,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    logger.info("cancel_appointment: id=%s notify=%s", appointment_id, req.notify)
    appointment = await orchestrator.cancel(appointment_id, req.reason, notify=req.notify)
    return AppointmentOut.model_validate(appointment)


@router.post("/leads/{lead_id}/booking-requests", response_model=BookingReplyOut)
async def booking_request(
    lead_id: uuid.UUID,
    req: BookingRequestIn,
    assistant: BookingAssistant = Depends(get_assistant),
):
    """Free-text booking message from a lead, e.g. "can we do 3pm tomorrow?"."""
    reply = await assistant.handle(lead_id, req.agent_id, req.message, req.display_name, req.notes)
    return BookingReplyOut(
        outcome=reply.outcome,
        message=reply.message,
        appointment=AppointmentOut.model_validate(reply.appointment) if reply.appointment else None,
        join_url=reply.join_url,
        slots=[_slot_out(s) for s in reply.slots],
    )


_ERROR_STATUS: list[tuple[type[BookingError], int, str]] = [
    (NotFoundError, 404, "not_found"),
    (SlotUnavailableError, 409, "slot_unavailable"),
    (ValidationError, 422, "validation_error"),
    (ExternalServiceError, 503, "external_service_error"),
    (TransactionFailedError, 503, "transaction_failed"),
]


def _error_response(exc: BookingError, status_code: int, code: str) -> JSONResponse:
    retryable = isinstance(exc, TransactionFailedError) or (
        isinstance(exc, ExternalServiceError) and exc.retryable
    )
    body = ErrorResponse(error=code, detail=str(exc), retryable=retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    for exc_class, status_code, code in _ERROR_STATUS:

        async def handler(request: Request, exc: BookingError, status_code=status_code, code=code):
            if status_code >= 500:
                logger.warning("%s %s -> %s: %s", request.method, request.url.path, status_code, exc)
            return _error_response(exc, status_code, code)

        app.add_exception_handler(exc_class, handler)
