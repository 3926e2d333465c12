"""Pydantic schemas for the booking API."""

import uuid
from datetime import datetime

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class SlotOut(BaseModel):
    start: datetime
    end: datetime
    distance_minutes: int | None = None


class SlotsResponse(BaseModel):
    agent_id: uuid.UUID
    slots: list[SlotOut] = Field(default_factory=list)


class CreateAppointmentRequest(BaseModel):
    lead_id: uuid.UUID
    agent_id: uuid.UUID
    start: AwareDatetime
    display_name: str | None = None
    notes: str | None = None


class RescheduleRequest(BaseModel):
    new_start: AwareDatetime
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None
    notify: bool = True


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lead_id: uuid.UUID
    agent_id: uuid.UUID
    starts_at: datetime
    duration_minutes: int
    status: str
    consultation_notes: str | None = None
    conferencing_meeting_id: str | None = None
    conferencing_join_url: str | None = None
    calendar_event_id: str | None = None


class BookingOut(BaseModel):
    appointment: AppointmentOut
    conferencing: str
    calendar: str
    join_url: str | None = None


class BookingRequestIn(BaseModel):
    agent_id: uuid.UUID
    message: str
    display_name: str | None = None
    notes: str | None = None


class BookingReplyOut(BaseModel):
    outcome: str
    message: str
    appointment: AppointmentOut | None = None
    join_url: str | None = None
    slots: list[SlotOut] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    detail: str
    retryable: bool = False
