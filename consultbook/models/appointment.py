import uuid
from datetime import datetime, timedelta
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from consultbook.models.base import Base
from consultbook.services.timewindow import now, to_business_time


class AppointmentStatus(StrEnum):
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


# Statuses that can still be rescheduled or cancelled.
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED})

_ACTIVE_ONLY = text("status <> 'cancelled'")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Backstop for concurrent bookings of the same agent slot.
        Index(
            "uq_appointments_agent_time_active",
            "agent_id",
            "appointment_time",
            unique=True,
            postgresql_where=_ACTIVE_ONLY,
            sqlite_where=_ACTIVE_ONLY,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("leads.id"), index=True)
    agent_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("agents.id"))
    appointment_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default=AppointmentStatus.SCHEDULED)
    consultation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    conferencing_meeting_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conferencing_join_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    conferencing_passcode: Mapped[str | None] = mapped_column(String(64), nullable=True)
    calendar_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=now, onupdate=now
    )

    @property
    def starts_at(self) -> datetime:
        return to_business_time(self.appointment_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
