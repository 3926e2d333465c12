import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from consultbook.config import settings
from consultbook.models.base import Base
from consultbook.services.intervals import WorkingHours, parse_weekdays
from consultbook.services.timewindow import now


class Agent(Base):
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    full_name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    work_start_hour: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.default_work_start_hour
    )
    work_end_hour: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.default_work_end_hour
    )
    working_days: Mapped[str] = mapped_column(
        String(20), default=lambda: settings.default_working_days
    )
    timezone: Mapped[str] = mapped_column(
        String(64), default=lambda: settings.business_timezone
    )
    # External identities: Zoom host (user id or email) and Google calendar id.
    zoom_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    calendar_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    @property
    def working_hours(self) -> WorkingHours:
        """Validated working-hours value; raises ValidationError on malformed config."""
        return WorkingHours(
            start_hour=self.work_start_hour,
            end_hour=self.work_end_hour,
            weekdays=parse_weekdays(self.working_days),
            timezone=self.timezone,
        )
