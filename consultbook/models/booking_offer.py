import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from consultbook.models.base import Base
from consultbook.services.timewindow import now, to_business_time


class BookingOffer(Base):
    """An alternative slot offered to a lead, awaiting confirmation.

    At most one per lead: a new offer replaces the previous one.
    """

    __tablename__ = "booking_offers"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("leads.id"), unique=True)
    agent_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("agents.id"))
    offered_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=now)

    @property
    def offered_at(self) -> datetime:
        return to_business_time(self.offered_time)

    def is_expired(self, at: datetime) -> bool:
        return to_business_time(self.expires_at) <= at
