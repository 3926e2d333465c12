from consultbook.models.base import Base
from consultbook.models.agent import Agent
from consultbook.models.lead import Lead, LeadStatus
from consultbook.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus
from consultbook.models.booking_offer import BookingOffer

__all__ = [
    "Base",
    "Agent",
    "Lead",
    "LeadStatus",
    "Appointment",
    "AppointmentStatus",
    "ACTIVE_STATUSES",
    "BookingOffer",
]
