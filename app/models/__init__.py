from app.models.user import User, UserRole
from app.models.time_slot import SLOT_TRANSITIONS, UNASSIGNED, SlotStatus, TimeSlot
from app.models.booking import Booking, BookingStatus

__all__ = [
    "User",
    "UserRole",
    "TimeSlot",
    "SlotStatus",
    "SLOT_TRANSITIONS",
    "UNASSIGNED",
    "Booking",
    "BookingStatus",
]
