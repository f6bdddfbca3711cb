from datetime import date, datetime, time
from uuid import UUID

from app.api.schemas.base import CamelModel, Envelope
from app.api.schemas.slot import Pagination
from app.models.booking import BookingStatus


class CreateBookingRequest(CamelModel):
    user_id: UUID
    slot_id: UUID


class BookingPublic(CamelModel):
    id: UUID
    user_id: UUID
    slot_id: UUID
    status: BookingStatus
    meeting_link: str | None = None
    meeting_id: str | None = None
    meeting_provider: str | None = None
    created_at: datetime
    updated_at: datetime


class MeetingDetailsPublic(CamelModel):
    meeting_link: str
    meeting_id: str
    meeting_provider: str
    start_time: time | None = None
    end_time: time | None = None
    duration_minutes: int | None = None
    is_demo: bool = False


class BookingCreated(CamelModel):
    booking: BookingPublic
    meeting_details: MeetingDetailsPublic | None = None


class BookingCreatedResponse(Envelope):
    data: BookingCreated


class BookingResponse(Envelope):
    data: BookingPublic


class UserBookingPublic(CamelModel):
    """Flattened booking + slot + listener row for a user's booking list."""

    id: UUID
    slot_id: UUID
    user_id: UUID
    listener_id: UUID | None = None
    listener_name: str
    date: date
    start_time: time
    end_time: time
    status: BookingStatus
    price: float
    meeting_link: str | None = None
    created_at: datetime
    updated_at: datetime


class UserBookingsResponse(Envelope):
    data: list[UserBookingPublic]
    pagination: Pagination
