from datetime import date, datetime, time
from uuid import UUID

from pydantic import Field

from app.api.schemas.base import CamelModel, Envelope
from app.models.time_slot import SlotStatus


class CreateSlotRequest(CamelModel):
    # kept as raw strings so the inventory reports format errors itself
    date: str
    start_time: str
    end_time: str
    price: float | None = None
    listener_id: UUID | None = None


class BulkCreateSlotsRequest(CamelModel):
    slots: list[CreateSlotRequest]


class TransitionStatusRequest(CamelModel):
    status: SlotStatus


class AttachMeetingRequest(CamelModel):
    meeting_link: str = Field(min_length=1)
    meeting_id: str | None = None
    meeting_provider: str | None = None


class SlotPublic(CamelModel):
    id: UUID
    date: date
    start_time: time
    end_time: time
    duration_minutes: int
    status: SlotStatus
    listener_id: UUID | None = None
    price: float
    meeting_link: str | None = None
    meeting_id: str | None = None
    meeting_provider: str | None = None
    created_at: datetime
    updated_at: datetime


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    has_more: bool


class SlotResponse(Envelope):
    data: SlotPublic


class SlotListResponse(Envelope):
    data: list[SlotPublic]


class SlotCollectionResponse(Envelope):
    data: list[SlotPublic]
    total: int


class AvailableSlotsResponse(Envelope):
    data: list[SlotPublic]
    pagination: Pagination


class DeleteAllResponse(Envelope):
    count: int


class StatsPublic(CamelModel):
    total_slots: int
    available_slots: int
    booked_slots: int
    completed_slots: int
    cancelled_slots: int
    total_users: int


class StatsResponse(Envelope):
    data: StatsPublic
