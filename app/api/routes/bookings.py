import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from app.api.deps import get_bookings
from app.api.schemas.booking import (
    BookingCreated,
    BookingCreatedResponse,
    BookingPublic,
    BookingResponse,
    CreateBookingRequest,
    MeetingDetailsPublic,
    UserBookingPublic,
    UserBookingsResponse,
)
from app.api.schemas.slot import Pagination
from app.services.booking_service import BookingOrchestrator, BookingResult, BookingView
from app.services.email_service import send_booking_confirmation_email, send_listener_assignment_email

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])

ANONYMOUS_LISTENER = "Anonymous Listener"


def _schedule_notifications(background_tasks: BackgroundTasks, result: BookingResult) -> None:
    """Confirmation to the user and a heads-up to the assigned listener (sync SMTP)."""
    slot = result.slot
    link = result.meeting_details.meeting_link if result.meeting_details else None
    if result.user.email:
        background_tasks.add_task(
            send_booking_confirmation_email,
            to_email=result.user.email,
            username=result.user.username,
            session_date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            meeting_link=link,
        )
    if result.listener is not None and result.listener.email:
        background_tasks.add_task(
            send_listener_assignment_email,
            to_email=result.listener.email,
            listener_name=result.listener.username,
            session_date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            meeting_link=link,
        )


def _to_user_booking(view: BookingView) -> UserBookingPublic:
    b, s = view.booking, view.slot
    return UserBookingPublic(
        id=b.id,
        slot_id=b.slot_id,
        user_id=b.user_id,
        listener_id=s.listener_id,
        listener_name=view.listener.username if view.listener else ANONYMOUS_LISTENER,
        date=s.date,
        start_time=s.start_time,
        end_time=s.end_time,
        status=b.status,
        price=s.price,
        meeting_link=b.meeting_link,
        created_at=b.created_at,
        updated_at=b.updated_at,
    )


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: CreateBookingRequest,
    background_tasks: BackgroundTasks,
    bookings: BookingOrchestrator = Depends(get_bookings),
) -> BookingCreatedResponse:
    result = await bookings.create_booking(body.user_id, body.slot_id)
    _schedule_notifications(background_tasks, result)
    meeting = result.meeting_details
    return BookingCreatedResponse(
        data=BookingCreated(
            booking=BookingPublic.model_validate(result.booking),
            meeting_details=MeetingDetailsPublic.model_validate(meeting) if meeting else None,
        ),
        message="Booking created successfully",
    )


@router.get("/user/{user_id}", response_model=UserBookingsResponse)
async def list_user_bookings(
    user_id: UUID,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    bookings: BookingOrchestrator = Depends(get_bookings),
) -> UserBookingsResponse:
    result = await bookings.list_user_bookings(user_id, page=page, limit=limit)
    return UserBookingsResponse(
        data=[_to_user_booking(v) for v in result.bookings],
        pagination=Pagination(page=result.page, limit=result.limit, total=result.total, has_more=result.has_more),
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: UUID, bookings: BookingOrchestrator = Depends(get_bookings)) -> BookingResponse:
    booking = await bookings.get_booking(booking_id)
    return BookingResponse(data=BookingPublic.model_validate(booking))


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(booking_id: UUID, bookings: BookingOrchestrator = Depends(get_bookings)) -> BookingResponse:
    booking = await bookings.cancel_booking(booking_id)
    return BookingResponse(data=BookingPublic.model_validate(booking), message="Booking cancelled")


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(booking_id: UUID, bookings: BookingOrchestrator = Depends(get_bookings)) -> BookingResponse:
    booking = await bookings.complete_booking(booking_id)
    return BookingResponse(data=BookingPublic.model_validate(booking), message="Booking completed")
