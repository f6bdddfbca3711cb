import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_bookings, get_inventory
from app.api.schemas.slot import (
    AttachMeetingRequest,
    AvailableSlotsResponse,
    BulkCreateSlotsRequest,
    CreateSlotRequest,
    DeleteAllResponse,
    Pagination,
    SlotCollectionResponse,
    SlotListResponse,
    SlotPublic,
    SlotResponse,
    TransitionStatusRequest,
)
from app.models.time_slot import SlotStatus
from app.services.booking_service import BookingOrchestrator
from app.services.slot_service import SlotInventory

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("", response_model=SlotCollectionResponse)
async def list_slots(
    slot_date: date | None = Query(None, alias="date"),
    listener_id: UUID | None = Query(None, alias="listenerId"),
    slot_status: SlotStatus | None = Query(None, alias="status"),
    inventory: SlotInventory = Depends(get_inventory),
) -> SlotCollectionResponse:
    """Every slot regardless of status, for the admin slot manager."""
    slots = await inventory.list_slots(slot_date=slot_date, listener_id=listener_id, status=slot_status)
    return SlotCollectionResponse(data=[SlotPublic.model_validate(s) for s in slots], total=len(slots))


@router.get("/available", response_model=AvailableSlotsResponse)
async def available_slots(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    from_date: date | None = Query(None, alias="fromDate"),
    to_date: date | None = Query(None, alias="toDate"),
    listener_id: UUID | None = Query(None, alias="listenerId"),
    inventory: SlotInventory = Depends(get_inventory),
) -> AvailableSlotsResponse:
    """Created slots from today (or fromDate), ordered by date and start time."""
    result = await inventory.list_available(
        page=page, limit=limit, from_date=from_date, to_date=to_date, listener_id=listener_id
    )
    return AvailableSlotsResponse(
        data=[SlotPublic.model_validate(s) for s in result.slots],
        pagination=Pagination(page=result.page, limit=result.limit, total=result.total, has_more=result.has_more),
    )


@router.post("", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    body: CreateSlotRequest,
    inventory: SlotInventory = Depends(get_inventory),
) -> SlotResponse:
    slot = await inventory.create_slot(body.date, body.start_time, body.end_time, body.listener_id, body.price)
    return SlotResponse(data=SlotPublic.model_validate(slot), message="Slot created successfully")


@router.post("/bulk", response_model=SlotListResponse, status_code=status.HTTP_201_CREATED)
async def bulk_create_slots(
    body: BulkCreateSlotsRequest,
    inventory: SlotInventory = Depends(get_inventory),
) -> SlotListResponse:
    slots = await inventory.bulk_create([item.model_dump() for item in body.slots])
    return SlotListResponse(
        data=[SlotPublic.model_validate(s) for s in slots],
        message=f"Created {len(slots)} slots",
    )


@router.get("/{slot_id}", response_model=SlotResponse)
async def get_slot(slot_id: UUID, inventory: SlotInventory = Depends(get_inventory)) -> SlotResponse:
    slot = await inventory.get_slot(slot_id)
    return SlotResponse(data=SlotPublic.model_validate(slot))


@router.patch("/{slot_id}/status", response_model=SlotResponse)
async def transition_slot_status(
    slot_id: UUID,
    body: TransitionStatusRequest,
    inventory: SlotInventory = Depends(get_inventory),
) -> SlotResponse:
    slot = await inventory.transition_status(slot_id, body.status)
    return SlotResponse(data=SlotPublic.model_validate(slot), message=f"Slot status updated to {body.status.value}")


@router.post("/{slot_id}/complete", response_model=SlotResponse)
async def complete_slot(slot_id: UUID, bookings: BookingOrchestrator = Depends(get_bookings)) -> SlotResponse:
    slot = await bookings.complete_slot(slot_id)
    return SlotResponse(data=SlotPublic.model_validate(slot), message="Slot marked as completed")


@router.put("/{slot_id}/meeting", response_model=SlotResponse)
async def attach_meeting(
    slot_id: UUID,
    body: AttachMeetingRequest,
    inventory: SlotInventory = Depends(get_inventory),
) -> SlotResponse:
    slot = await inventory.attach_meeting(slot_id, body.meeting_link, body.meeting_id, body.meeting_provider)
    return SlotResponse(data=SlotPublic.model_validate(slot), message="Meeting link attached")


@router.delete("/{slot_id}", response_model=SlotResponse)
async def delete_slot(slot_id: UUID, inventory: SlotInventory = Depends(get_inventory)) -> SlotResponse:
    slot = await inventory.delete_slot(slot_id)
    return SlotResponse(data=SlotPublic.model_validate(slot), message="Slot deleted successfully")


@router.delete("", response_model=DeleteAllResponse)
async def delete_all_slots(inventory: SlotInventory = Depends(get_inventory)) -> DeleteAllResponse:
    count = await inventory.delete_all()
    return DeleteAllResponse(count=count, message=f"Deleted {count} slots")
