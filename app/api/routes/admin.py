from fastapi import APIRouter, Depends

from app.api.deps import get_inventory
from app.api.schemas.slot import StatsPublic, StatsResponse
from app.services.slot_service import SlotInventory

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/stats", response_model=StatsResponse)
async def dashboard_stats(inventory: SlotInventory = Depends(get_inventory)) -> StatsResponse:
    stats = await inventory.stats()
    return StatsResponse(data=StatsPublic(**stats))
