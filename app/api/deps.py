from fastapi import Request

from app.services.booking_service import BookingOrchestrator
from app.services.registry import EngineServices
from app.services.slot_service import SlotInventory


def get_services(request: Request) -> EngineServices:
    """Engine services built in the app lifespan (see app.main)."""
    return request.app.state.services


def get_inventory(request: Request) -> SlotInventory:
    return get_services(request).inventory


def get_bookings(request: Request) -> BookingOrchestrator:
    return get_services(request).bookings
