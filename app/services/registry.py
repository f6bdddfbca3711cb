from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.services.booking_service import BookingOrchestrator
from app.services.cache_service import CacheService
from app.services.listener_pool import ListenerPool
from app.services.meeting_service import MeetingCredentialIssuer, build_meeting_issuer
from app.services.persistence_gateway import PersistenceGateway
from app.services.query_runner import QueryRunner
from app.services.retry import RetryPolicy
from app.services.slot_service import SlotInventory


@dataclass
class EngineServices:
    """Everything the HTTP surface needs, built once per process."""

    cache: CacheService
    gateway: PersistenceGateway
    runner: QueryRunner
    inventory: SlotInventory
    listener_pool: ListenerPool
    bookings: BookingOrchestrator


def build_services(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    cache: CacheService | None = None,
    issuer: MeetingCredentialIssuer | None = None,
    retry: RetryPolicy | None = None,
) -> EngineServices:
    cache = cache or CacheService(default_ttl=settings.cache_ttl_seconds)
    gateway = PersistenceGateway(session_maker, default_timeout=settings.db_query_timeout_seconds)
    runner = QueryRunner(
        gateway,
        cache,
        retry=retry or RetryPolicy(settings.db_max_retries, settings.db_retry_base_delay_seconds),
        slow_query_threshold_ms=settings.slow_query_threshold_ms,
    )
    inventory = SlotInventory(
        runner,
        available_ttl=settings.cache_ttl_seconds,
        default_price=settings.slot_default_price,
        page_limit_default=settings.slots_page_limit_default,
        page_limit_max=settings.slots_page_limit_max,
    )
    listener_pool = ListenerPool(runner, ttl=settings.cache_ttl_seconds)
    bookings = BookingOrchestrator(
        runner,
        inventory,
        issuer or build_meeting_issuer(settings),
        listener_pool,
        meeting_timeout=settings.meeting_issue_timeout_seconds,
        bookings_ttl=settings.cache_ttl_seconds,
    )
    return EngineServices(
        cache=cache,
        gateway=gateway,
        runner=runner,
        inventory=inventory,
        listener_pool=listener_pool,
        bookings=bookings,
    )
