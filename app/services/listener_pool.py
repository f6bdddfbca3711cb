import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User, UserRole
from app.services.query_runner import QueryRunner

logger = logging.getLogger(__name__)


async def select_active_listeners(session: AsyncSession) -> list[User]:
    result = await session.execute(
        select(User)
        .where(User.role == UserRole.LISTENER, User.is_active.is_(True))
        .order_by(User.username)
    )
    return list(result.scalars().all())


class ListenerPool:
    """Active listeners eligible for assignment, ordered by username."""

    def __init__(self, runner: QueryRunner, ttl: float = 300):
        self.runner = runner
        self.ttl = ttl

    async def list_active(self) -> list[User]:
        return await self.runner.read("users.listeners", select_active_listeners, cache=True, ttl=self.ttl)
