import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[AsyncSession], Awaitable[T]]


class PersistenceGateway:
    """Runs one unit of store work in its own session and transaction.

    No business logic lives here: callers pass a coroutine function that
    issues parameterized statements against the session. The transaction
    commits when `work` returns and rolls back when it raises. Every call
    honors a deadline; running past it is reported as a transient error.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], default_timeout: float = 10.0):
        self._session_maker = session_maker
        self.default_timeout = default_timeout

    async def execute(self, operation: str, work: Work[T], *, timeout: float | None = None) -> T:
        deadline = self.default_timeout if timeout is None else timeout
        try:
            async with asyncio.timeout(deadline):
                async with self._session_maker() as session:
                    async with session.begin():
                        return await work(session)
        except TimeoutError as e:
            raise TransientStoreError(
                f"{operation} exceeded {deadline}s deadline",
                code="ETIMEDOUT",
                operation=operation,
            ) from e

    async def ping(self) -> bool:
        async def _select_one(session: AsyncSession) -> bool:
            result = await session.execute(text("SELECT 1"))
            return result.scalar_one() == 1

        return await self.execute("ping", _select_one)
