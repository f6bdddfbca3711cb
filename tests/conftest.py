import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test-import.db")
os.environ.setdefault("ENV", "test")

from datetime import date, timedelta  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from app.core.config import Settings  # noqa: E402
from app.core.db import create_engine_for, create_session_maker, init_db  # noqa: E402
from app.models import User, UserRole  # noqa: E402
from app.services.cache_service import CacheService  # noqa: E402
from app.services.meeting_service import MeetingDetails, TimeWindow  # noqa: E402
from app.services.registry import build_services  # noqa: E402
from app.services.retry import RetryPolicy  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIssuer:
    """Deterministic meeting issuer; set `fail` to make issuance raise, `delay` to make it slow."""

    def __init__(self):
        self.fail = False
        self.delay = 0.0
        self.calls = 0

    async def issue(self, window: TimeWindow) -> MeetingDetails:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("meeting provider down")
        meeting_id = f"test-{self.calls}"
        return MeetingDetails(
            meeting_link=f"https://meet.example.test/{meeting_id}",
            meeting_id=meeting_id,
            meeting_provider="test",
            start_time=window.start_time,
            end_time=window.end_time,
            duration_minutes=window.duration_minutes,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def tomorrow() -> date:
    return date.today() + timedelta(days=1)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", _env_file=None)


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = create_engine_for(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def services(test_settings, session_maker, clock, issuer):
    return build_services(
        test_settings,
        session_maker,
        cache=CacheService(default_ttl=test_settings.cache_ttl_seconds, clock=clock),
        issuer=issuer,
        retry=RetryPolicy(max_retries=2, base_delay=0),
    )


@pytest.fixture
def make_user(session_maker):
    async def _make(username: str, role: UserRole = UserRole.USER, email: str | None = None, **kw) -> User:
        user = User(username=username, role=role, email=email, **kw)
        async with session_maker() as session:
            session.add(user)
            await session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(services):
    from app.main import app

    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
