"""
Meeting credential issuers.

The engine only needs an opaque join link and id per booking; no real
video-conferencing provider is called. `build_meeting_issuer` picks the
issuer from settings and fails fast on a bad configuration.
"""

import logging
import secrets
import time as _time
from dataclasses import dataclass
from datetime import date, time
from typing import Protocol

from app.core.config import Settings
from app.core.errors import ConfigError

logger = logging.getLogger(__name__)

DEMO_PROVIDER = "justhear_demo"
CUSTOM_PROVIDER = "custom"
DEMO_BASE_URL = "https://demo.justhear.com/meeting"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class TimeWindow:
    date: date
    start_time: time
    end_time: time
    duration_minutes: int


@dataclass(frozen=True)
class MeetingDetails:
    meeting_link: str
    meeting_id: str
    meeting_provider: str
    start_time: time | None = None
    end_time: time | None = None
    duration_minutes: int | None = None
    is_demo: bool = False


class MeetingCredentialIssuer(Protocol):
    async def issue(self, window: TimeWindow) -> MeetingDetails: ...


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
    return out or "0"


def generate_meeting_id(prefix: str = "demo") -> str:
    """e.g. demo-m2x9k1ab-4f7q: time-ordered part plus 4 random chars."""
    timestamp = _base36(int(_time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{prefix}-{timestamp}-{random_part}"


class LinkMeetingIssuer:
    """Builds `<base_url>/<meeting id>` links locally."""

    def __init__(self, base_url: str, provider: str, *, demo: bool = False):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.demo = demo

    async def issue(self, window: TimeWindow) -> MeetingDetails:
        meeting_id = generate_meeting_id("demo" if self.demo else "mtg")
        return MeetingDetails(
            meeting_link=f"{self.base_url}/{meeting_id}",
            meeting_id=meeting_id,
            meeting_provider=self.provider,
            start_time=window.start_time,
            end_time=window.end_time,
            duration_minutes=window.duration_minutes,
            is_demo=self.demo,
        )


def build_meeting_issuer(settings: Settings) -> MeetingCredentialIssuer:
    provider = settings.meeting_provider.strip().lower()
    if provider == DEMO_PROVIDER:
        return LinkMeetingIssuer(settings.meeting_base_url or DEMO_BASE_URL, DEMO_PROVIDER, demo=True)
    if provider == CUSTOM_PROVIDER:
        if not settings.meeting_base_url:
            raise ConfigError("MEETING_BASE_URL is required for the custom meeting provider")
        return LinkMeetingIssuer(settings.meeting_base_url, CUSTOM_PROVIDER)
    raise ConfigError(f"Unsupported meeting provider: {settings.meeting_provider!r}")
