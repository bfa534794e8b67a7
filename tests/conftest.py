"""Shared pytest fixtures for the crawler tests.

Fixture summary
---------------
settings        — ``Settings`` with fast retries and every platform disabled.
settings_factory — builds ``Settings`` with per-test overrides.
clock           — ``FakeClock`` starting at 2026-10-17 12:00 UTC.
state_store     — empty ``StreamStateStore``.
quota           — ``QuotaTracker`` with no policies (admits everything).
redis_mock      — ``AsyncMock`` standing in for ``redis.asyncio.Redis``.
publisher       — ``EventPublisher`` wrapping ``redis_mock``.

No test needs a live database, Redis instance or network connection.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Settings() requires DATABASE_URL; set it before application modules load.

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from stream_notify_crawler.config.settings import Settings, get_settings  # noqa: E402
from stream_notify_crawler.core.event_bus import EventPublisher  # noqa: E402
from stream_notify_crawler.core.quota import QuotaTracker  # noqa: E402
from stream_notify_crawler.core.state_store import StreamStateStore  # noqa: E402

get_settings.cache_clear()


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides: object) -> Settings:
    """Build isolated settings that ignore the developer's .env file."""
    values: dict[str, object] = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "max_retry_attempts": 2,
        "retry_delay_seconds": 0,
        "poll_interval_seconds": 30,
        "youtube_api_keys": [],
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def state_store() -> StreamStateStore:
    return StreamStateStore()


@pytest.fixture
def quota(clock: FakeClock) -> QuotaTracker:
    return QuotaTracker({}, clock=clock)


@pytest.fixture
def redis_mock() -> AsyncMock:
    client = AsyncMock()
    client.publish = AsyncMock(return_value=1)
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock(return_value=None)
    return client


@pytest.fixture
def publisher(redis_mock: AsyncMock) -> EventPublisher:
    return EventPublisher(redis_mock, prefix="test:", publish_timeout=1.0, unhealthy_after=3)


@pytest.fixture
def settings_factory():  # type: ignore[no-untyped-def]
    """Return :func:`make_settings` so tests can override individual fields."""
    return make_settings
