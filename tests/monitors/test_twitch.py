"""Tests for the Twitch monitor.

Covers:
- stream_to_snapshot() with recorded Helix data
- App token fetched once and reused across calls
- A 401 from Helix refreshes the token once and retries
- Online on first sighting, Offline once the stream leaves the listing
- HTTP 429 maps to a quota error; a rejected token endpoint to an auth error
- is_enabled() requires both client id and secret

HTTP is mocked with respx.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
import respx

from stream_notify_crawler.core.domain import EventType, TrackedChannel
from stream_notify_crawler.monitors.twitch.config import TWITCH_API_BASE, TWITCH_TOKEN_URL
from stream_notify_crawler.monitors.twitch.monitor import TwitchMonitor, stream_to_snapshot

FIXTURES_DIR = Path(__file__).parent.parent / "fixtures" / "api_responses" / "twitch"

STREAMS_URL = f"{TWITCH_API_BASE}/streams"
CHANNEL = TrackedChannel(platform="twitch", external_channel_id="auronplay", display_title="auronplay")


def _streams_fixture() -> dict[str, Any]:
    return json.loads((FIXTURES_DIR / "streams_response.json").read_text(encoding="utf-8"))


def _token(value: str = "app-token-1") -> httpx.Response:
    return httpx.Response(200, json={"access_token": value, "expires_in": 5000000, "token_type": "bearer"})


@pytest_asyncio.fixture
async def monitor(state_store, quota, settings_factory, clock):
    settings = settings_factory(twitch_client_id="client-id", twitch_client_secret="client-secret")
    monitor = TwitchMonitor(state_store, quota, settings, clock=clock)
    await monitor.start()
    yield monitor
    await monitor.stop()


class TestStreamToSnapshot:
    def test_maps_helix_stream(self) -> None:
        snapshot = stream_to_snapshot(_streams_fixture()["data"][0], "auronplay")

        assert snapshot.broadcast_id == "41375541868"
        assert snapshot.viewer_count == 78365
        assert snapshot.start_time.isoformat() == "2026-10-17T10:04:46+00:00"
        assert snapshot.url == "https://twitch.tv/auronplay"
        assert snapshot.metadata["userLogin"] == "auronplay"
        assert snapshot.metadata["gameName"] == "Little Nightmares"


class TestPoll:
    @pytest.mark.asyncio
    @respx.mock
    async def test_online_then_offline(self, monitor) -> None:
        token = respx.post(TWITCH_TOKEN_URL).mock(return_value=_token())
        streams = respx.get(STREAMS_URL).mock(
            side_effect=[
                httpx.Response(200, json=_streams_fixture()),
                httpx.Response(200, json={"data": [], "pagination": {}}),
            ]
        )

        first = await monitor.poll_once([CHANNEL])
        second = await monitor.poll_once([CHANNEL])

        assert [e.event_type for e in first.events] == [EventType.ONLINE]
        assert first.events[0].snapshot.metadata["userLogin"] == "auronplay"
        assert [e.event_type for e in second.events] == [EventType.OFFLINE]
        assert token.call_count == 1
        request = streams.calls.last.request
        assert request.headers["Authorization"] == "Bearer app-token-1"
        assert request.headers["Client-Id"] == "client-id"
        assert request.url.params["user_login"] == "auronplay"

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_token_is_refreshed_once(self, monitor) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(side_effect=[_token("stale"), _token("fresh")])
        streams = respx.get(STREAMS_URL).mock(
            side_effect=[httpx.Response(401), httpx.Response(200, json=_streams_fixture())]
        )

        result = await monitor.poll_once([CHANNEL])

        assert len(result.events) == 1
        assert streams.calls.last.request.headers["Authorization"] == "Bearer fresh"
        assert monitor.auth_failed is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_throttles_cycle(self, monitor) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(return_value=_token())
        respx.get(STREAMS_URL).mock(return_value=httpx.Response(429, headers={"Retry-After": "12"}))

        result = await monitor.poll_once([CHANNEL])

        assert result.throttled_channels == ["auronplay"]
        assert monitor.quota_throttled is True

    @pytest.mark.asyncio
    @respx.mock
    async def test_bad_credentials_mark_auth_failure(self, monitor) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(400, json={"message": "invalid client"}))

        result = await monitor.poll_once([CHANNEL])

        assert result.failed_channels == ["auronplay"]
        assert monitor.auth_failed is True


class TestEnabled:
    def test_requires_client_id_and_secret(self, settings_factory) -> None:
        assert TwitchMonitor.is_enabled(settings_factory(twitch_client_id="id")) is False
        assert TwitchMonitor.is_enabled(settings_factory(twitch_client_id="id", twitch_client_secret="s"))
