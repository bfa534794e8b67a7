"""Tests for the Twitter/X Spaces monitor.

Covers:
- space_to_snapshot() state mapping
- A scheduled Space is stored silently, then goes live (Online) and ends
  (Offline)
- A "not found" error object counts toward the stale-channel streak
- HTTP 429 throttles the cycle
- The host's display name is used as the channel title
"""

from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
import respx

from stream_notify_crawler.core.domain import EventType, StreamStatus, TrackedChannel
from stream_notify_crawler.monitors.twitter_spaces.monitor import (
    TWITTER_API_BASE,
    TwitterSpacesMonitor,
    space_to_snapshot,
)

USER_ID = "2244994945"
CHANNEL = TrackedChannel(platform="twitter_spaces", external_channel_id=USER_ID, display_title="Developers")
SPACES_URL = f"{TWITTER_API_BASE}/spaces/by/creator_ids"


def _space(state: str, **extra) -> dict:
    space = {
        "id": "1DXxyRYNejbKM",
        "state": state,
        "title": "API office hours",
        "creator_id": USER_ID,
        "scheduled_start": "2026-10-17T15:00:00.000Z",
    }
    space.update(extra)
    return space


def _body(*spaces: dict) -> dict:
    return {
        "data": list(spaces),
        "includes": {"users": [{"id": USER_ID, "name": "Developers", "username": "XDevelopers"}]},
        "meta": {"result_count": len(spaces)},
    }


@pytest_asyncio.fixture
async def monitor(state_store, quota, settings_factory, clock):
    monitor = TwitterSpacesMonitor(state_store, quota, settings_factory(twitter_bearer_token="bearer"), clock=clock)
    await monitor.start()
    yield monitor
    await monitor.stop()


class TestSpaceToSnapshot:
    def test_states_map_to_stream_status(self) -> None:
        assert space_to_snapshot(_space("live"), USER_ID).status is StreamStatus.LIVE
        assert space_to_snapshot(_space("scheduled"), USER_ID).status is StreamStatus.SCHEDULED
        assert space_to_snapshot(_space("ended"), USER_ID).status is StreamStatus.ENDED

    def test_unknown_state_is_ignored(self) -> None:
        assert space_to_snapshot(_space("canceled"), USER_ID) is None

    def test_live_space_prefers_started_at(self) -> None:
        snapshot = space_to_snapshot(
            _space("live", started_at="2026-10-17T15:02:00.000Z", participant_count=311), USER_ID
        )
        assert snapshot.start_time.isoformat() == "2026-10-17T15:02:00+00:00"
        assert snapshot.viewer_count == 311
        assert snapshot.url == "https://twitter.com/i/spaces/1DXxyRYNejbKM"


class TestPoll:
    @pytest.mark.asyncio
    @respx.mock
    async def test_scheduled_live_ended(self, monitor) -> None:
        route = respx.get(SPACES_URL).mock(
            side_effect=[
                httpx.Response(200, json=_body(_space("scheduled"))),
                httpx.Response(200, json=_body(_space("live", participant_count=12))),
                httpx.Response(200, json=_body(_space("ended", ended_at="2026-10-17T16:00:00.000Z"))),
            ]
        )

        scheduled = await monitor.poll_once([CHANNEL])
        live = await monitor.poll_once([CHANNEL])
        ended = await monitor.poll_once([CHANNEL])

        assert scheduled.events == []
        assert [e.event_type for e in live.events] == [EventType.ONLINE]
        assert [e.event_type for e in ended.events] == [EventType.OFFLINE]
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer bearer"
        assert request.url.params["user_ids"] == USER_ID

    @pytest.mark.asyncio
    @respx.mock
    async def test_unknown_user_counts_toward_stale_streak(self, monitor) -> None:
        respx.get(SPACES_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "errors": [
                        {
                            "value": USER_ID,
                            "detail": f"Could not find user with ids: [{USER_ID}].",
                            "type": "https://api.twitter.com/2/problems/resource-not-found",
                        }
                    ]
                },
            )
        )

        result = await monitor.poll_once([CHANNEL])

        assert result.failed_channels == [USER_ID]
        assert monitor.stale_channels(1) == [USER_ID]

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limited(self, monitor) -> None:
        respx.get(SPACES_URL).mock(return_value=httpx.Response(429, headers={"x-rate-limit-reset": "0"}))

        result = await monitor.poll_once([CHANNEL])

        assert result.throttled_channels == [USER_ID]

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_spaces_is_quiet(self, monitor) -> None:
        respx.get(SPACES_URL).mock(return_value=httpx.Response(200, json={"meta": {"result_count": 0}}))

        result = await monitor.poll_once([CHANNEL])

        assert result.events == []
        assert result.failed_channels == []
