"""Tests for the YouTube members-only marker probe.

Covers:
- Candidates {v1, v2, v3} where v1 and v2 have comments disabled and v3
  denies access: v3 becomes the marker after exactly three attempts
- A missing or empty members-only playlist dequeues the channel and
  notifies the owner
- Publicly readable comments on every candidate exhaust the set
- An unexpected error is inconclusive and clears the old marker
- Quota refusal defers the channel without spending a call
- Channel title refresh
- run_pass() only probes channels that need it

HTTP is mocked with respx; the repository and notifier are AsyncMocks.
"""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
import respx

from stream_notify_crawler.core.domain import MembershipProbeState
from stream_notify_crawler.core.quota import QuotaPolicy, QuotaTracker
from stream_notify_crawler.monitors.youtube.config import YOUTUBE_API_BASE_URL
from stream_notify_crawler.monitors.youtube.keys import ApiKeyPool
from stream_notify_crawler.monitors.youtube.membership import MembershipMarkerProbe, ProbeOutcome

CHANNEL_ID = "UCmembers0001"
PLAYLIST_URL = f"{YOUTUBE_API_BASE_URL}/playlistItems"
COMMENTS_URL = f"{YOUTUBE_API_BASE_URL}/commentThreads"
CHANNELS_URL = f"{YOUTUBE_API_BASE_URL}/channels"


class FirstItemRandom(random.Random):
    """Always picks index 0, so candidates are tried in playlist order."""

    def randrange(self, *args, **kwargs) -> int:  # type: ignore[override]
        return 0


def _playlist(*video_ids: str) -> dict:
    return {
        "items": [{"snippet": {"resourceId": {"videoId": vid}}} for vid in video_ids],
    }


def _error(status: int, reason: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": status, "errors": [{"reason": reason}]}})


def _comments(responses: dict[str, httpx.Response]):
    def _handler(request: httpx.Request) -> httpx.Response:
        return responses[request.url.params["videoId"]]

    return _handler


@pytest.fixture
def repository() -> AsyncMock:
    repo = AsyncMock()
    repo.list_probe_states = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def http_client():
    async with httpx.AsyncClient() as client:
        yield client


def _probe(http_client, repository, notifier, quota, clock) -> MembershipMarkerProbe:
    return MembershipMarkerProbe(
        http_client=http_client,
        key_pool=ApiKeyPool(["key-0001"], clock=clock),
        quota=quota,
        repository=repository,
        notifier=notifier,
        rng=FirstItemRandom(),
        clock=clock,
    )


class TestFindMarker:
    @pytest.mark.asyncio
    @respx.mock
    async def test_third_candidate_becomes_marker(self, http_client, repository, notifier, quota, clock) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist("v1", "v2", "v3")))
        comments = respx.get(COMMENTS_URL).mock(
            side_effect=_comments(
                {
                    "v1": _error(403, "commentsDisabled"),
                    "v2": _error(403, "commentsDisabled"),
                    "v3": _error(403, "forbidden"),
                }
            )
        )
        state = MembershipProbeState(CHANNEL_ID)

        report = await _probe(http_client, repository, notifier, quota, clock).find_marker(state)

        assert report.outcome is ProbeOutcome.VERIFIED
        assert report.marker_video_id == "v3"
        assert report.attempts == 3
        assert comments.call_count == 3
        assert state.verified_marker_video_id == "v3"

    @pytest.mark.asyncio
    @respx.mock
    async def test_public_comments_exhaust_candidates(self, http_client, repository, notifier, quota, clock) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist("v1", "v2")))
        respx.get(COMMENTS_URL).mock(return_value=httpx.Response(200, json={"items": []}))

        report = await _probe(http_client, repository, notifier, quota, clock).find_marker(
            MembershipProbeState(CHANNEL_ID)
        )

        assert report.outcome is ProbeOutcome.EXHAUSTED
        assert report.attempts == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_unexpected_error_is_inconclusive(self, http_client, repository, notifier, quota, clock) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist("v1", "v2")))
        respx.get(COMMENTS_URL).mock(return_value=_error(400, "badRequest"))
        state = MembershipProbeState(CHANNEL_ID, verified_marker_video_id="stale")

        report = await _probe(http_client, repository, notifier, quota, clock).find_marker(state)

        assert report.outcome is ProbeOutcome.INCONCLUSIVE
        assert report.attempts == 1
        assert state.verified_marker_video_id == ""

    @pytest.mark.asyncio
    @respx.mock
    async def test_quota_refusal_defers(self, http_client, repository, notifier, clock) -> None:
        quota = QuotaTracker({"youtube": QuotaPolicy(limit_units=1)}, clock=clock)
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist("v1")))
        comments = respx.get(COMMENTS_URL).mock(return_value=_error(403, "forbidden"))

        report = await _probe(http_client, repository, notifier, quota, clock).find_marker(
            MembershipProbeState(CHANNEL_ID)
        )

        assert report.outcome is ProbeOutcome.DEFERRED
        assert comments.call_count == 0


class TestProbeChannel:
    @pytest.mark.asyncio
    @respx.mock
    async def test_missing_playlist_dequeues_and_notifies(self, http_client, repository, notifier, quota, clock) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=_error(404, "playlistNotFound"))

        report = await _probe(http_client, repository, notifier, quota, clock).probe_channel(
            MembershipProbeState(CHANNEL_ID)
        )

        assert report.outcome is ProbeOutcome.NO_CONTENT
        repository.remove_probe_channel.assert_awaited_once_with(CHANNEL_ID)
        notifier.no_member_content.assert_awaited_once_with(CHANNEL_ID)
        repository.save_probe_state.assert_not_awaited()

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_playlist_is_no_content(self, http_client, repository, notifier, quota, clock) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist()))

        report = await _probe(http_client, repository, notifier, quota, clock).probe_channel(
            MembershipProbeState(CHANNEL_ID)
        )

        assert report.outcome is ProbeOutcome.NO_CONTENT

    @pytest.mark.asyncio
    @respx.mock
    async def test_verified_marker_saved_and_title_refreshed(
        self, http_client, repository, notifier, quota, clock
    ) -> None:
        respx.get(PLAYLIST_URL).mock(return_value=httpx.Response(200, json=_playlist("v1")))
        respx.get(COMMENTS_URL).mock(return_value=_error(403, "forbidden"))
        respx.get(CHANNELS_URL).mock(
            return_value=httpx.Response(200, json={"items": [{"snippet": {"title": "Members Club"}}]})
        )
        state = MembershipProbeState(CHANNEL_ID, channel_title="Old Club")

        report = await _probe(http_client, repository, notifier, quota, clock).probe_channel(state)

        assert report.outcome is ProbeOutcome.VERIFIED
        assert report.title_changed is True
        notifier.marker_verified.assert_awaited_once_with(CHANNEL_ID, "v1")
        notifier.channel_title_changed.assert_awaited_once_with(CHANNEL_ID, "Old Club", "Members Club")
        saved = repository.save_probe_state.await_args.args[0]
        assert saved.verified_marker_video_id == "v1"
        assert saved.channel_title == "Members Club"
        assert saved.last_checked_at == clock.now


class TestRunPass:
    @pytest.mark.asyncio
    @respx.mock
    async def test_only_channels_needing_a_probe_are_visited(
        self, http_client, repository, notifier, quota, clock
    ) -> None:
        repository.list_probe_states = AsyncMock(
            return_value=[
                MembershipProbeState("UCdone", verified_marker_video_id="m1", channel_title="Done"),
                MembershipProbeState(CHANNEL_ID, verified_marker_video_id="m2"),
            ]
        )
        channels = respx.get(CHANNELS_URL).mock(
            return_value=httpx.Response(200, json={"items": [{"snippet": {"title": "Members Club"}}]})
        )

        reports = await _probe(http_client, repository, notifier, quota, clock).run_pass()

        assert [r.channel_id for r in reports] == [CHANNEL_ID]
        assert reports[0].outcome is ProbeOutcome.VERIFIED
        assert channels.call_count == 1
