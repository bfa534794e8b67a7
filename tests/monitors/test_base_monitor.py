"""Tests for the transition detection shared by every platform monitor.

Covers:
- First sighting of a live broadcast emits exactly one Online event
- A viewer-count change on a live broadcast emits exactly one Updated event
- A live broadcast that disappears emits one Offline event and the ended
  record can never go live again
- Polling an unchanged channel twice emits nothing the second time
- Scheduled → Live, absent → Scheduled and absent → Ended
- Channel title changes emit ChannelUpdated
- Transient errors are retried; auth / not-found / quota errors are not
- Quota refusal skips the channel without a network call
- A failing channel never aborts the rest of the cycle

These tests drive a scripted monitor and need no network connection.
"""

from __future__ import annotations

from collections import deque
from typing import Any

import pytest

from stream_notify_crawler.core.domain import (
    BroadcastSnapshot,
    EventType,
    StreamRecord,
    StreamStatus,
    TrackedChannel,
)
from stream_notify_crawler.core.exceptions import (
    PlatformAuthError,
    PlatformNotFoundError,
    PlatformQuotaError,
    PlatformTransientError,
)
from stream_notify_crawler.core.quota import QuotaPolicy, QuotaTracker
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor

CHANNEL = TrackedChannel(platform="twitch", external_channel_id="alice", display_title="Alice")


class ScriptedMonitor(PlatformMonitor):
    """Returns queued fetch results (or raises queued exceptions) per channel."""

    platform_name = "twitch"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("sleep", self._no_sleep)
        super().__init__(*args, **kwargs)
        self.script: dict[str, deque] = {}
        self.calls: list[str] = []

    @staticmethod
    async def _no_sleep(_seconds: float) -> None:
        return None

    def queue(self, channel_id: str, *outcomes: ChannelFetch | Exception) -> None:
        self.script.setdefault(channel_id, deque()).extend(outcomes)

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        self.calls.append(channel.external_channel_id)
        outcome = self.script[channel.external_channel_id].popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _live(viewers: int = 120, title: str = "Speedrun", broadcast_id: str = "4012") -> ChannelFetch:
    return ChannelFetch(
        broadcasts=[
            BroadcastSnapshot(
                broadcast_id=broadcast_id,
                channel_id="alice",
                status=StreamStatus.LIVE,
                title=title,
                viewer_count=viewers,
            )
        ],
        channel_title="Alice",
    )


def _snapshot(status: StreamStatus, broadcast_id: str = "4012") -> ChannelFetch:
    return ChannelFetch(
        broadcasts=[BroadcastSnapshot(broadcast_id=broadcast_id, channel_id="alice", status=status, title="Premiere")]
    )


@pytest.fixture
def monitor(state_store, quota, settings, clock) -> ScriptedMonitor:
    return ScriptedMonitor(state_store, quota, settings, clock=clock)


def _types(result) -> list[EventType]:
    return [event.event_type for event in result.events]


# ---------------------------------------------------------------------------
# Transition scenarios
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.asyncio
    async def test_first_live_sighting_emits_online(self, monitor, state_store) -> None:
        monitor.queue("alice", _live())

        result = await monitor.poll_once([CHANNEL])

        assert _types(result) == [EventType.ONLINE]
        assert result.events[0].snapshot.status is StreamStatus.LIVE
        assert result.events[0].stream_key == "twitch:4012"
        assert state_store.get("twitch:4012").status is StreamStatus.LIVE
        assert [r.stream_key for r in result.records] == ["twitch:4012"]

    @pytest.mark.asyncio
    async def test_viewer_change_emits_single_updated(self, monitor) -> None:
        monitor.queue("alice", _live(viewers=120), _live(viewers=340))
        await monitor.poll_once([CHANNEL])

        result = await monitor.poll_once([CHANNEL])

        assert _types(result) == [EventType.UPDATED]
        assert result.events[0].previous.viewer_count == 120
        assert result.events[0].snapshot.viewer_count == 340

    @pytest.mark.asyncio
    async def test_disappearing_stream_emits_offline_and_stays_ended(self, monitor, state_store, clock) -> None:
        monitor.queue("alice", _live(), ChannelFetch(channel_title="Alice"), _live())
        await monitor.poll_once([CHANNEL])

        clock.advance(minutes=5)
        result = await monitor.poll_once([CHANNEL])

        assert _types(result) == [EventType.OFFLINE]
        ended = state_store.get("twitch:4012")
        assert ended.status is StreamStatus.ENDED
        assert ended.end_time == clock.now

        again = await monitor.poll_once([CHANNEL])
        assert again.events == []
        assert state_store.get("twitch:4012").status is StreamStatus.ENDED
        assert not await state_store.compare_and_set(
            "twitch:4012",
            StreamStatus.ENDED,
            StreamRecord("twitch:4012", "twitch", "alice", "Speedrun", StreamStatus.LIVE),
        )

    @pytest.mark.asyncio
    async def test_unchanged_poll_is_silent(self, monitor) -> None:
        monitor.queue("alice", _live(), _live())
        await monitor.poll_once([CHANNEL])

        result = await monitor.poll_once([CHANNEL])

        assert result.events == []
        assert result.records == []

    @pytest.mark.asyncio
    async def test_scheduled_then_live(self, monitor) -> None:
        monitor.queue("alice", _snapshot(StreamStatus.SCHEDULED), _snapshot(StreamStatus.LIVE))

        first = await monitor.poll_once([CHANNEL])
        second = await monitor.poll_once([CHANNEL])

        assert first.events == []
        assert len(first.records) == 1
        assert _types(second) == [EventType.ONLINE]
        assert second.events[0].snapshot.start_time is not None

    @pytest.mark.asyncio
    async def test_first_sighting_already_ended_is_stored_silently(self, monitor, state_store) -> None:
        monitor.queue("alice", _snapshot(StreamStatus.ENDED))

        result = await monitor.poll_once([CHANNEL])

        assert result.events == []
        assert state_store.get("twitch:4012").status is StreamStatus.ENDED

    @pytest.mark.asyncio
    async def test_live_reported_as_upcoming_keeps_live(self, monitor, state_store) -> None:
        monitor.queue("alice", _snapshot(StreamStatus.LIVE), _snapshot(StreamStatus.SCHEDULED))
        await monitor.poll_once([CHANNEL])

        result = await monitor.poll_once([CHANNEL])

        assert result.events == []
        assert state_store.get("twitch:4012").status is StreamStatus.LIVE

    @pytest.mark.asyncio
    async def test_viewer_threshold_suppresses_small_changes(self, state_store, quota, settings_factory, clock) -> None:
        monitor = ScriptedMonitor(state_store, quota, settings_factory(updated_viewer_threshold=50), clock=clock)
        monitor.queue("alice", _live(viewers=100), _live(viewers=120), _live(viewers=200))
        await monitor.poll_once([CHANNEL])

        small = await monitor.poll_once([CHANNEL])
        large = await monitor.poll_once([CHANNEL])

        assert small.events == []
        assert _types(large) == [EventType.UPDATED]

    @pytest.mark.asyncio
    async def test_channel_title_change_emits_channel_updated(self, monitor) -> None:
        renamed = ChannelFetch(channel_title="Alice Speedruns")
        monitor.queue("alice", ChannelFetch(channel_title="Alice"), renamed)

        first = await monitor.poll_once([CHANNEL])
        second = await monitor.poll_once([CHANNEL])

        assert first.events == []
        assert _types(second) == [EventType.CHANNEL_UPDATED]
        metadata = second.events[0].snapshot.metadata
        assert metadata == {"channelTitle": "Alice Speedruns", "previousChannelTitle": "Alice"}

    @pytest.mark.asyncio
    async def test_persisted_title_is_the_baseline_after_restart(self, state_store, quota, settings, clock) -> None:
        restarted = ScriptedMonitor(state_store, quota, settings, clock=clock)
        persisted = TrackedChannel(platform="twitch", external_channel_id="alice", display_title="Alice Speedruns")
        restarted.queue("alice", ChannelFetch(channel_title="Alice Speedruns"))

        result = await restarted.poll_once([persisted])

        assert result.events == []


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, monitor) -> None:
        monitor.queue("alice", PlatformTransientError("HTTP 503"), _live())

        result = await monitor.poll_once([CHANNEL])

        assert monitor.calls == ["alice", "alice"]
        assert _types(result) == [EventType.ONLINE]
        assert monitor.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_transient_error_gives_up_after_retries(self, monitor) -> None:
        errors = [PlatformTransientError("HTTP 503") for _ in range(3)]
        monitor.queue("alice", *errors)

        result = await monitor.poll_once([CHANNEL])

        assert len(monitor.calls) == 3
        assert result.failed_channels == ["alice"]
        assert monitor.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self, monitor) -> None:
        monitor.queue("alice", PlatformAuthError("HTTP 401"))

        result = await monitor.poll_once([CHANNEL])

        assert monitor.calls == ["alice"]
        assert result.failed_channels == ["alice"]
        assert monitor.auth_failed is True

    @pytest.mark.asyncio
    async def test_not_found_builds_stale_streak(self, monitor, settings) -> None:
        for _ in range(settings.stale_channel_threshold):
            monitor.queue("alice", PlatformNotFoundError("HTTP 404"))
            await monitor.poll_once([CHANNEL])

        assert monitor.stale_channels(settings.stale_channel_threshold) == ["alice"]

        monitor.queue("alice", _live())
        await monitor.poll_once([CHANNEL])
        assert monitor.stale_channels(1) == []

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_abort_others(self, monitor) -> None:
        bob = TrackedChannel(platform="twitch", external_channel_id="bob")
        monitor.queue("alice", RuntimeError("unexpected payload"))
        monitor.queue("bob", _live(broadcast_id="9001"))

        result = await monitor.poll_once([CHANNEL, bob])

        assert result.failed_channels == ["alice"]
        assert [e.stream_key for e in result.events] == ["twitch:9001"]
        assert monitor.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_platform_quota_error_ends_cycle(self, monitor) -> None:
        bob = TrackedChannel(platform="twitch", external_channel_id="bob")
        monitor.queue("alice", PlatformQuotaError("HTTP 429", retry_after=30))

        result = await monitor.poll_once([CHANNEL, bob])

        assert monitor.calls == ["alice"]
        assert result.throttled_channels == ["alice", "bob"]
        assert monitor.quota_throttled is True

    @pytest.mark.asyncio
    async def test_quota_refusal_makes_no_call(self, state_store, settings, clock) -> None:
        quota = QuotaTracker({"twitch": QuotaPolicy(limit_units=1, window_seconds=60)}, clock=clock)
        monitor = ScriptedMonitor(state_store, quota, settings, clock=clock)
        bob = TrackedChannel(platform="twitch", external_channel_id="bob")
        monitor.queue("alice", _live())

        result = await monitor.poll_once([CHANNEL, bob])

        assert monitor.calls == ["alice"]
        assert result.throttled_channels == ["bob"]
        assert monitor.quota_throttled is True
        assert monitor.last_success_at == clock.now


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop_flip_running(self, monitor, clock) -> None:
        await monitor.start()
        assert monitor.is_running is True
        assert monitor.started_at == clock.now

        await monitor.stop()
        assert monitor.is_running is False
