"""Unit tests for MaintenanceRunner."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from stream_notify_crawler.core.domain import StreamRecord, StreamStatus, TrackedChannel
from stream_notify_crawler.core.exceptions import PersistenceError, PlatformNotFoundError
from stream_notify_crawler.core.quota import QuotaPolicy, QuotaTracker
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
from stream_notify_crawler.workers.maintenance import MaintenanceRunner


class _VanishedChannelMonitor(PlatformMonitor):
    platform_name = "twitcasting"

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        if channel.external_channel_id == "gone":
            raise PlatformNotFoundError("no such user", platform=self.platform_name, status_code=404)
        return ChannelFetch()


@pytest.fixture
def repository() -> AsyncMock:
    repo = AsyncMock()
    repo.deactivate_channel = AsyncMock(return_value=True)
    return repo


@pytest.fixture
def monitor(state_store, quota, settings, clock) -> _VanishedChannelMonitor:
    return _VanishedChannelMonitor(state_store, quota, settings, clock=clock)


def _runner(settings, quota, state_store, repository, publisher, monitor, clock, probe=None) -> MaintenanceRunner:
    return MaintenanceRunner(
        settings=settings,
        quota=quota,
        state_store=state_store,
        repository=repository,
        publisher=publisher,
        monitors=lambda: {monitor.platform_name: monitor},
        probe=lambda: probe,
        clock=clock,
    )


async def _poll_times(monitor: PlatformMonitor, times: int) -> None:
    channels = [
        TrackedChannel("twitcasting", "gone"),
        TrackedChannel("twitcasting", "still_here"),
    ]
    for _ in range(times):
        await monitor.poll_once(channels)


class TestStaleChannels:
    @pytest.mark.asyncio
    async def test_channel_deactivated_after_threshold(
        self, settings, quota, state_store, repository, publisher, monitor, clock
    ) -> None:
        runner = _runner(settings, quota, state_store, repository, publisher, monitor, clock)

        await _poll_times(monitor, settings.stale_channel_threshold - 1)
        assert await runner.cleanup_stale_channels() == 0

        await _poll_times(monitor, 1)
        assert await runner.cleanup_stale_channels() == 1
        repository.deactivate_channel.assert_awaited_once_with("twitcasting", "gone")
        assert monitor.stale_channels(settings.stale_channel_threshold) == []

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_streak_for_next_pass(
        self, settings, quota, state_store, repository, publisher, monitor, clock
    ) -> None:
        repository.deactivate_channel = AsyncMock(side_effect=PersistenceError("db down"))
        runner = _runner(settings, quota, state_store, repository, publisher, monitor, clock)
        await _poll_times(monitor, settings.stale_channel_threshold)

        assert await runner.cleanup_stale_channels() == 0
        assert monitor.stale_channels(settings.stale_channel_threshold) == ["gone"]


class TestPruneAndQuota:
    @pytest.mark.asyncio
    async def test_prunes_old_ended_records(
        self, settings, quota, state_store, repository, publisher, monitor, clock
    ) -> None:
        old = StreamRecord(
            "twitcasting:1", "twitcasting", "still_here", "old", StreamStatus.ENDED,
            last_seen_at=clock.now - timedelta(hours=settings.stream_record_retention_hours + 1),
        )
        await state_store.compare_and_set(old.stream_key, None, old)

        assert _runner(settings, quota, state_store, repository, publisher, monitor, clock).prune_records() == 1
        assert old.stream_key not in state_store

    @pytest.mark.asyncio
    async def test_resets_elapsed_windows(self, settings, state_store, repository, publisher, monitor, clock) -> None:
        quota = QuotaTracker({"twitcasting": QuotaPolicy(10, window_seconds=60)}, clock=clock)
        await quota.try_admit("twitcasting", 10)
        runner = _runner(settings, quota, state_store, repository, publisher, monitor, clock)

        assert await runner.reset_quota_windows() == []
        clock.advance(seconds=60)
        assert await runner.reset_quota_windows() == ["twitcasting"]


class TestProbeAndStats:
    @pytest.mark.asyncio
    async def test_probe_failure_is_published(
        self, settings, quota, state_store, repository, publisher, redis_mock, monitor, clock
    ) -> None:
        probe = AsyncMock()
        probe.run_pass = AsyncMock(side_effect=RuntimeError("playlist lookup exploded"))
        runner = _runner(settings, quota, state_store, repository, publisher, monitor, clock, probe=probe)

        assert await runner.run_probe() == 0

        channel, message = redis_mock.publish.await_args.args
        assert channel == "test:error"
        assert json.loads(message)["Payload"]["component"] == "membership_probe"

    @pytest.mark.asyncio
    async def test_run_pass_publishes_stats(
        self, settings, state_store, repository, publisher, redis_mock, monitor, clock
    ) -> None:
        quota = QuotaTracker({"twitcasting": QuotaPolicy(100, window_seconds=3600)}, clock=clock)
        monitor.quota = quota
        await _poll_times(monitor, 1)
        runner = _runner(settings, quota, state_store, repository, publisher, monitor, clock)

        summary = await runner.run_pass()

        assert summary == {
            "quota_resets": [],
            "deactivated_channels": 0,
            "pruned_records": 0,
            "probe_reports": 0,
        }
        channel, message = redis_mock.publish.await_args.args
        assert channel == "test:monitoring.stats"
        stats = json.loads(message)["Payload"]["platforms"]["twitcasting"]
        assert stats["monitoredChannels"] == 2
        assert stats["completedPolls"] == 1
        assert stats["streams"] == {"scheduled": 0, "live": 0, "ended": 0}
        assert stats["quota"]["usedUnits"] == 2
