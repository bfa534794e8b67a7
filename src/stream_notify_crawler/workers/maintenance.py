"""Maintenance pass run by the scheduler's slower loop.

One pass performs, in order:

1. quota-window resets for every accounted platform;
2. stale tracked-channel cleanup: channels a monitor has reported as "not
   found" for ``stale_channel_threshold`` consecutive cycles are deactivated
   through the repository;
3. pruning of ended stream records older than
   ``stream_record_retention_hours`` from the in-memory state store;
4. the YouTube membership-marker probe, when YouTube is monitored;
5. publication of a ``monitoring.stats`` envelope.

Each step is isolated: a failure is logged (and published on the error
channel) and the pass continues with the next step.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Mapping

from stream_notify_crawler.core.domain import utcnow
from stream_notify_crawler.core.exceptions import PersistenceError

if TYPE_CHECKING:
    from stream_notify_crawler.config.settings import Settings
    from stream_notify_crawler.core.event_bus import EventPublisher
    from stream_notify_crawler.core.quota import QuotaTracker
    from stream_notify_crawler.core.repository import StreamRepository
    from stream_notify_crawler.core.state_store import StreamStateStore
    from stream_notify_crawler.monitors.base import PlatformMonitor
    from stream_notify_crawler.monitors.youtube.membership import MembershipMarkerProbe

logger = logging.getLogger(__name__)


class MaintenanceRunner:
    """Runs one maintenance pass over the shared crawler state.

    Args:
        settings: Application settings.
        quota: Shared quota tracker.
        state_store: Shared stream state.
        repository: Persistence contract.
        publisher: Event publisher for stats and error envelopes.
        monitors: Callable returning the running monitors keyed by platform.
        probe: Callable returning the membership probe, or ``None`` when
            YouTube is not monitored.
        clock: Returns the current aware ``datetime``.
    """

    def __init__(
        self,
        settings: Settings,
        quota: QuotaTracker,
        state_store: StreamStateStore,
        repository: StreamRepository,
        publisher: EventPublisher,
        monitors: Callable[[], Mapping[str, PlatformMonitor]],
        probe: Callable[[], MembershipMarkerProbe | None] = lambda: None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._quota = quota
        self._state_store = state_store
        self._repository = repository
        self._publisher = publisher
        self._monitors = monitors
        self._probe = probe
        self._clock = clock

    async def run_pass(self) -> dict[str, Any]:
        """Run every maintenance step and return a summary of what changed."""
        summary: dict[str, Any] = {
            "quota_resets": await self.reset_quota_windows(),
            "deactivated_channels": await self.cleanup_stale_channels(),
            "pruned_records": self.prune_records(),
            "probe_reports": await self.run_probe(),
        }
        await self.publish_stats()
        logger.info("maintenance_pass_complete", extra=summary)
        return summary

    async def reset_quota_windows(self) -> list[str]:
        reset = []
        for platform in self._quota.platforms:
            if await self._quota.reset_if_window_elapsed(platform):
                reset.append(platform)
        return reset

    async def cleanup_stale_channels(self) -> int:
        threshold = self._settings.stale_channel_threshold
        deactivated = 0
        for platform, monitor in self._monitors().items():
            for channel_id in monitor.stale_channels(threshold):
                try:
                    if await self._repository.deactivate_channel(platform, channel_id):
                        deactivated += 1
                except PersistenceError as exc:
                    logger.warning(
                        "stale_channel_deactivation_failed",
                        extra={"platform": platform, "channel_id": channel_id, "error": str(exc)},
                    )
                    continue
                monitor.forget_channel(channel_id)
        return deactivated

    def prune_records(self) -> int:
        cutoff = self._clock() - timedelta(hours=self._settings.stream_record_retention_hours)
        removed = self._state_store.prune(cutoff)
        if removed:
            logger.info("ended_records_pruned", extra={"removed": removed, "cutoff": cutoff.isoformat()})
        return removed

    async def run_probe(self) -> int:
        probe = self._probe()
        if probe is None:
            return 0
        try:
            reports = await probe.run_pass()
        except Exception as exc:
            logger.exception("membership_probe_failed")
            await self._publisher.publish_error("membership_probe", str(exc))
            return 0
        return len(reports)

    def build_stats(self) -> dict[str, Any]:
        from stream_notify_crawler.api.metrics import quota_used_units  # noqa: PLC0415

        platforms: dict[str, Any] = {}
        for platform, monitor in self._monitors().items():
            entry: dict[str, Any] = {
                "monitoredChannels": monitor.last_channel_count,
                "streams": self._state_store.count_by_status(platform),
                "completedPolls": monitor.completed_polls,
                "consecutiveFailures": monitor.consecutive_failures,
                "quotaThrottled": monitor.quota_throttled,
            }
            if platform in self._quota.platforms:
                usage = self._quota.current_usage(platform)
                entry["quota"] = usage.to_dict()
                quota_used_units.labels(platform=platform).set(usage.used_units)
            platforms[platform] = entry
        return {"generatedAt": self._clock().isoformat(), "platforms": platforms}

    async def publish_stats(self) -> bool:
        return await self._publisher.publish_stats(self.build_stats())
