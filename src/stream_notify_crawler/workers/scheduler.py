"""Crawler lifecycle: startup sequencing, the poll loop and the maintenance loop.

:class:`CrawlerScheduler` is an explicit state machine::

    NOT_STARTED ──start()──▶ INITIALIZING ──▶ RUNNING ──stop()──▶ STOPPING ──▶ STOPPED
                                  │
                                  └──(StartupError)──▶ FAILED_TO_START

While running it owns two tasks that share one shutdown ``asyncio.Event``:

- the poll loop, which every ``poll_interval_seconds`` polls all monitors
  concurrently, publishes their events and persists the changed records;
- the maintenance loop, which every ``maintenance_interval_seconds`` resets
  quota windows, deactivates stale channels, prunes ended records, runs the
  membership probe and publishes monitoring stats.

An exception escaping either loop body is logged, published on the error
channel, and the loop carries on with its next tick.
"""

from __future__ import annotations

import asyncio
import enum
import random
from datetime import datetime
from typing import Callable

import structlog

from stream_notify_crawler.config.settings import Settings
from stream_notify_crawler.core.domain import EventType, HealthStatus, utcnow
from stream_notify_crawler.core.event_bus import EventPublisher
from stream_notify_crawler.core.exceptions import PersistenceError, SchedulerStateError, StartupError
from stream_notify_crawler.core.health import HealthAggregator
from stream_notify_crawler.core.logging_config import cycle_id_var
from stream_notify_crawler.core.quota import QuotaPolicy, QuotaTracker
from stream_notify_crawler.core.repository import SaveOutcome, StreamRepository
from stream_notify_crawler.core.state_store import StreamStateStore
from stream_notify_crawler.monitors.base import PlatformMonitor
from stream_notify_crawler.monitors.registry import autodiscover, enabled_monitors
from stream_notify_crawler.workers.maintenance import MaintenanceRunner

logger = structlog.get_logger(__name__)


class SchedulerState(str, enum.Enum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED_TO_START = "failed_to_start"


def build_quota_policies(settings: Settings) -> dict[str, QuotaPolicy]:
    """Quota budgets for every platform whose credentials are configured.

    YouTube's daily budget is the per-key limit times the number of keys and
    resets at UTC midnight; the other platforms use rolling windows.
    """
    policies: dict[str, QuotaPolicy] = {}
    if settings.youtube_enabled:
        policies["youtube"] = QuotaPolicy(
            limit_units=settings.youtube_quota_limit * len(settings.youtube_api_keys)
        )
    if settings.twitch_enabled:
        policies["twitch"] = QuotaPolicy(
            limit_units=settings.twitch_quota_limit,
            window_seconds=settings.twitch_quota_window_seconds,
        )
    if settings.twitcasting_enabled:
        policies["twitcasting"] = QuotaPolicy(
            limit_units=settings.twitcasting_quota_limit,
            window_seconds=settings.twitcasting_quota_window_seconds,
        )
    if settings.twitter_enabled:
        policies["twitter_spaces"] = QuotaPolicy(
            limit_units=settings.twitter_quota_limit,
            window_seconds=settings.twitter_quota_window_seconds,
        )
    return policies


class CrawlerScheduler:
    """Owns the monitors and drives them until :meth:`stop` is called.

    Args:
        settings: Application settings.
        repository: Persistence contract for tracked channels, stream
            records and the probe queue.
        publisher: Event publisher.  Closed last during :meth:`stop`.
        state_store: Shared stream state.  A fresh store is created when
            omitted.
        quota: Shared quota tracker.  Built from :func:`build_quota_policies`
            when omitted.
        monitor_classes: Monitor classes to run.  Defaults to every
            registered monitor whose credentials are configured.
        clock: Returns the current aware ``datetime``.
        rng: Random source handed to the membership probe.
    """

    def __init__(
        self,
        settings: Settings,
        repository: StreamRepository,
        publisher: EventPublisher,
        state_store: StreamStateStore | None = None,
        quota: QuotaTracker | None = None,
        monitor_classes: list[type[PlatformMonitor]] | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.publisher = publisher
        self.state_store = state_store if state_store is not None else StreamStateStore()
        self.quota = quota if quota is not None else QuotaTracker(build_quota_policies(settings), clock=clock)
        self._monitor_classes = monitor_classes
        self._clock = clock
        self._rng = rng

        self._state = SchedulerState.NOT_STARTED
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._monitors: dict[str, PlatformMonitor] = {}
        self._probe = None
        self._poll_cycles = 0
        self.started_at: datetime | None = None

        self.health = HealthAggregator(
            storage_ping=self.repository.ping,
            broker_ping=self.publisher.ping,
            publisher_health=self.publisher.health,
            monitors=lambda: list(self._monitors.values()),
            poll_interval_seconds=settings.poll_interval_seconds,
            stale_cycles=settings.health_stale_cycles,
            error_streak=settings.health_error_streak,
            timeout_seconds=settings.health_check_timeout_seconds,
            clock=clock,
        )
        self.maintenance = MaintenanceRunner(
            settings=settings,
            quota=self.quota,
            state_store=self.state_store,
            repository=repository,
            publisher=publisher,
            monitors=lambda: self._monitors,
            probe=lambda: self._probe,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def monitors(self) -> dict[str, PlatformMonitor]:
        return dict(self._monitors)

    @property
    def probe(self):  # type: ignore[no-untyped-def]
        return self._probe

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Verify dependencies, start every monitor and launch both loops.

        Raises:
            SchedulerStateError: The scheduler was already started.
            StartupError: Storage, broker or a monitor could not be started.
        """
        if self._state is not SchedulerState.NOT_STARTED:
            raise SchedulerStateError(f"cannot start a scheduler in state {self._state.value!r}")

        self._state = SchedulerState.INITIALIZING
        logger.info("scheduler_initializing")
        try:
            await self._verify_dependency("storage", self.repository.ping)
            await self._verify_dependency("broker", self.publisher.ping)
            await self._seed_state_store()
            await self._start_monitors()
        except StartupError as exc:
            self._state = SchedulerState.FAILED_TO_START
            logger.error("scheduler_failed_to_start", component=exc.component, error=str(exc))
            await self._stop_monitors()
            raise

        self._build_probe()
        self._shutdown.clear()
        self._tasks = [
            asyncio.create_task(self._poll_loop(), name="crawler-poll-loop"),
            asyncio.create_task(self._maintenance_loop(), name="crawler-maintenance-loop"),
        ]
        self.started_at = self._clock()
        self._state = SchedulerState.RUNNING
        logger.info("scheduler_running", platforms=sorted(self._monitors))

    async def _verify_dependency(self, component: str, ping: Callable) -> None:
        timeout = self.settings.health_check_timeout_seconds
        try:
            reachable = await asyncio.wait_for(ping(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise StartupError(f"{component} did not answer within {timeout:g}s", component=component) from exc
        except Exception as exc:
            raise StartupError(f"{component} check failed: {exc}", component=component) from exc
        if not reachable:
            raise StartupError(f"{component} is unreachable", component=component)
        logger.info("dependency_reachable", component=component)

    async def _seed_state_store(self) -> None:
        try:
            records = await asyncio.wait_for(
                self.repository.list_open_stream_records(),
                timeout=self.settings.database_command_timeout_seconds,
            )
        except Exception as exc:
            raise StartupError(f"could not load open stream records: {exc}", component="storage") from exc
        added = self.state_store.seed(records)
        logger.info("state_store_seeded", records=added)

    async def _start_monitors(self) -> None:
        classes = self._monitor_classes
        if classes is None:
            autodiscover()
            classes = enabled_monitors(self.settings)
        if not classes:
            logger.warning("no_platforms_enabled")

        for cls in classes:
            monitor = cls(self.state_store, self.quota, self.settings, clock=self._clock)
            try:
                await monitor.start()
            except Exception as exc:
                raise StartupError(
                    f"monitor {cls.platform_name} failed to start: {exc}", component=cls.platform_name
                ) from exc
            self._monitors[monitor.platform_name] = monitor

    def _build_probe(self) -> None:
        youtube = self._monitors.get("youtube")
        if youtube is None:
            return
        from stream_notify_crawler.monitors.youtube.membership import (  # noqa: PLC0415
            BrokerProbeNotifier,
            MembershipMarkerProbe,
        )

        notifier = BrokerProbeNotifier(
            self.publisher, category=self.settings.owner_notify_channel or "membership.probe"
        )
        self._probe = MembershipMarkerProbe(
            http_client=youtube.http_client,
            key_pool=youtube.key_pool,
            quota=self.quota,
            repository=self.repository,
            notifier=notifier,
            rng=self._rng,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run_poll_cycle(self) -> int:
        """Poll every monitor once, concurrently.

        Returns:
            Number of events that reached the broker.
        """
        monitors = list(self._monitors.values())
        results = await asyncio.gather(
            *(self._poll_platform(monitor) for monitor in monitors),
            return_exceptions=True,
        )
        published = 0
        for monitor, outcome in zip(monitors, results):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "platform_poll_failed",
                    platform=monitor.platform_name,
                    error=str(outcome),
                    exc_info=outcome,
                )
                await self.publisher.publish_error(
                    f"monitor:{monitor.platform_name}",
                    str(outcome),
                    {"exceptionType": type(outcome).__name__},
                )
                continue
            published += outcome
        return published

    async def _poll_platform(self, monitor: PlatformMonitor) -> int:
        channels = await asyncio.wait_for(
            self.repository.list_tracked_channels(monitor.platform_name),
            timeout=self.settings.database_command_timeout_seconds,
        )
        result = await monitor.poll_once(channels)
        published = await self.publisher.broadcast_batch(result.events)

        for record in result.records:
            try:
                outcome = await self.repository.save_stream_record(record)
            except Exception:
                logger.exception(
                    "stream_record_save_raised",
                    platform=monitor.platform_name,
                    stream_key=record.stream_key,
                )
                outcome = SaveOutcome.FAILED_AFTER_RETRIES
            if outcome is SaveOutcome.FAILED_AFTER_RETRIES:
                logger.error(
                    "stream_record_not_persisted",
                    platform=monitor.platform_name,
                    stream_key=record.stream_key,
                )

        for event in result.events:
            if event.event_type is not EventType.CHANNEL_UPDATED:
                continue
            try:
                await self.repository.update_channel_title(
                    monitor.platform_name, event.snapshot.channel_id, event.snapshot.title
                )
            except PersistenceError as exc:
                logger.warning(
                    "channel_title_not_persisted",
                    platform=monitor.platform_name,
                    channel_id=event.snapshot.channel_id,
                    error=str(exc),
                )
        return published

    async def _self_check(self) -> None:
        report = await self.health.check_health()
        if report.status != HealthStatus.HEALTHY.value:
            logger.warning(
                "health_self_check",
                status=report.status,
                components={
                    name: entry.status
                    for name, entry in report.entries.items()
                    if entry.status != HealthStatus.HEALTHY.value
                },
            )

    async def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            self._poll_cycles += 1
            cycle_id_var.set(f"poll-{self._poll_cycles}")
            try:
                await self.run_poll_cycle()
                await self._self_check()
            except Exception as exc:
                logger.exception("poll_loop_error")
                await self.publisher.publish_error("poll_loop", str(exc))
            if await self._wait_for_shutdown(self.settings.poll_interval_seconds):
                break

    # ------------------------------------------------------------------
    # Maintenance loop
    # ------------------------------------------------------------------

    async def _maintenance_loop(self) -> None:
        passes = 0
        while not await self._wait_for_shutdown(self.settings.maintenance_interval_seconds):
            passes += 1
            cycle_id_var.set(f"maintenance-{passes}")
            try:
                await self.maintenance.run_pass()
            except Exception as exc:
                logger.exception("maintenance_loop_error")
                await self.publisher.publish_error("maintenance_loop", str(exc))

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; ``True`` once shutdown is signalled."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Signal both loops, stop the monitors and close the publisher.

        Safe to call more than once.  A scheduler that never started moves
        straight to ``STOPPED``.
        """
        if self._state in (SchedulerState.STOPPING, SchedulerState.STOPPED):
            return
        if self._state is SchedulerState.FAILED_TO_START:
            await self.publisher.close()
            return

        self._state = SchedulerState.STOPPING
        logger.info("scheduler_stopping")
        self._shutdown.set()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _done, still_running = await asyncio.wait(pending, timeout=self.settings.shutdown_grace_seconds)
            for task in still_running:
                logger.warning("loop_cancelled_after_grace", task=task.get_name())
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        self._tasks = []

        await self._stop_monitors()
        await self.publisher.close()
        self._state = SchedulerState.STOPPED
        logger.info("scheduler_stopped", poll_cycles=self._poll_cycles)

    async def _stop_monitors(self) -> None:
        monitors = list(self._monitors.values())
        await asyncio.gather(*(self._stop_monitor(monitor) for monitor in monitors))

    async def _stop_monitor(self, monitor: PlatformMonitor) -> None:
        timeout = self.settings.monitor_stop_timeout_seconds
        try:
            await asyncio.wait_for(monitor.stop(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("monitor_stop_timed_out", platform=monitor.platform_name, timeout=timeout)
        except Exception:
            logger.exception("monitor_stop_failed", platform=monitor.platform_name)
