"""Abstract base class for all platform monitors.

Every platform integration subclasses :class:`PlatformMonitor` and implements
:meth:`PlatformMonitor.fetch_channel`, which maps the platform's raw API
response onto :class:`BroadcastSnapshot` objects.  Everything else (quota
admission, transient-error retries, the diff against
:class:`StreamStateStore`, event construction and liveness bookkeeping) is
shared here so that every platform detects transitions identically.

Example::

    from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
    from stream_notify_crawler.monitors.registry import register

    @register
    class MyMonitor(PlatformMonitor):
        platform_name = "my_platform"

        async def fetch_channel(self, channel):
            ...
            return ChannelFetch(broadcasts=[...], channel_title="...")

Transition rules applied by :meth:`PlatformMonitor.poll_once`:

========================  ======================================
prior → reported          event
========================  ======================================
absent → Scheduled        none
absent → Live             Online
absent → Ended            none (stored silently)
Scheduled → Live          Online
Live → Ended              Offline
Live key missing          Offline (record moved to Ended)
same status, new title    Updated
same status, viewers Δ    Updated when ``|Δ| >= threshold``
Ended → anything          ignored (terminal)
========================  ======================================

Independently of the broadcast rows, ``ChannelUpdated`` is emitted when the
channel's display title differs from the last known value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from stream_notify_crawler.core.domain import (
    BroadcastSnapshot,
    ChangeEvent,
    EventType,
    StreamRecord,
    StreamStatus,
    TrackedChannel,
    make_stream_key,
    utcnow,
)
from stream_notify_crawler.core.exceptions import (
    PlatformAuthError,
    PlatformError,
    PlatformNotFoundError,
    PlatformQuotaError,
    PlatformTransientError,
)

if TYPE_CHECKING:
    from stream_notify_crawler.config.settings import Settings
    from stream_notify_crawler.core.quota import QuotaTracker
    from stream_notify_crawler.core.state_store import StreamStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelFetch:
    """Everything a monitor learned about one channel in one poll.

    Attributes:
        broadcasts: Broadcasts the platform currently reports for the
            channel.  A stored non-ended broadcast of this channel that is
            missing here is treated as gone.
        channel_title: Current display title of the channel, or ``None`` if
            the response did not include it.
        checked_keys: Stream keys the platform was actually asked about.
            When set, only open broadcasts among these can be treated as
            gone; ``None`` means the listing covers the whole channel.
    """

    broadcasts: list[BroadcastSnapshot] = field(default_factory=list)
    channel_title: str | None = None
    checked_keys: frozenset[str] | None = None


@dataclass
class PollResult:
    """Outcome of one :meth:`PlatformMonitor.poll_once` call.

    Attributes:
        events: Change events in detection order.
        records: Records whose persisted copy should be refreshed.
        failed_channels: Channel ids skipped this cycle because of an error.
        throttled_channels: Channel ids skipped because quota was refused.
    """

    events: list[ChangeEvent] = field(default_factory=list)
    records: list[StreamRecord] = field(default_factory=list)
    failed_channels: list[str] = field(default_factory=list)
    throttled_channels: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failed_channels


class PlatformMonitor(ABC):
    """Polls one platform and turns its responses into change events.

    Class attributes:
        platform_name: Unique platform identifier and registry key.  Also used
            as the stream-key prefix and the quota budget name.
        call_cost: Quota units charged per :meth:`fetch_channel` call.

    Args:
        state_store: Shared authoritative stream state.
        quota: Shared quota tracker.
        settings: Application settings.
        clock: Returns the current aware ``datetime``.
        sleep: Coroutine used between retries.  Injected so tests do not wait.
    """

    platform_name: str = ""
    call_cost: int = 1

    def __init__(
        self,
        state_store: StreamStateStore,
        quota: QuotaTracker,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.state_store = state_store
        self.quota = quota
        self.settings = settings
        self._clock = clock
        self._sleep = sleep
        self._poll_lock = asyncio.Lock()
        self._known_titles: dict[str, str] = {}
        self._not_found_streaks: dict[str, int] = {}

        self.is_running = False
        self.started_at: datetime | None = None
        self.completed_polls = 0
        self.last_channel_count = 0
        self.consecutive_failures = 0
        self.last_success_at: datetime | None = None
        self.quota_throttled = False
        self.auth_failed = False

    @property
    def platform(self) -> str:
        return self.platform_name

    @classmethod
    def is_enabled(cls, settings: Settings) -> bool:
        """Return ``True`` when ``settings`` carry what this monitor needs."""
        return True

    # ------------------------------------------------------------------
    # Platform-specific hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        """Fetch the current broadcasts of ``channel``.

        Raises:
            PlatformTransientError: Retryable failure.
            PlatformAuthError: Credentials rejected.
            PlatformQuotaError: Platform-side quota or rate limit hit.
            PlatformNotFoundError: The channel no longer exists.
        """

    async def open(self) -> None:
        """Acquire platform resources (HTTP clients, tokens)."""

    async def close(self) -> None:
        """Release what :meth:`open` acquired."""

    async def health_check(self) -> dict[str, Any]:
        """Return platform-level health details for the status endpoint."""
        return {"platform": self.platform_name, "status": "ok"}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.open()
        self.is_running = True
        self.started_at = self._clock()
        logger.info("monitor_started", extra={"platform": self.platform_name})

    async def stop(self) -> None:
        self.is_running = False
        try:
            await self.close()
        finally:
            logger.info("monitor_stopped", extra={"platform": self.platform_name})

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_once(self, channels: list[TrackedChannel]) -> PollResult:
        """Run one poll cycle over ``channels``.

        Cycles of the same monitor never overlap.  Errors are classified per
        channel; a failing channel is skipped for this cycle and never
        aborts the others, except for a platform quota error which ends the
        cycle early.
        """
        from stream_notify_crawler.api.metrics import (  # noqa: PLC0415
            poll_cycles_total,
            poll_duration_seconds,
        )

        async with self._poll_lock:
            started = time.monotonic()
            self.last_channel_count = len(channels)
            result = PollResult()
            self.quota_throttled = False
            auth_error_seen = False
            fetched_any = False

            for index, channel in enumerate(channels):
                try:
                    fetch = await self._fetch_with_retries(channel)
                except PlatformQuotaError as exc:
                    self.quota_throttled = True
                    remaining = [c.external_channel_id for c in channels[index:]]
                    result.throttled_channels.extend(remaining)
                    logger.warning(
                        "platform_quota_exhausted",
                        extra={
                            "platform": self.platform_name,
                            "retry_after": exc.retry_after,
                            "skipped": len(remaining),
                        },
                    )
                    break
                except PlatformNotFoundError:
                    streak = self._not_found_streaks.get(channel.external_channel_id, 0) + 1
                    self._not_found_streaks[channel.external_channel_id] = streak
                    result.failed_channels.append(channel.external_channel_id)
                    logger.info(
                        "channel_not_found",
                        extra={
                            "platform": self.platform_name,
                            "channel_id": channel.external_channel_id,
                            "streak": streak,
                        },
                    )
                    continue
                except PlatformAuthError as exc:
                    auth_error_seen = True
                    result.failed_channels.append(channel.external_channel_id)
                    logger.error(
                        "platform_auth_failed",
                        extra={"platform": self.platform_name, "error": str(exc)},
                    )
                    continue
                except PlatformError as exc:
                    result.failed_channels.append(channel.external_channel_id)
                    logger.warning(
                        "channel_fetch_failed",
                        extra={
                            "platform": self.platform_name,
                            "channel_id": channel.external_channel_id,
                            "error": str(exc),
                        },
                    )
                    continue
                except Exception:
                    result.failed_channels.append(channel.external_channel_id)
                    logger.exception(
                        "channel_fetch_unexpected_error",
                        extra={"platform": self.platform_name, "channel_id": channel.external_channel_id},
                    )
                    continue

                if fetch is None:
                    result.throttled_channels.append(channel.external_channel_id)
                    self.quota_throttled = True
                    continue

                fetched_any = True
                self._not_found_streaks.pop(channel.external_channel_id, None)
                await self._apply_fetch(channel, fetch, result)

            self.auth_failed = auth_error_seen
            outcome = self._record_cycle(channels, result, fetched_any)
            duration = time.monotonic() - started
            poll_cycles_total.labels(platform=self.platform_name, outcome=outcome).inc()
            poll_duration_seconds.labels(platform=self.platform_name).observe(duration)
            logger.info(
                "poll_cycle_complete",
                extra={
                    "platform": self.platform_name,
                    "channels": len(channels),
                    "events": len(result.events),
                    "failed": len(result.failed_channels),
                    "throttled": len(result.throttled_channels),
                    "duration_seconds": round(duration, 3),
                },
            )
            return result

    def _record_cycle(
        self, channels: list[TrackedChannel], result: PollResult, fetched_any: bool
    ) -> str:
        """Update liveness counters and return the metrics outcome label."""
        self.completed_polls += 1
        attempted = len(channels) - len(result.throttled_channels)
        if attempted > 0 and not fetched_any:
            self.consecutive_failures += 1
            return "failed"
        self.consecutive_failures = 0
        self.last_success_at = self._clock()
        if result.failed_channels or result.throttled_channels:
            return "degraded"
        return "ok"

    async def _fetch_with_retries(self, channel: TrackedChannel) -> ChannelFetch | None:
        """Call :meth:`fetch_channel` under quota admission.

        Returns:
            The fetch result, or ``None`` when the quota tracker refused the
            call.
        """
        attempts = self.settings.max_retry_attempts + 1
        for attempt in range(1, attempts + 1):
            if not await self.quota.try_admit(self.platform_name, self.call_cost):
                return None
            try:
                return await self.fetch_channel(channel)
            except PlatformTransientError as exc:
                if attempt >= attempts:
                    raise
                logger.info(
                    "channel_fetch_retry",
                    extra={
                        "platform": self.platform_name,
                        "channel_id": channel.external_channel_id,
                        "attempt": attempt,
                        "error": str(exc),
                    },
                )
                await self._sleep(self.settings.retry_delay_seconds)
        return None

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    async def _apply_fetch(
        self, channel: TrackedChannel, fetch: ChannelFetch, result: PollResult
    ) -> None:
        now = self._clock()
        seen: set[str] = set()

        for snapshot in fetch.broadcasts:
            stream_key = make_stream_key(self.platform_name, snapshot.broadcast_id)
            seen.add(stream_key)
            prior = self.state_store.get(stream_key)
            if prior is not None and prior.status is StreamStatus.ENDED:
                continue

            record = self._build_record(stream_key, snapshot, prior, now)
            event_type = self.classify_transition(prior, record)
            expected = prior.status if prior is not None else None
            if not await self.state_store.compare_and_set(stream_key, expected, record):
                logger.debug(
                    "stream_write_rejected",
                    extra={"platform": self.platform_name, "stream_key": stream_key},
                )
                continue

            if prior is None or _materially_changed(prior, record):
                result.records.append(record)
            if event_type is not None:
                result.events.append(
                    ChangeEvent(
                        event_type=event_type,
                        stream_key=stream_key,
                        platform=self.platform_name,
                        snapshot=record,
                        previous=prior,
                        timestamp=now,
                    )
                )

        for prior in self.state_store.open_records(self.platform_name, channel.external_channel_id):
            if prior.stream_key in seen:
                continue
            if fetch.checked_keys is not None and prior.stream_key not in fetch.checked_keys:
                continue
            ended = prior.ended(now)
            if not await self.state_store.compare_and_set(prior.stream_key, prior.status, ended):
                continue
            result.records.append(ended)
            if prior.status is StreamStatus.LIVE:
                result.events.append(
                    ChangeEvent(
                        event_type=EventType.OFFLINE,
                        stream_key=prior.stream_key,
                        platform=self.platform_name,
                        snapshot=ended,
                        previous=prior,
                        timestamp=now,
                    )
                )

        channel_event = self._channel_title_event(channel, fetch, now)
        if channel_event is not None:
            result.events.append(channel_event)

    def _build_record(
        self,
        stream_key: str,
        snapshot: BroadcastSnapshot,
        prior: StreamRecord | None,
        now: datetime,
    ) -> StreamRecord:
        status = snapshot.status
        if prior is not None and not prior.status.can_advance_to(status):
            # Platforms occasionally report a live broadcast as upcoming again.
            status = prior.status

        start_time = snapshot.start_time or (prior.start_time if prior else None)
        if status is StreamStatus.LIVE and start_time is None:
            start_time = now
        end_time = snapshot.end_time
        if status is StreamStatus.ENDED and end_time is None:
            end_time = now

        metadata = dict(snapshot.metadata)
        if snapshot.channel_title:
            metadata.setdefault("channelTitle", snapshot.channel_title)

        return StreamRecord(
            stream_key=stream_key,
            platform=self.platform_name,
            channel_id=snapshot.channel_id,
            title=snapshot.title,
            status=status,
            start_time=start_time,
            end_time=end_time,
            viewer_count=snapshot.viewer_count,
            last_seen_at=now,
            url=snapshot.url,
            metadata=metadata,
        )

    def classify_transition(
        self, prior: StreamRecord | None, current: StreamRecord
    ) -> EventType | None:
        """Return the event a change from ``prior`` to ``current`` produces."""
        if prior is None:
            return EventType.ONLINE if current.status is StreamStatus.LIVE else None

        if prior.status is not current.status:
            if current.status is StreamStatus.LIVE:
                return EventType.ONLINE
            if current.status is StreamStatus.ENDED and prior.status is StreamStatus.LIVE:
                return EventType.OFFLINE
            return None

        if prior.title != current.title:
            return EventType.UPDATED
        if prior.viewer_count is not None and current.viewer_count is not None:
            delta = abs(current.viewer_count - prior.viewer_count)
            if delta >= self.settings.updated_viewer_threshold:
                return EventType.UPDATED
        return None

    def _channel_title_event(
        self, channel: TrackedChannel, fetch: ChannelFetch, now: datetime
    ) -> ChangeEvent | None:
        channel_id = channel.external_channel_id
        current = fetch.channel_title
        if not current:
            return None
        known = self._known_titles.get(channel_id, channel.display_title)
        self._known_titles[channel_id] = current
        if not known or known == current:
            return None

        live = self.state_store.live_keys(self.platform_name, channel_id)
        snapshot = StreamRecord(
            stream_key=make_stream_key(self.platform_name, channel_id),
            platform=self.platform_name,
            channel_id=channel_id,
            title=current,
            status=StreamStatus.LIVE if live else StreamStatus.ENDED,
            last_seen_at=now,
            metadata={"channelTitle": current, "previousChannelTitle": known},
        )
        logger.info(
            "channel_title_changed",
            extra={"platform": self.platform_name, "channel_id": channel_id},
        )
        return ChangeEvent(
            event_type=EventType.CHANNEL_UPDATED,
            stream_key=snapshot.stream_key,
            platform=self.platform_name,
            snapshot=snapshot,
            timestamp=now,
        )

    # ------------------------------------------------------------------
    # Stale-channel bookkeeping
    # ------------------------------------------------------------------

    def stale_channels(self, threshold: int) -> list[str]:
        """Channel ids reported "not found" at least ``threshold`` times in a row."""
        return [cid for cid, streak in self._not_found_streaks.items() if streak >= threshold]

    def forget_channel(self, channel_id: str) -> None:
        self._not_found_streaks.pop(channel_id, None)
        self._known_titles.pop(channel_id, None)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} platform={self.platform_name!r} running={self.is_running}>"


def _materially_changed(prior: StreamRecord, current: StreamRecord) -> bool:
    return (
        prior.status is not current.status
        or prior.title != current.title
        or prior.viewer_count != current.viewer_count
        or prior.start_time != current.start_time
        or prior.end_time != current.end_time
    )
