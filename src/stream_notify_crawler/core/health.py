"""Aggregate health of the crawler and its dependencies.

``HealthAggregator.check_health`` is computed on demand (by ``GET /health``
and by the scheduler's self-check) and never persisted.  Each dependency
probe is bounded by the health-check timeout; a probe that raises or times
out marks its component Unhealthy instead of failing the whole report.

Component rules:

- ``storage``: repository ``ping()`` succeeds → Healthy, otherwise Unhealthy.
- ``broker``: broker ``PING`` succeeds → Healthy, otherwise Unhealthy.
- ``publisher``: consecutive publish failures, see
  :meth:`EventPublisher.health`.
- ``monitor:<platform>``: Unhealthy when not running, when no poll has
  succeeded within ``stale_cycles`` poll intervals, or when the failure
  streak reaches ``error_streak``.  Degraded when quota-throttled, after an
  authorization failure, or on a shorter failure streak.

The aggregate status is the worst component status.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Protocol

from stream_notify_crawler.core.domain import HealthRecord, HealthStatus, utcnow
from stream_notify_crawler.core.schemas.events import HealthEntry, HealthReport

logger = logging.getLogger(__name__)


class MonitorLiveness(Protocol):
    """Liveness counters every platform monitor exposes."""

    platform: str
    is_running: bool
    consecutive_failures: int
    completed_polls: int
    last_success_at: datetime | None
    started_at: datetime | None
    quota_throttled: bool
    auth_failed: bool


class HealthAggregator:
    """Combine dependency reachability and monitor liveness into one report.

    Args:
        storage_ping: Coroutine function returning truthy when the store is
            reachable (``StreamRepository.ping``).
        broker_ping: Coroutine function returning truthy when the broker
            answers (``EventPublisher.ping``).
        publisher_health: Callable returning the publisher's
            :class:`HealthRecord`.
        monitors: Callable returning the monitors to inspect.  Called on
            every check so monitors started later are included.
        poll_interval_seconds: Expected time between poll cycles.
        stale_cycles: Missed cycles after which a monitor is Unhealthy.
        error_streak: Consecutive failures after which a monitor is Unhealthy.
        timeout_seconds: Bound on each dependency probe.
        clock: Returns the current aware ``datetime``.
    """

    def __init__(
        self,
        storage_ping: Callable[[], Awaitable[Any]],
        broker_ping: Callable[[], Awaitable[Any]],
        publisher_health: Callable[[], HealthRecord] | None = None,
        monitors: Callable[[], Iterable[MonitorLiveness]] = lambda: (),
        poll_interval_seconds: float = 30.0,
        stale_cycles: int = 3,
        error_streak: int = 5,
        timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage_ping = storage_ping
        self._broker_ping = broker_ping
        self._publisher_health = publisher_health
        self._monitors = monitors
        self._poll_interval = poll_interval_seconds
        self._stale_cycles = stale_cycles
        self._error_streak = error_streak
        self._timeout = timeout_seconds
        self._clock = clock

    async def _probe(self, name: str, ping: Callable[[], Awaitable[Any]]) -> HealthRecord:
        try:
            ok = await asyncio.wait_for(ping(), timeout=self._timeout)
        except asyncio.TimeoutError:
            return HealthRecord(
                component_name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"no answer within {self._timeout:g}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("health_probe_failed", extra={"component": name, "error": str(exc)})
            return HealthRecord(
                component_name=name,
                status=HealthStatus.UNHEALTHY,
                message=f"{type(exc).__name__}: {exc}",
            )
        if not ok:
            return HealthRecord(component_name=name, status=HealthStatus.UNHEALTHY, message="unreachable")
        return HealthRecord(component_name=name, status=HealthStatus.HEALTHY, message="reachable")

    def monitor_health(self, monitor: MonitorLiveness) -> HealthRecord:
        """Classify one monitor from its liveness counters."""
        name = f"monitor:{monitor.platform}"
        now = self._clock()
        data: dict[str, Any] = {
            "completed_polls": monitor.completed_polls,
            "consecutive_failures": monitor.consecutive_failures,
            "last_success_at": monitor.last_success_at.isoformat() if monitor.last_success_at else None,
            "quota_throttled": monitor.quota_throttled,
        }

        if not monitor.is_running:
            return HealthRecord(name, HealthStatus.UNHEALTHY, "not running", data)

        if monitor.consecutive_failures >= self._error_streak:
            return HealthRecord(
                name,
                HealthStatus.UNHEALTHY,
                f"{monitor.consecutive_failures} consecutive failed polls",
                data,
            )

        staleness = timedelta(seconds=self._poll_interval * self._stale_cycles)
        reference = monitor.last_success_at or monitor.started_at
        if reference is not None and now - reference > staleness:
            return HealthRecord(
                name,
                HealthStatus.UNHEALTHY,
                f"no successful poll within {self._stale_cycles} cycles",
                data,
            )

        if monitor.auth_failed:
            return HealthRecord(name, HealthStatus.DEGRADED, "authorization rejected", data)
        if monitor.quota_throttled:
            return HealthRecord(name, HealthStatus.DEGRADED, "quota throttled", data)
        if monitor.consecutive_failures > 0:
            return HealthRecord(
                name,
                HealthStatus.DEGRADED,
                f"{monitor.consecutive_failures} consecutive failed polls",
                data,
            )
        return HealthRecord(name, HealthStatus.HEALTHY, "polling", data)

    async def check_components(self) -> list[HealthRecord]:
        storage, broker = await asyncio.gather(
            self._probe("storage", self._storage_ping),
            self._probe("broker", self._broker_ping),
        )
        records = [storage, broker]
        if self._publisher_health is not None:
            records.append(self._publisher_health())
        records.extend(self.monitor_health(monitor) for monitor in self._monitors())
        return records

    async def check_health(self) -> HealthReport:
        """Return the aggregated :class:`HealthReport`."""
        records = await self.check_components()
        overall = HealthStatus.worst([record.status for record in records])
        _export_gauges(records)
        return HealthReport(
            status=overall.value,
            entries={
                record.component_name: HealthEntry(
                    status=record.status.value,
                    description=record.message,
                    data=record.data,
                )
                for record in records
            },
            checked_at=self._clock(),
        )


_GAUGE_VALUES = {
    HealthStatus.HEALTHY: 2,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 0,
}


def _export_gauges(records: list[HealthRecord]) -> None:
    from stream_notify_crawler.api.metrics import component_health  # noqa: PLC0415

    for record in records:
        component_health.labels(component=record.component_name).set(_GAUGE_VALUES[record.status])
