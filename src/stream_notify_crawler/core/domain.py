"""Domain records shared by monitors, stores, the publisher and the scheduler.

These are plain dataclasses; the database rows that persist some of them live
in :mod:`stream_notify_crawler.core.models` and the wire envelope lives in
:mod:`stream_notify_crawler.core.schemas.events`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return the current timezone-aware UTC time."""
    return datetime.now(timezone.utc)


class StreamStatus(str, Enum):
    """Broadcast lifecycle.  Ordering is Scheduled < Live < Ended."""

    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_advance_to(self, other: StreamStatus) -> bool:
        """Return ``True`` when moving from ``self`` to ``other`` is not a regression."""
        return other.rank >= self.rank


_STATUS_RANK: dict[StreamStatus, int] = {
    StreamStatus.SCHEDULED: 0,
    StreamStatus.LIVE: 1,
    StreamStatus.ENDED: 2,
}


class EventType(str, Enum):
    """Kinds of change detected by a platform monitor."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    UPDATED = "Updated"
    CHANNEL_UPDATED = "ChannelUpdated"


class HealthStatus(str, Enum):
    """Component health.  Ordering is Healthy < Degraded < Unhealthy."""

    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]

    @classmethod
    def worst(cls, statuses: list[HealthStatus]) -> HealthStatus:
        """Return the most severe status, ``HEALTHY`` for an empty list."""
        if not statuses:
            return cls.HEALTHY
        return max(statuses, key=lambda status: status.severity)


_HEALTH_SEVERITY: dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


def make_stream_key(platform: str, broadcast_id: str) -> str:
    """Build the cross-platform stream key ``"<platform>:<broadcast id>"``."""
    return f"{platform}:{broadcast_id}"


@dataclass(frozen=True)
class TrackedChannel:
    """A channel registered for monitoring by the external bot surface."""

    platform: str
    external_channel_id: str
    display_title: str = ""
    is_trusted: bool = False


@dataclass(frozen=True)
class BroadcastSnapshot:
    """One broadcast as currently reported by a platform API.

    Produced by ``PlatformMonitor.fetch_channel``; the base monitor turns it
    into a :class:`StreamRecord` and diffs it against the stored state.
    """

    broadcast_id: str
    channel_id: str
    status: StreamStatus
    title: str = ""
    channel_title: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    viewer_count: int | None = None
    url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamRecord:
    """Last known state of one broadcast, owned by ``StreamStateStore``."""

    stream_key: str
    platform: str
    channel_id: str
    title: str
    status: StreamStatus
    start_time: datetime | None = None
    end_time: datetime | None = None
    viewer_count: int | None = None
    last_seen_at: datetime = field(default_factory=utcnow)
    url: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def ended(self, at: datetime | None = None) -> StreamRecord:
        """Return a copy of this record moved to ``ENDED``."""
        now = at or utcnow()
        return replace(self, status=StreamStatus.ENDED, end_time=self.end_time or now, last_seen_at=now)

    def to_payload(self) -> dict[str, Any]:
        """Serialise the record for an event envelope payload."""
        return {
            "streamKey": self.stream_key,
            "platform": self.platform,
            "channelId": self.channel_id,
            "title": self.title,
            "status": self.status.value,
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "viewerCount": self.viewer_count,
            "url": self.url,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ChangeEvent:
    """An immutable state transition detected by a monitor.

    Consumed once by ``EventPublisher``.  ``snapshot`` is the new record
    (for ``CHANNEL_UPDATED`` it carries the channel-level fields only).
    """

    event_type: EventType
    stream_key: str
    platform: str
    snapshot: StreamRecord
    previous: StreamRecord | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class QuotaState:
    """Point-in-time view of one platform's API budget."""

    platform: str
    used_units: int
    limit_units: int
    window_reset_at: datetime

    @property
    def remaining_units(self) -> int:
        return max(0, self.limit_units - self.used_units)

    @property
    def usage_percentage(self) -> float:
        if self.limit_units <= 0:
            return 0.0
        return self.used_units / self.limit_units * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "usedUnits": self.used_units,
            "limitUnits": self.limit_units,
            "remainingUnits": self.remaining_units,
            "usagePercentage": round(self.usage_percentage, 1),
            "windowResetAt": self.window_reset_at.isoformat(),
        }


@dataclass
class MembershipProbeState:
    """Probe bookkeeping for one members-only YouTube channel."""

    channel_id: str
    candidate_video_id: str = ""
    verified_marker_video_id: str = ""
    channel_title: str = ""
    last_checked_at: datetime | None = None

    @property
    def needs_probe(self) -> bool:
        return not self.verified_marker_video_id or not self.channel_title


@dataclass(frozen=True)
class HealthRecord:
    """Ephemeral health of one component, recomputed on each query."""

    component_name: str
    status: HealthStatus
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utcnow)


class SubscriptionIntent(str, Enum):
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"


@dataclass(frozen=True)
class SubscriptionEvent:
    """A follow or unfollow request from the bot surface.

    Follow and unfollow carry identical fields; only ``intent`` differs.
    """

    intent: SubscriptionIntent
    platform: str
    stream_key: str
    guild_id: int
    discord_channel_id: int
    user_id: int
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
