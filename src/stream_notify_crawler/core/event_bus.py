"""Redis pub/sub event publisher for broadcast transitions.

Every monitor-detected :class:`ChangeEvent` is wrapped in a versioned
:class:`EventEnvelope` and published on a channel whose name identifies the
event category.

Channel naming convention (``prefix`` is ``settings.redis_key_prefix``)::

    {prefix}stream.start       Online
    {prefix}stream.end         Offline
    {prefix}stream.update      Updated
    {prefix}channel.update     ChannelUpdated
    {prefix}monitoring.stats   periodic per-platform statistics
    {prefix}error              unexpected crawler failures
    {prefix}subscription.follow / subscription.unfollow

Online events are also announced to the recording tool in its legacy format:
the bare video id on ``youtube.record`` and the user login on
``twitch.record``.  These two channel names are never prefixed.

Delivery is best-effort.  A failed publish is logged at WARNING and the
envelope is dropped; it never propagates to the poll loop.  The run of
consecutive failures is exposed through :meth:`EventPublisher.health` so the
health aggregator can report the broker Degraded or Unhealthy.

Usage::

    publisher = EventPublisher(redis_client, prefix="crawler:")
    await publisher.broadcast_batch(result.events)
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from stream_notify_crawler.api.metrics import events_published_total
from stream_notify_crawler.core.domain import (
    ChangeEvent,
    EventType,
    HealthRecord,
    HealthStatus,
    SubscriptionEvent,
)
from stream_notify_crawler.core.schemas.events import EventEnvelope

logger = structlog.get_logger(__name__)

CHANNEL_STREAM_START = "stream.start"
CHANNEL_STREAM_END = "stream.end"
CHANNEL_STREAM_UPDATE = "stream.update"
CHANNEL_CHANNEL_UPDATE = "channel.update"
CHANNEL_MONITORING_STATS = "monitoring.stats"
CHANNEL_ERROR = "error"

_EVENT_CHANNELS: dict[EventType, str] = {
    EventType.ONLINE: CHANNEL_STREAM_START,
    EventType.OFFLINE: CHANNEL_STREAM_END,
    EventType.UPDATED: CHANNEL_STREAM_UPDATE,
    EventType.CHANNEL_UPDATED: CHANNEL_CHANNEL_UPDATE,
}

_RECORDING_CHANNELS: dict[str, str] = {
    "youtube": "youtube.record",
    "twitch": "twitch.record",
}


class BrokerClient(Protocol):
    """The subset of ``redis.asyncio.Redis`` the publisher depends on."""

    async def publish(self, channel: str, message: str) -> int: ...

    async def ping(self) -> Any: ...

    async def aclose(self) -> None: ...


def channel_for(event_type: EventType) -> str:
    """Return the un-prefixed channel category for ``event_type``."""
    return _EVENT_CHANNELS[event_type]


def build_envelope(event: ChangeEvent) -> EventEnvelope:
    """Wrap ``event`` in a versioned envelope.

    The envelope reuses the event's id and timestamp so a re-published event
    can be deduplicated downstream.
    """
    payload: dict[str, Any] = {
        "changeType": event.event_type.value,
        "streamKey": event.stream_key,
        "platform": event.platform,
        "channelId": event.snapshot.channel_id,
        "stream": event.snapshot.to_payload(),
    }
    if event.previous is not None:
        payload["previous"] = event.previous.to_payload()
    return EventEnvelope(
        event_id=event.event_id,
        event_type=channel_for(event.event_type),
        timestamp=event.timestamp,
        payload=payload,
    )


class EventPublisher:
    """Serialises crawler events and publishes them on the Redis broker.

    Args:
        redis_client: An initialised ``redis.asyncio.Redis`` (or any object
            satisfying :class:`BrokerClient`).
        prefix: String prepended to every channel name.
        publish_timeout: Seconds allowed for one publish call.
        unhealthy_after: Consecutive failures after which :meth:`health`
            reports ``UNHEALTHY`` rather than ``DEGRADED``.
    """

    def __init__(
        self,
        redis_client: BrokerClient,
        prefix: str = "",
        publish_timeout: float = 5.0,
        unhealthy_after: int = 5,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._publish_timeout = publish_timeout
        self._unhealthy_after = unhealthy_after
        self.consecutive_failures = 0
        self.total_published = 0
        self.total_failed = 0
        self.last_error: str | None = None

    def channel_name(self, category: str) -> str:
        return f"{self._prefix}{category}"

    # ------------------------------------------------------------------
    # Low-level publish
    # ------------------------------------------------------------------

    async def _publish(self, category: str, message: str, prefixed: bool = True) -> bool:
        channel = self.channel_name(category) if prefixed else category
        try:
            subscribers = await asyncio.wait_for(
                self._redis.publish(channel, message),
                timeout=self._publish_timeout,
            )
        except Exception as exc:  # noqa: BLE001
            self.consecutive_failures += 1
            self.total_failed += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            events_published_total.labels(event_type=category, outcome="failed").inc()
            logger.warning(
                "event_publish_failed",
                channel=channel,
                error=self.last_error,
                consecutive_failures=self.consecutive_failures,
            )
            return False

        self.consecutive_failures = 0
        self.total_published += 1
        events_published_total.labels(event_type=category, outcome="published").inc()
        logger.debug("event_published", channel=channel, subscribers=subscribers)
        return True

    async def publish_envelope(self, envelope: EventEnvelope) -> bool:
        return await self._publish(envelope.event_type, envelope.to_json())

    # ------------------------------------------------------------------
    # Change events
    # ------------------------------------------------------------------

    async def broadcast(self, event: ChangeEvent | None) -> bool:
        """Publish one change event.

        Args:
            event: The event to publish.  ``None`` is rejected with a warning
                and no broker call.

        Returns:
            ``True`` if the envelope reached the broker.
        """
        if event is None:
            logger.warning("broadcast_called_without_event")
            return False

        published = await self.publish_envelope(build_envelope(event))
        if published and event.event_type is EventType.ONLINE:
            await self._announce_recording(event)
        return published

    async def broadcast_batch(self, events: list[ChangeEvent] | None) -> int:
        """Publish every event of one poll cycle in order.

        An empty (or ``None``) list performs no broker calls.

        Returns:
            Number of envelopes that reached the broker.
        """
        if not events:
            return 0

        published = 0
        for event in events:
            if await self.broadcast(event):
                published += 1

        logger.info(
            "event_batch_broadcast",
            total=len(events),
            published=published,
            failed=len(events) - published,
        )
        return published

    async def _announce_recording(self, event: ChangeEvent) -> None:
        """Send the recording tool its legacy bare-string notification."""
        category = _RECORDING_CHANNELS.get(event.platform)
        if category is None:
            return
        if event.platform == "youtube":
            value = event.snapshot.metadata.get("videoId") or event.stream_key.split(":", 1)[-1]
        else:
            value = event.snapshot.metadata.get("userLogin") or event.snapshot.channel_id
        if value:
            await self._publish(category, str(value), prefixed=False)

    # ------------------------------------------------------------------
    # Other envelopes
    # ------------------------------------------------------------------

    async def publish_stats(self, stats: dict[str, Any]) -> bool:
        return await self.publish_envelope(
            EventEnvelope(event_type=CHANNEL_MONITORING_STATS, payload=stats)
        )

    async def publish_error(
        self, component: str, message: str, details: dict[str, Any] | None = None
    ) -> bool:
        return await self.publish_envelope(
            EventEnvelope(
                event_type=CHANNEL_ERROR,
                payload={"component": component, "message": message, "details": details or {}},
            )
        )

    async def publish_subscription(self, event: SubscriptionEvent) -> bool:
        """Publish a follow/unfollow request on ``subscription.<intent>``."""
        envelope = EventEnvelope(
            event_type=f"subscription.{event.intent.value}",
            timestamp=event.timestamp,
            payload={
                "intent": event.intent.value,
                "platform": event.platform,
                "streamKey": event.stream_key,
                "guildId": event.guild_id,
                "discordChannelId": event.discord_channel_id,
                "userId": event.user_id,
                "metadata": dict(event.metadata),
            },
        )
        return await self.publish_envelope(envelope)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Return ``True`` if the broker answers ``PING``; never raises."""
        try:
            await asyncio.wait_for(self._redis.ping(), timeout=self._publish_timeout)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("broker_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        try:
            await self._redis.aclose()
            logger.info("broker_connection_closed")
        except Exception:
            logger.exception("broker_close_failed")

    def health(self) -> HealthRecord:
        """Health of the publishing path based on the current failure streak."""
        if self.consecutive_failures == 0:
            status = HealthStatus.HEALTHY
            message = "publishing normally"
        elif self.consecutive_failures >= self._unhealthy_after:
            status = HealthStatus.UNHEALTHY
            message = f"{self.consecutive_failures} consecutive publish failures"
        else:
            status = HealthStatus.DEGRADED
            message = f"{self.consecutive_failures} consecutive publish failures"
        return HealthRecord(
            component_name="publisher",
            status=status,
            message=message,
            data={
                "consecutive_failures": self.consecutive_failures,
                "total_published": self.total_published,
                "total_failed": self.total_failed,
                "last_error": self.last_error,
            },
        )
