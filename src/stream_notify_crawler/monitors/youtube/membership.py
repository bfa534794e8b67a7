"""Members-only marker probe for YouTube channels.

Verifying that a viewer holds a channel membership requires one video that
only members can interact with.  For every queued channel that has no
verified marker yet, the probe:

1. lists the channel's members-only playlist (``UC…`` → ``UUMO…``).  A
   missing or empty playlist removes the channel from the queue and tells
   the owner there is nothing to verify against;
2. samples candidates uniformly at random without replacement and requests
   each one's comment threads:

   - comments disabled, or comments readable without membership: discard
     the candidate and draw again;
   - authorization denied (403): the candidate is members-only.  It becomes
     the verified marker and sampling stops;
   - any other error: the result is inconclusive, the stale marker is
     cleared and sampling stops;
   - all candidates discarded: exhausted, retried on the next pass;

3. refreshes the stored channel title when it changed.

The random source is injected so a seeded ``random.Random`` makes a pass
reproducible.  Every API call is admitted by the shared quota tracker; a
refused admission defers the channel to the next pass.
"""

from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Protocol

import httpx

from stream_notify_crawler.core.domain import MembershipProbeState, utcnow
from stream_notify_crawler.core.exceptions import (
    CommentsDisabledError,
    PersistenceError,
    PlatformAuthError,
    PlatformError,
    PlatformQuotaError,
    PlaylistNotFoundError,
)
from stream_notify_crawler.core.schemas.events import EventEnvelope
from stream_notify_crawler.monitors.youtube._client import (
    fetch_channel_title,
    fetch_comment_threads,
    fetch_playlist_page,
)
from stream_notify_crawler.monitors.youtube.config import (
    COST_CHANNELS_LIST,
    COST_COMMENT_THREADS_LIST,
    COST_PLAYLIST_ITEMS_LIST,
    MAX_PLAYLIST_PAGES,
    members_only_playlist_id,
)
from stream_notify_crawler.monitors.youtube.keys import ApiKeyPool

if TYPE_CHECKING:
    from stream_notify_crawler.core.event_bus import EventPublisher
    from stream_notify_crawler.core.quota import QuotaTracker
    from stream_notify_crawler.core.repository import StreamRepository

logger = logging.getLogger(__name__)

_PLATFORM = "youtube"


class ProbeOutcome(str, enum.Enum):
    VERIFIED = "verified"
    NO_CONTENT = "no_content"
    EXHAUSTED = "exhausted"
    INCONCLUSIVE = "inconclusive"
    DEFERRED = "deferred"
    """Quota refused or every key parked; retried on the next pass."""


@dataclass
class ProbeReport:
    channel_id: str
    outcome: ProbeOutcome
    marker_video_id: str = ""
    attempts: int = 0
    title_changed: bool = False


class ProbeNotifier(Protocol):
    """Receives probe results that the channel's owner should hear about."""

    async def no_member_content(self, channel_id: str) -> None: ...

    async def marker_verified(self, channel_id: str, video_id: str) -> None: ...

    async def channel_title_changed(self, channel_id: str, old_title: str, new_title: str) -> None: ...


class BrokerProbeNotifier:
    """:class:`ProbeNotifier` that publishes envelopes for the bot to relay.

    Args:
        publisher: The crawler's event publisher.
        category: Channel category to publish on (``owner_notify_channel``).
    """

    def __init__(self, publisher: EventPublisher, category: str = "membership.probe") -> None:
        self._publisher = publisher
        self._category = category

    async def _send(self, kind: str, **payload: str) -> None:
        await self._publisher.publish_envelope(
            EventEnvelope(event_type=self._category, payload={"kind": kind, **payload})
        )

    async def no_member_content(self, channel_id: str) -> None:
        await self._send("noMemberContent", channelId=channel_id)

    async def marker_verified(self, channel_id: str, video_id: str) -> None:
        await self._send("markerVerified", channelId=channel_id, videoId=video_id)

    async def channel_title_changed(self, channel_id: str, old_title: str, new_title: str) -> None:
        await self._send("channelTitleChanged", channelId=channel_id, oldTitle=old_title, newTitle=new_title)


class MembershipMarkerProbe:
    """Discovers and refreshes members-only marker videos.

    Args:
        http_client: Shared YouTube HTTP client.
        key_pool: Shared YouTube API key pool.
        quota: Shared quota tracker; calls are charged to ``"youtube"``.
        repository: Source and sink of :class:`MembershipProbeState`.
        notifier: Receives owner-facing results.
        rng: Random source used for candidate sampling.
        clock: Returns the current aware ``datetime``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        key_pool: ApiKeyPool,
        quota: QuotaTracker,
        repository: StreamRepository,
        notifier: ProbeNotifier,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = http_client
        self._keys = key_pool
        self._quota = quota
        self._repository = repository
        self._notifier = notifier
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock

    async def run_pass(self) -> list[ProbeReport]:
        """Probe every queued channel that lacks a marker or a title."""
        states = await self._repository.list_probe_states()
        reports = []
        for state in states:
            if not state.needs_probe:
                continue
            try:
                reports.append(await self.probe_channel(state))
            except PersistenceError:
                logger.exception("membership probe: could not persist %s", state.channel_id)
        if reports:
            logger.info(
                "membership probe pass complete",
                extra={
                    "channels": len(reports),
                    "verified": sum(r.outcome is ProbeOutcome.VERIFIED for r in reports),
                },
            )
        return reports

    async def probe_channel(self, state: MembershipProbeState) -> ProbeReport:
        report = ProbeReport(channel_id=state.channel_id, outcome=ProbeOutcome.VERIFIED)

        if not state.verified_marker_video_id:
            report = await self.find_marker(state)
            if report.outcome is ProbeOutcome.NO_CONTENT:
                await self._repository.remove_probe_channel(state.channel_id)
                await self._notifier.no_member_content(state.channel_id)
                return report
            if report.outcome is ProbeOutcome.VERIFIED:
                await self._notifier.marker_verified(state.channel_id, report.marker_video_id)

        report.title_changed = await self._refresh_title(state)
        state.last_checked_at = self._clock()
        await self._repository.save_probe_state(state)
        return report

    async def find_marker(self, state: MembershipProbeState) -> ProbeReport:
        """Sample candidates until one is members-only or the set is used up.

        Mutates ``state`` (``candidate_video_id`` and, on success or an
        inconclusive result, ``verified_marker_video_id``).
        """
        channel_id = state.channel_id
        try:
            candidates = await self._list_candidates(channel_id)
        except PlaylistNotFoundError:
            logger.warning("membership probe: %s has no members-only playlist", channel_id)
            return ProbeReport(channel_id, ProbeOutcome.NO_CONTENT)
        except PlatformError as exc:
            logger.warning("membership probe: listing %s failed: %s", channel_id, exc)
            return ProbeReport(channel_id, ProbeOutcome.DEFERRED)

        if candidates is None:
            return ProbeReport(channel_id, ProbeOutcome.DEFERRED)
        if not candidates:
            logger.warning("membership probe: %s members-only playlist is empty", channel_id)
            return ProbeReport(channel_id, ProbeOutcome.NO_CONTENT)

        remaining = list(candidates)
        attempts = 0
        while remaining:
            video_id = remaining.pop(self._rng.randrange(len(remaining)))
            if not await self._quota.try_admit(_PLATFORM, COST_COMMENT_THREADS_LIST):
                return ProbeReport(channel_id, ProbeOutcome.DEFERRED, attempts=attempts)
            try:
                api_key = self._keys.acquire()
            except PlatformQuotaError:
                return ProbeReport(channel_id, ProbeOutcome.DEFERRED, attempts=attempts)

            attempts += 1
            state.candidate_video_id = video_id
            try:
                await fetch_comment_threads(self._client, api_key, video_id)
            except CommentsDisabledError:
                logger.debug("membership probe: %s has comments disabled", video_id)
                continue
            except PlatformQuotaError as exc:
                if exc.status_code == 403:
                    self._keys.mark_exhausted(api_key)
                return ProbeReport(channel_id, ProbeOutcome.DEFERRED, attempts=attempts)
            except PlatformAuthError:
                state.verified_marker_video_id = video_id
                logger.info("membership probe: new marker for %s: %s", channel_id, video_id)
                return ProbeReport(channel_id, ProbeOutcome.VERIFIED, marker_video_id=video_id, attempts=attempts)
            except PlatformError as exc:
                state.verified_marker_video_id = ""
                logger.error("membership probe: %s check failed on %s: %s", channel_id, video_id, exc)
                return ProbeReport(channel_id, ProbeOutcome.INCONCLUSIVE, attempts=attempts)
            else:
                # Publicly readable comments: not a members-only video.
                continue

        logger.info("membership probe: %s candidates exhausted after %d attempts", channel_id, attempts)
        return ProbeReport(channel_id, ProbeOutcome.EXHAUSTED, attempts=attempts)

    async def _list_candidates(self, channel_id: str) -> list[str] | None:
        """Return the members-only playlist's video ids, ``None`` on quota refusal."""
        playlist_id = members_only_playlist_id(channel_id)
        video_ids: list[str] = []
        page_token: str | None = None
        for _ in range(MAX_PLAYLIST_PAGES):
            if not await self._quota.try_admit(_PLATFORM, COST_PLAYLIST_ITEMS_LIST):
                return list(dict.fromkeys(video_ids)) or None
            api_key = self._keys.acquire()
            page, page_token = await fetch_playlist_page(self._client, api_key, playlist_id, page_token)
            video_ids.extend(page)
            if not page_token:
                break
        return list(dict.fromkeys(video_ids))

    async def _refresh_title(self, state: MembershipProbeState) -> bool:
        if not await self._quota.try_admit(_PLATFORM, COST_CHANNELS_LIST):
            return False
        try:
            api_key = self._keys.acquire()
            title = await fetch_channel_title(self._client, api_key, state.channel_id)
        except PlatformError as exc:
            logger.warning("membership probe: title refresh for %s failed: %s", state.channel_id, exc)
            return False
        if not title or title == state.channel_title:
            return False
        old_title = state.channel_title
        state.channel_title = title
        logger.info("membership probe: channel %s renamed %r -> %r", state.channel_id, old_title, title)
        await self._notifier.channel_title_changed(state.channel_id, old_title, title)
        return True
