"""YouTube platform monitor.

Discovery is RSS-first: each channel's Atom feed (zero quota) yields its most
recent uploads, which are merged with the channel's still-open broadcasts
from the state store and resolved with ``videos.list`` calls of at most
``batch_size`` ids (1 unit each, 50 ids at most).  Ordinary uploads
without ``liveStreamingDetails`` are ignored.

API keys rotate through :class:`ApiKeyPool`; a key that reports
``quotaExceeded`` is parked until UTC midnight and the call is retried with
the next key before the error reaches the poll cycle.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import httpx

from stream_notify_crawler.core.domain import StreamStatus, TrackedChannel
from stream_notify_crawler.core.exceptions import PlatformQuotaError
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
from stream_notify_crawler.monitors.registry import register
from stream_notify_crawler.monitors.youtube._client import (
    fetch_channel_feed,
    fetch_videos,
    video_to_snapshot,
)
from stream_notify_crawler.monitors.youtube.config import (
    COST_VIDEOS_LIST,
    MAX_IDS_PER_VIDEOS_CALL,
)
from stream_notify_crawler.monitors.youtube.keys import ApiKeyPool, mask_key

logger = logging.getLogger(__name__)


@register
class YouTubeMonitor(PlatformMonitor):
    """Detects YouTube live broadcasts for tracked ``UC…`` channels.

    Args:
        http_client: Optional shared :class:`httpx.AsyncClient`.  When
            omitted the monitor creates and owns one in :meth:`open`.
        key_pool: Optional pre-built key pool (tests inject one).
    """

    platform_name = "youtube"
    call_cost = COST_VIDEOS_LIST

    def __init__(
        self,
        *args: Any,
        http_client: httpx.AsyncClient | None = None,
        key_pool: ApiKeyPool | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._http_client = http_client
        self._owns_client = http_client is None
        self.key_pool = key_pool

    @classmethod
    def is_enabled(cls, settings) -> bool:  # type: ignore[no-untyped-def]
        return settings.youtube_enabled

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise RuntimeError("YouTubeMonitor.open() has not been called")
        return self._http_client

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                follow_redirects=True,
            )
            self._owns_client = True
        if self.key_pool is None:
            self.key_pool = ApiKeyPool(self.settings.youtube_api_keys)
        logger.info("youtube: monitor ready with %d api key(s)", len(self.key_pool))

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        channel_id = channel.external_channel_id
        feed = await fetch_channel_feed(self.http_client, channel_id)

        open_ids = [
            record.stream_key.split(":", 1)[1]
            for record in self.state_store.open_records(self.platform_name, channel_id)
        ]
        video_ids = list(dict.fromkeys(open_ids + feed.video_ids))
        if not video_ids:
            return ChannelFetch(broadcasts=[], channel_title=feed.channel_title)

        items, checked = await self._lookup_in_batches(channel_id, video_ids)
        broadcasts = []
        for item in items:
            snapshot = video_to_snapshot(item)
            if snapshot is None:
                continue
            if snapshot.channel_id != channel_id:
                snapshot = replace(snapshot, channel_id=channel_id)
            broadcasts.append(snapshot)

        live = sum(1 for s in broadcasts if s.status is StreamStatus.LIVE)
        logger.debug(
            "youtube: channel %s → %d ids, %d broadcasts, %d live",
            channel_id,
            len(video_ids),
            len(broadcasts),
            live,
        )
        return ChannelFetch(
            broadcasts=broadcasts,
            channel_title=feed.channel_title,
            checked_keys=frozenset(f"{self.platform_name}:{vid}" for vid in checked),
        )

    async def _lookup_in_batches(
        self, channel_id: str, video_ids: list[str]
    ) -> tuple[list[dict[str, Any]], list[str]]:
        """Resolve ``video_ids`` in ``videos.list`` batches of at most ``batch_size``.

        The first batch is already charged by the poll cycle; every further
        batch is admitted against the quota separately.  When admission is
        refused the remaining ids are left unchecked for this cycle.

        Returns:
            The returned items and the ids that were actually looked up.
        """
        limit = min(self.settings.batch_size, MAX_IDS_PER_VIDEOS_CALL)
        items: list[dict[str, Any]] = []
        checked: list[str] = []
        for offset in range(0, len(video_ids), limit):
            batch = video_ids[offset : offset + limit]
            if offset and not await self.quota.try_admit(self.platform_name, self.call_cost):
                logger.warning(
                    "youtube: quota refused after %d of %d ids for channel %s",
                    len(checked),
                    len(video_ids),
                    channel_id,
                )
                self.quota_throttled = True
                break
            items.extend(await self.videos_with_rotation(batch))
            checked.extend(batch)
        return items, checked

    async def videos_with_rotation(self, video_ids: list[str]) -> list[dict[str, Any]]:
        """Call ``videos.list``, rotating to the next key on quota exhaustion."""
        if self.key_pool is None:
            raise RuntimeError("YouTubeMonitor.open() has not been called")
        for _ in range(len(self.key_pool)):
            api_key = self.key_pool.acquire()
            try:
                return await fetch_videos(self.http_client, api_key, video_ids)
            except PlatformQuotaError as exc:
                if exc.status_code != 403:
                    raise
                self.key_pool.mark_exhausted(api_key)
        # Every key is parked now; acquire() raises the quota error.
        self.key_pool.acquire()
        return []

    async def health_check(self) -> dict[str, Any]:
        available = self.key_pool.available() if self.key_pool else []
        return {
            "platform": self.platform_name,
            "status": "ok" if available else "degraded",
            "api_keys_total": len(self.key_pool) if self.key_pool else 0,
            "api_keys_available": [mask_key(k) for k in available],
        }
