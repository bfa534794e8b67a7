"""TwitCasting platform monitor.

Uses the TwitCasting API v2 ``current_live`` endpoint, authenticated with
HTTP Basic auth built from the application's client id and secret.  The API
answers 404 when the user is not broadcasting, which the monitor reports as
"no broadcasts" rather than as a missing channel.

The default budget is 1000 requests per hour per application.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from stream_notify_crawler.core.domain import BroadcastSnapshot, StreamStatus, TrackedChannel
from stream_notify_crawler.monitors._http import classify_response, connection_error
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
from stream_notify_crawler.monitors.registry import register

logger = logging.getLogger(__name__)

TWITCASTING_API_BASE = "https://apiv2.twitcasting.tv"
TWITCASTING_MOVIE_URL = "https://twitcasting.tv/{screen_id}/movie/{movie_id}"


def live_to_snapshot(body: dict[str, Any], channel_id: str) -> BroadcastSnapshot | None:
    movie = body.get("movie") or {}
    broadcaster = body.get("broadcaster") or {}
    if not movie.get("id"):
        return None
    created = movie.get("created")
    screen_id = broadcaster.get("screen_id") or channel_id
    return BroadcastSnapshot(
        broadcast_id=str(movie["id"]),
        channel_id=channel_id,
        status=StreamStatus.LIVE if movie.get("is_live", True) else StreamStatus.ENDED,
        title=movie.get("title") or "",
        channel_title=broadcaster.get("name", ""),
        start_time=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        viewer_count=movie.get("current_view_count"),
        url=movie.get("link") or TWITCASTING_MOVIE_URL.format(screen_id=screen_id, movie_id=movie["id"]),
        metadata={
            "screenId": screen_id,
            "subtitle": movie.get("subtitle"),
            "category": movie.get("category"),
            "thumbnailUrl": movie.get("large_thumbnail"),
        },
    )


@register
class TwitCastingMonitor(PlatformMonitor):
    platform_name = "twitcasting"

    def __init__(self, *args: Any, http_client: httpx.AsyncClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def is_enabled(cls, settings) -> bool:  # type: ignore[no-untyped-def]
        return settings.twitcasting_enabled

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=TWITCASTING_API_BASE,
                auth=(self.settings.twitcasting_client_id, self.settings.twitcasting_client_secret),
                headers={"X-Api-Version": "2.0", "Accept": "application/json"},
                timeout=self.settings.http_timeout_seconds,
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        if self._http_client is None:
            raise RuntimeError("TwitCastingMonitor.open() has not been called")
        user_id = channel.external_channel_id
        path = f"/users/{user_id}/current_live"
        try:
            response = await self._http_client.get(path)
        except httpx.RequestError as exc:
            raise connection_error(self.platform_name, path, exc) from exc

        if response.status_code == 404:
            return ChannelFetch()
        if response.status_code != 200:
            raise classify_response(self.platform_name, path, response)

        snapshot = live_to_snapshot(response.json(), user_id)
        if snapshot is None:
            return ChannelFetch()
        return ChannelFetch(broadcasts=[snapshot], channel_title=snapshot.channel_title or None)
