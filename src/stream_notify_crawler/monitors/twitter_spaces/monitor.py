"""Twitter/X Spaces monitor.

Looks up the live and scheduled Spaces hosted by each tracked user through
the v2 ``spaces/by/creator_ids`` endpoint (bearer-token auth).  The endpoint
is limited to 75 requests per 15 minutes; the quota tracker enforces that
window locally so the platform never has to answer 429.

A user id the API no longer knows comes back as an error object rather
than an HTTP error; it is raised as :class:`PlatformNotFoundError` so the
channel can be deactivated by stale-channel cleanup.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from stream_notify_crawler.core.domain import BroadcastSnapshot, StreamStatus, TrackedChannel
from stream_notify_crawler.core.exceptions import PlatformNotFoundError
from stream_notify_crawler.monitors._http import classify_response, connection_error
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
from stream_notify_crawler.monitors.registry import register

logger = logging.getLogger(__name__)

TWITTER_API_BASE = "https://api.twitter.com/2"
SPACE_URL = "https://twitter.com/i/spaces/{space_id}"
SPACE_FIELDS = "state,title,started_at,scheduled_start,ended_at,participant_count,creator_id"

_STATES = {
    "live": StreamStatus.LIVE,
    "scheduled": StreamStatus.SCHEDULED,
    "ended": StreamStatus.ENDED,
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def space_to_snapshot(space: dict[str, Any], channel_id: str, host_name: str = "") -> BroadcastSnapshot | None:
    status = _STATES.get(space.get("state", ""))
    if status is None or not space.get("id"):
        return None
    return BroadcastSnapshot(
        broadcast_id=space["id"],
        channel_id=channel_id,
        status=status,
        title=space.get("title", ""),
        channel_title=host_name,
        start_time=_parse_time(space.get("started_at") or space.get("scheduled_start")),
        end_time=_parse_time(space.get("ended_at")),
        viewer_count=space.get("participant_count"),
        url=SPACE_URL.format(space_id=space["id"]),
        metadata={"scheduledStart": space.get("scheduled_start")},
    )


@register
class TwitterSpacesMonitor(PlatformMonitor):
    platform_name = "twitter_spaces"

    def __init__(self, *args: Any, http_client: httpx.AsyncClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def is_enabled(cls, settings) -> bool:  # type: ignore[no-untyped-def]
        return settings.twitter_enabled

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=TWITTER_API_BASE,
                headers={"Authorization": f"Bearer {self.settings.twitter_bearer_token}"},
                timeout=self.settings.http_timeout_seconds,
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        if self._http_client is None:
            raise RuntimeError("TwitterSpacesMonitor.open() has not been called")
        user_id = channel.external_channel_id
        path = "/spaces/by/creator_ids"
        params = {
            "user_ids": user_id,
            "space.fields": SPACE_FIELDS,
            "expansions": "creator_id",
            "user.fields": "name",
        }
        try:
            response = await self._http_client.get(path, params=params)
        except httpx.RequestError as exc:
            raise connection_error(self.platform_name, path, exc) from exc
        if response.status_code != 200:
            raise classify_response(self.platform_name, path, response)

        body = response.json()
        spaces = body.get("data") or []
        errors = body.get("errors") or []
        if not spaces and any("not-found" in str(err.get("type", "")) for err in errors):
            raise PlatformNotFoundError(
                f"twitter_spaces: user {user_id} not found", platform=self.platform_name, status_code=404
            )

        users = (body.get("includes") or {}).get("users") or []
        host_name = next((u.get("name", "") for u in users if u.get("id") == user_id), "")
        broadcasts = [
            snapshot
            for snapshot in (space_to_snapshot(space, user_id, host_name) for space in spaces)
            if snapshot is not None
        ]
        return ChannelFetch(broadcasts=broadcasts, channel_title=host_name or None)
