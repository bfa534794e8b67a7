"""Low-level HTTP and RSS client functions for the YouTube monitor.

Separates network I/O from the monitor's business logic.  Functions in this
module are pure I/O helpers:

- :func:`fetch_channel_feed` — parse a channel's Atom feed with ``feedparser``.
- :func:`fetch_videos` — one ``videos.list`` batch call.
- :func:`fetch_playlist_page` — one ``playlistItems.list`` page.
- :func:`fetch_comment_threads` — one ``commentThreads.list`` call.
- :func:`fetch_channel_title` — one ``channels.list`` call.
- :func:`video_to_snapshot` — map a ``videos`` resource to a snapshot.

Errors are classified here, per endpoint, into the crawler's exception
hierarchy.  Callers are responsible for quota admission and key rotation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, NamedTuple

import feedparser
import httpx

from stream_notify_crawler.core.domain import BroadcastSnapshot, StreamStatus
from stream_notify_crawler.core.exceptions import (
    CommentsDisabledError,
    PlatformAuthError,
    PlatformError,
    PlatformNotFoundError,
    PlatformQuotaError,
    PlatformTransientError,
    PlaylistNotFoundError,
)
from stream_notify_crawler.monitors.youtube.config import (
    MAX_PLAYLIST_PAGE_SIZE,
    QUOTA_REASONS,
    YOUTUBE_API_BASE_URL,
    YOUTUBE_CHANNEL_RSS_URL,
    YOUTUBE_WATCH_URL,
)

logger = logging.getLogger(__name__)

_PLATFORM = "youtube"


class FeedResult(NamedTuple):
    video_ids: list[str]
    channel_title: str | None


def extract_error_reason(response: httpx.Response) -> str:
    """Extract the ``reason`` field from a YouTube API error response body.

    Returns:
        The ``reason`` string (e.g. ``"quotaExceeded"``), or ``"unknown"``
        if the body cannot be parsed.
    """
    try:
        body = response.json()
        errors = body.get("error", {}).get("errors", [])
        if errors:
            return errors[0].get("reason", "unknown")
    except (ValueError, AttributeError):
        pass
    return "unknown"


def classify_http_error(endpoint: str, response: httpx.Response) -> PlatformError:
    """Map a non-2xx YouTube response to the matching exception instance."""
    status_code = response.status_code
    reason = extract_error_reason(response)
    message = f"youtube: HTTP {status_code} (reason={reason}) on endpoint '{endpoint}'"

    if status_code == 403:
        if reason in QUOTA_REASONS:
            return PlatformQuotaError(message, retry_after=3600.0, platform=_PLATFORM, status_code=403)
        if reason == "commentsDisabled":
            return CommentsDisabledError(message, platform=_PLATFORM, status_code=403)
        return PlatformAuthError(message, platform=_PLATFORM, status_code=403)
    if status_code == 401:
        return PlatformAuthError(message, platform=_PLATFORM, status_code=401)
    if status_code == 404:
        if reason == "playlistNotFound":
            return PlaylistNotFoundError(message, platform=_PLATFORM, status_code=404)
        return PlatformNotFoundError(message, platform=_PLATFORM, status_code=404)
    if status_code == 429:
        retry_after = float(response.headers.get("Retry-After", "60") or 60)
        return PlatformQuotaError(message, retry_after=retry_after, platform=_PLATFORM, status_code=429)
    if status_code >= 500:
        return PlatformTransientError(message, platform=_PLATFORM, status_code=status_code)
    return PlatformError(message, platform=_PLATFORM, status_code=status_code)


async def make_api_request(
    client: httpx.AsyncClient,
    endpoint: str,
    params: dict[str, Any],
) -> dict[str, Any]:
    """Make a YouTube Data API v3 GET request with error classification.

    Args:
        client: Shared :class:`httpx.AsyncClient`.
        endpoint: API endpoint path segment (e.g. ``"videos"``).
        params: Query parameter dict.  Must include ``key``.

    Returns:
        Parsed JSON response dict.

    Raises:
        PlatformError: A subclass chosen by :func:`classify_http_error`, or
            :class:`PlatformTransientError` on a network failure.
    """
    url = f"{YOUTUBE_API_BASE_URL}/{endpoint}"
    try:
        response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as exc:
        raise classify_http_error(endpoint, exc.response) from exc
    except httpx.RequestError as exc:
        raise PlatformTransientError(
            f"youtube: connection error on endpoint '{endpoint}': {exc}",
            platform=_PLATFORM,
        ) from exc


async def fetch_channel_feed(client: httpx.AsyncClient, channel_id: str) -> FeedResult:
    """Fetch and parse a channel's Atom feed (zero quota).

    Raises:
        PlatformNotFoundError: The channel does not exist (HTTP 404).
        PlatformTransientError: Server error or network failure.
    """
    url = YOUTUBE_CHANNEL_RSS_URL.format(channel_id=channel_id)
    try:
        response = await client.get(url)
    except httpx.RequestError as exc:
        raise PlatformTransientError(
            f"youtube: feed request failed for {channel_id}: {exc}", platform=_PLATFORM
        ) from exc

    if response.status_code == 404:
        raise PlatformNotFoundError(f"youtube: no feed for channel {channel_id}", platform=_PLATFORM, status_code=404)
    if response.status_code >= 500:
        raise PlatformTransientError(
            f"youtube: feed HTTP {response.status_code} for {channel_id}",
            platform=_PLATFORM,
            status_code=response.status_code,
        )
    if response.status_code != 200:
        raise PlatformError(
            f"youtube: feed HTTP {response.status_code} for {channel_id}",
            platform=_PLATFORM,
            status_code=response.status_code,
        )

    feed = feedparser.parse(response.text)
    if feed.bozo and not feed.entries:
        logger.warning("youtube: feed bozo error for channel %s: %s", channel_id, feed.bozo_exception)
        return FeedResult([], None)

    video_ids: list[str] = []
    for entry in feed.entries:
        video_id: str | None = getattr(entry, "yt_videoid", None)
        if not video_id:
            link = getattr(entry, "link", "")
            if "watch?v=" in link:
                video_id = link.split("watch?v=")[-1].split("&")[0]
        if video_id:
            video_ids.append(video_id)

    title = feed.feed.get("title") if getattr(feed, "feed", None) else None
    logger.debug("youtube: feed channel %s → %d ids", channel_id, len(video_ids))
    return FeedResult(video_ids, title or None)


async def fetch_videos(
    client: httpx.AsyncClient, api_key: str, video_ids: list[str]
) -> list[dict[str, Any]]:
    """Fetch live-status metadata for up to 50 video ids (1 quota unit)."""
    data = await make_api_request(
        client,
        "videos",
        {"id": ",".join(video_ids), "part": "snippet,liveStreamingDetails", "key": api_key},
    )
    items: list[dict[str, Any]] = data.get("items", [])
    logger.debug("youtube: videos.list batch size=%d → %d items", len(video_ids), len(items))
    return items


async def fetch_playlist_page(
    client: httpx.AsyncClient,
    api_key: str,
    playlist_id: str,
    page_token: str | None = None,
) -> tuple[list[str], str | None]:
    """Fetch one page of a playlist.

    Returns:
        Tuple of (video ids, next page token or ``None``).

    Raises:
        PlaylistNotFoundError: The playlist does not exist.
    """
    params: dict[str, Any] = {
        "playlistId": playlist_id,
        "part": "snippet",
        "maxResults": MAX_PLAYLIST_PAGE_SIZE,
        "key": api_key,
    }
    if page_token:
        params["pageToken"] = page_token
    try:
        data = await make_api_request(client, "playlistItems", params)
    except PlatformNotFoundError as exc:
        if isinstance(exc, PlaylistNotFoundError):
            raise
        raise PlaylistNotFoundError(str(exc), platform=_PLATFORM, status_code=404) from exc

    video_ids = [
        item["snippet"]["resourceId"]["videoId"]
        for item in data.get("items", [])
        if item.get("snippet", {}).get("resourceId", {}).get("videoId")
    ]
    return video_ids, data.get("nextPageToken")


async def fetch_comment_threads(client: httpx.AsyncClient, api_key: str, video_id: str) -> dict[str, Any]:
    """Request a video's comment threads.

    On a members-only video this raises :class:`PlatformAuthError`; the
    membership probe treats that as proof the video is paywalled.
    """
    return await make_api_request(
        client,
        "commentThreads",
        {"videoId": video_id, "part": "snippet", "maxResults": 1, "key": api_key},
    )


async def fetch_channel_title(client: httpx.AsyncClient, api_key: str, channel_id: str) -> str:
    """Return the channel's current display title.

    Raises:
        PlatformNotFoundError: ``channels.list`` returned no item.
    """
    data = await make_api_request(client, "channels", {"id": channel_id, "part": "snippet", "key": api_key})
    items = data.get("items", [])
    if not items:
        raise PlatformNotFoundError(f"youtube: channel {channel_id} not found", platform=_PLATFORM, status_code=404)
    return items[0].get("snippet", {}).get("title", "")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def video_to_snapshot(item: dict[str, Any]) -> BroadcastSnapshot | None:
    """Map a ``videos`` resource to a :class:`BroadcastSnapshot`.

    Returns ``None`` for ordinary uploads that were never broadcasts.
    """
    video_id = item.get("id")
    snippet = item.get("snippet", {})
    details = item.get("liveStreamingDetails")
    content = snippet.get("liveBroadcastContent", "none")
    if not video_id:
        return None

    if content == "live":
        status = StreamStatus.LIVE
    elif content == "upcoming":
        status = StreamStatus.SCHEDULED
    elif details:
        status = StreamStatus.ENDED
    else:
        return None

    details = details or {}
    viewers = details.get("concurrentViewers")
    return BroadcastSnapshot(
        broadcast_id=video_id,
        channel_id=snippet.get("channelId", ""),
        status=status,
        title=snippet.get("title", ""),
        channel_title=snippet.get("channelTitle", ""),
        start_time=_parse_time(details.get("actualStartTime") or details.get("scheduledStartTime")),
        end_time=_parse_time(details.get("actualEndTime")),
        viewer_count=int(viewers) if viewers is not None else None,
        url=YOUTUBE_WATCH_URL.format(video_id=video_id),
        metadata={
            "videoId": video_id,
            "scheduledStartTime": details.get("scheduledStartTime"),
        },
    )
