"""YouTube monitor constants and quota costs.

The YouTube Data API v3 grants 10,000 units per key per day, reset at
midnight Pacific time; the crawler resets its own accounting at UTC
midnight.  Channel discovery uses the public Atom RSS feed (zero quota);
only the live-status lookup is charged.

Quota unit costs (from the YouTube Data API v3 documentation):
- ``videos.list``:          1 unit  per call (batch up to 50 IDs)
- ``channels.list``:        1 unit  per call
- ``playlistItems.list``:   1 unit  per call
- ``commentThreads.list``:  1 unit  per call
"""

from __future__ import annotations

YOUTUBE_API_BASE_URL: str = "https://www.googleapis.com/youtube/v3"
"""Base URL for all YouTube Data API v3 endpoints."""

YOUTUBE_CHANNEL_RSS_URL: str = (
    "https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"
)
"""Atom feed of a channel's 15 most recent uploads.  No key, no quota."""

YOUTUBE_WATCH_URL: str = "https://www.youtube.com/watch?v={video_id}"

MAX_IDS_PER_VIDEOS_CALL: int = 50
MAX_PLAYLIST_PAGE_SIZE: int = 50
MAX_PLAYLIST_PAGES: int = 4
"""Upper bound on ``playlistItems.list`` pages fetched per probe."""

COST_VIDEOS_LIST: int = 1
COST_CHANNELS_LIST: int = 1
COST_PLAYLIST_ITEMS_LIST: int = 1
COST_COMMENT_THREADS_LIST: int = 1

QUOTA_REASONS: frozenset[str] = frozenset({"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded"})
"""``error.errors[0].reason`` values that mean the key's budget is spent."""

MEMBERS_ONLY_PLAYLIST_PREFIX: str = "UUMO"
"""Prefix of the auto-generated members-only uploads playlist."""


def members_only_playlist_id(channel_id: str) -> str:
    """Return the members-only playlist id for a ``UC…`` channel id."""
    if channel_id.startswith("UC"):
        return MEMBERS_ONLY_PLAYLIST_PREFIX + channel_id[2:]
    return channel_id
