"""Configuration constants for the Twitch monitor.

The Helix API allows 800 points per minute per app access token; the
``streams`` endpoint costs one point per request.
"""

from __future__ import annotations

TWITCH_API_BASE: str = "https://api.twitch.tv/helix"
"""Base URL for the Twitch Helix REST API."""

TWITCH_TOKEN_URL: str = "https://id.twitch.tv/oauth2/token"
"""OAuth 2.0 token endpoint for the Client Credentials grant."""

TWITCH_CHANNEL_URL: str = "https://twitch.tv/{login}"

USER_AGENT: str = "StreamNotifyCrawler/1.0 (twitch-monitor)"
