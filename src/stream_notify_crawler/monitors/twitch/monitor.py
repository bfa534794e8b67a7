"""Twitch platform monitor.

Polls ``GET /helix/streams?user_login=<login>`` for every tracked channel.
The endpoint only lists streams that are live right now, so a tracked
stream that stops appearing is treated as ended by the shared diff.

Authentication uses an app access token from the Client Credentials grant.
The token is fetched lazily, cached on the monitor, and fetched again once
when Helix answers 401.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from stream_notify_crawler.core.domain import BroadcastSnapshot, StreamStatus, TrackedChannel
from stream_notify_crawler.core.exceptions import (
    PlatformAuthError,
    PlatformError,
    PlatformTransientError,
)
from stream_notify_crawler.monitors._http import classify_response, connection_error
from stream_notify_crawler.monitors.base import ChannelFetch, PlatformMonitor
from stream_notify_crawler.monitors.registry import register
from stream_notify_crawler.monitors.twitch.config import (
    TWITCH_API_BASE,
    TWITCH_CHANNEL_URL,
    TWITCH_TOKEN_URL,
    USER_AGENT,
)

logger = logging.getLogger(__name__)


def stream_to_snapshot(item: dict[str, Any], channel_id: str) -> BroadcastSnapshot:
    started_at = item.get("started_at")
    login = item.get("user_login") or channel_id
    return BroadcastSnapshot(
        broadcast_id=str(item["id"]),
        channel_id=channel_id,
        status=StreamStatus.LIVE,
        title=item.get("title", ""),
        channel_title=item.get("user_name", ""),
        start_time=datetime.fromisoformat(started_at.replace("Z", "+00:00")) if started_at else None,
        viewer_count=item.get("viewer_count"),
        url=TWITCH_CHANNEL_URL.format(login=login),
        metadata={
            "userLogin": login,
            "userId": item.get("user_id"),
            "gameName": item.get("game_name"),
            "thumbnailUrl": item.get("thumbnail_url"),
        },
    )


@register
class TwitchMonitor(PlatformMonitor):
    """Detects Twitch live streams for tracked user logins."""

    platform_name = "twitch"

    def __init__(self, *args: Any, http_client: httpx.AsyncClient | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._app_token: str | None = None

    @classmethod
    def is_enabled(cls, settings) -> bool:  # type: ignore[no-untyped-def]
        return settings.twitch_enabled

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._app_token = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise RuntimeError("TwitchMonitor.open() has not been called")
        return self._http_client

    async def _get_app_token(self) -> str:
        """Obtain (or return the cached) app access token.

        Raises:
            PlatformAuthError: Twitch rejected the client credentials.
            PlatformTransientError: Token endpoint unreachable or 5xx.
        """
        if self._app_token:
            return self._app_token

        try:
            response = await self.client.post(
                TWITCH_TOKEN_URL,
                data={
                    "client_id": self.settings.twitch_client_id,
                    "client_secret": self.settings.twitch_client_secret,
                    "grant_type": "client_credentials",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500:
                raise PlatformTransientError(
                    f"twitch: token endpoint HTTP {status}", platform="twitch", status_code=status
                ) from exc
            raise PlatformAuthError(
                f"twitch: failed to obtain app access token: HTTP {status}",
                platform="twitch",
                status_code=status,
            ) from exc
        except httpx.RequestError as exc:
            raise PlatformTransientError(
                f"twitch: connection error obtaining app access token: {exc}", platform="twitch"
            ) from exc

        token = response.json().get("access_token")
        if not token:
            raise PlatformAuthError("twitch: token response missing 'access_token' field", platform="twitch")
        self._app_token = str(token)
        logger.info("twitch_app_token_obtained")
        return self._app_token

    async def _helix_get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        for attempt in (1, 2):
            token = await self._get_app_token()
            try:
                response = await self.client.get(
                    f"{TWITCH_API_BASE}{path}",
                    params=params,
                    headers={
                        "Client-Id": self.settings.twitch_client_id,
                        "Authorization": f"Bearer {token}",
                    },
                )
            except httpx.RequestError as exc:
                raise connection_error("twitch", path, exc) from exc

            if response.status_code == 401 and attempt == 1:
                logger.info("twitch_app_token_rejected")
                self._app_token = None
                continue
            if response.status_code == 200:
                return response.json()
            raise classify_response("twitch", path, response)
        raise PlatformAuthError(f"twitch: HTTP 401 on {path} after token refresh", platform="twitch", status_code=401)

    async def fetch_channel(self, channel: TrackedChannel) -> ChannelFetch:
        login = channel.external_channel_id
        data = await self._helix_get("/streams", {"user_login": login, "type": "live"})
        broadcasts = [stream_to_snapshot(item, login) for item in data.get("data", []) if item.get("type", "live") == "live"]
        title = broadcasts[0].channel_title if broadcasts else None
        return ChannelFetch(broadcasts=broadcasts, channel_title=title or None)

    async def health_check(self) -> dict[str, Any]:
        try:
            await self._helix_get("/streams", {"first": 1})
        except PlatformError as exc:
            return {"platform": self.platform_name, "status": "error", "detail": str(exc)}
        return {"platform": self.platform_name, "status": "ok"}

