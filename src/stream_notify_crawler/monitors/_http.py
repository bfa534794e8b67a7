"""HTTP status classification shared by the Helix, TwitCasting and Spaces clients.

YouTube classifies its own errors (see ``monitors.youtube._client``) because
its 403 responses carry several distinct meanings.
"""

from __future__ import annotations

import time

import httpx

from stream_notify_crawler.core.exceptions import (
    PlatformAuthError,
    PlatformError,
    PlatformNotFoundError,
    PlatformQuotaError,
    PlatformTransientError,
)

_RESET_HEADERS = ("Ratelimit-Reset", "x-rate-limit-reset", "X-RateLimit-Reset")


def retry_after_seconds(response: httpx.Response, default: float = 60.0) -> float:
    """Seconds until a rate-limited platform accepts requests again."""
    retry_after = response.headers.get("Retry-After")
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    for header in _RESET_HEADERS:
        reset = response.headers.get(header)
        if reset and reset.isdigit():
            return max(float(reset) - time.time(), 1.0)
    return default


def classify_response(platform: str, path: str, response: httpx.Response) -> PlatformError:
    """Map a non-2xx response to the crawler's exception hierarchy."""
    status = response.status_code
    message = f"{platform}: HTTP {status} on {path}"
    if status == 429:
        return PlatformQuotaError(
            message, retry_after=retry_after_seconds(response), platform=platform, status_code=429
        )
    if status in (401, 403):
        return PlatformAuthError(message, platform=platform, status_code=status)
    if status == 404:
        return PlatformNotFoundError(message, platform=platform, status_code=404)
    if status >= 500:
        return PlatformTransientError(message, platform=platform, status_code=status)
    return PlatformError(message, platform=platform, status_code=status)


def connection_error(platform: str, path: str, exc: httpx.RequestError) -> PlatformTransientError:
    return PlatformTransientError(f"{platform}: connection error on {path}: {exc}", platform=platform)
