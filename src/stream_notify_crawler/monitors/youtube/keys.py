"""In-memory pool of YouTube Data API keys.

Keys are handed out round-robin.  A key whose daily quota the API reports as
exhausted is parked until the next UTC midnight, when YouTube refills it.
Keys are never logged in full; :func:`mask_key` keeps the last four
characters.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from stream_notify_crawler.core.domain import utcnow
from stream_notify_crawler.core.exceptions import PlatformQuotaError

logger = logging.getLogger(__name__)


def mask_key(api_key: str) -> str:
    if len(api_key) <= 4:
        return "****"
    return f"****{api_key[-4:]}"


def _next_utc_midnight(now: datetime) -> datetime:
    midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class ApiKeyPool:
    """Round-robin YouTube API key rotation with per-key exhaustion.

    Args:
        api_keys: Configured keys.  Duplicates and blanks are dropped.
        clock: Returns the current aware ``datetime``.

    Raises:
        ValueError: If no usable key is given.
    """

    def __init__(self, api_keys: list[str], clock: Callable[[], datetime] = utcnow) -> None:
        keys = list(dict.fromkeys(k.strip() for k in api_keys if k and k.strip()))
        if not keys:
            raise ValueError("at least one YouTube API key is required")
        self._keys = keys
        self._clock = clock
        self._cursor = 0
        self._parked_until: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def available(self) -> list[str]:
        now = self._clock()
        for key, until in list(self._parked_until.items()):
            if now >= until:
                del self._parked_until[key]
                logger.info("youtube: api key %s available again", mask_key(key))
        return [k for k in self._keys if k not in self._parked_until]

    def acquire(self) -> str:
        """Return the next usable key.

        Raises:
            PlatformQuotaError: Every key is parked for the day.
        """
        available = self.available()
        if not available:
            retry_after = min(
                (until - self._clock()).total_seconds() for until in self._parked_until.values()
            )
            raise PlatformQuotaError(
                "youtube: every API key has exhausted its daily quota",
                retry_after=max(retry_after, 1.0),
                platform="youtube",
            )
        key = available[self._cursor % len(available)]
        self._cursor += 1
        return key

    def mark_exhausted(self, api_key: str) -> None:
        until = _next_utc_midnight(self._clock())
        self._parked_until[api_key] = until
        logger.warning(
            "youtube: api key %s exhausted until %s (%d of %d keys left)",
            mask_key(api_key),
            until.isoformat(),
            len(self._keys) - len(self._parked_until),
            len(self._keys),
        )
