"""Per-platform API budget accounting.

Every accounted platform call goes through :meth:`QuotaTracker.try_admit`,
which checks the remaining budget and records the cost in one step under a
per-platform ``asyncio.Lock``.  Two monitors that share a platform budget can
therefore never over-admit.

A refused admission is not an error: the caller skips the API call for this
cycle and reports itself Degraded.  Budgets refill when the window elapses.

Typical usage::

    tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=10_000)})

    if await tracker.try_admit("youtube", cost=1):
        items = await client.fetch_videos(ids)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from stream_notify_crawler.core.domain import QuotaState, utcnow

logger = logging.getLogger(__name__)

_WARNING_PERCENTAGE: float = 80.0
"""Usage level at which a one-time warning is logged for the window."""


@dataclass(frozen=True)
class QuotaPolicy:
    """Budget configuration for one platform.

    Attributes:
        limit_units: Units available per window.
        window_seconds: Length of a rolling window.  ``None`` means the
            window ends at the next UTC midnight (the YouTube convention).
    """

    limit_units: int
    window_seconds: int | None = None

    def next_reset(self, now: datetime) -> datetime:
        if self.window_seconds is None:
            midnight = now.astimezone(timezone.utc).replace(
                hour=0, minute=0, second=0, microsecond=0
            )
            return midnight + timedelta(days=1)
        return now + timedelta(seconds=self.window_seconds)


@dataclass
class _Budget:
    policy: QuotaPolicy
    used_units: int
    window_reset_at: datetime
    warning_logged: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


class QuotaTracker:
    """In-process quota accounting for all monitored platforms.

    Args:
        policies: Mapping of platform name to :class:`QuotaPolicy`.
            Platforms without a policy are admitted unconditionally.
        clock: Zero-argument callable returning an aware ``datetime``.
            Injected so tests can move time forward.
    """

    def __init__(
        self,
        policies: dict[str, QuotaPolicy],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._clock = clock
        now = clock()
        self._budgets: dict[str, _Budget] = {
            platform: _Budget(policy=policy, used_units=0, window_reset_at=policy.next_reset(now))
            for platform, policy in policies.items()
        }

    @property
    def platforms(self) -> list[str]:
        return list(self._budgets)

    def _roll_window(self, platform: str, budget: _Budget) -> bool:
        """Reset ``budget`` when its window has elapsed.  Caller holds the lock."""
        now = self._clock()
        if now < budget.window_reset_at:
            return False
        logger.info(
            "quota_window_reset",
            extra={"platform": platform, "used_units": budget.used_units},
        )
        budget.used_units = 0
        budget.warning_logged = False
        budget.window_reset_at = budget.policy.next_reset(now)
        return True

    async def try_admit(self, platform: str, cost: int = 1) -> bool:
        """Admit one call of ``cost`` units if the window has room for it.

        Check and increment happen under the platform's lock, so concurrent
        callers see a consistent ``used_units``.

        Returns:
            ``True`` if admitted (``used_units`` has been incremented),
            ``False`` if the call would exceed ``limit_units``.
        """
        budget = self._budgets.get(platform)
        if budget is None:
            return True
        if cost < 0:
            raise ValueError("cost must be non-negative")

        async with budget.lock:
            self._roll_window(platform, budget)
            if budget.used_units + cost > budget.policy.limit_units:
                logger.warning(
                    "quota_admission_refused",
                    extra={
                        "platform": platform,
                        "cost": cost,
                        "used_units": budget.used_units,
                        "limit_units": budget.policy.limit_units,
                        "window_reset_at": budget.window_reset_at.isoformat(),
                    },
                )
                return False
            budget.used_units += cost
            percentage = budget.used_units / budget.policy.limit_units * 100
            if percentage >= _WARNING_PERCENTAGE and not budget.warning_logged:
                budget.warning_logged = True
                logger.warning(
                    "quota_usage_high",
                    extra={
                        "platform": platform,
                        "percentage": round(percentage, 1),
                        "used_units": budget.used_units,
                        "limit_units": budget.policy.limit_units,
                    },
                )
            return True

    def current_usage(self, platform: str) -> QuotaState:
        """Return a snapshot of ``platform``'s budget.

        Raises:
            KeyError: If no policy is registered for ``platform``.
        """
        budget = self._budgets[platform]
        return QuotaState(
            platform=platform,
            used_units=budget.used_units,
            limit_units=budget.policy.limit_units,
            window_reset_at=budget.window_reset_at,
        )

    async def reset_if_window_elapsed(self, platform: str) -> bool:
        """Reset ``platform``'s usage if its window is over.

        Returns:
            ``True`` if a reset happened.
        """
        budget = self._budgets.get(platform)
        if budget is None:
            return False
        async with budget.lock:
            return self._roll_window(platform, budget)

    def is_exhausted(self, platform: str) -> bool:
        budget = self._budgets.get(platform)
        if budget is None:
            return False
        return budget.used_units >= budget.policy.limit_units

    def all_usage(self) -> dict[str, QuotaState]:
        return {platform: self.current_usage(platform) for platform in self._budgets}
