"""Unit tests for QuotaTracker and QuotaPolicy.

Tests cover:
- try_admit() admits until the window's limit and refuses the call that would exceed it
- A refused admission leaves used_units unchanged
- Platforms without a policy are always admitted
- Concurrent admissions never exceed the limit
- reset_if_window_elapsed() only resets after window_reset_at
- try_admit() rolls an elapsed window before checking
- QuotaPolicy.next_reset() uses UTC midnight when window_seconds is None
- The 80 % warning is logged once per window
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from stream_notify_crawler.core.quota import QuotaPolicy, QuotaTracker


class TestTryAdmit:
    @pytest.mark.asyncio
    async def test_eleventh_call_of_ten_units_is_refused(self, clock) -> None:
        """limit 100, cost 10: ten calls fit, the eleventh does not."""
        tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=100)}, clock=clock)

        admitted = [await tracker.try_admit("youtube", 10) for _ in range(10)]
        eleventh = await tracker.try_admit("youtube", 10)

        assert all(admitted)
        assert eleventh is False
        assert tracker.current_usage("youtube").used_units == 100

    @pytest.mark.asyncio
    async def test_refusal_does_not_consume_units(self, clock) -> None:
        tracker = QuotaTracker({"twitch": QuotaPolicy(limit_units=5, window_seconds=60)}, clock=clock)
        assert await tracker.try_admit("twitch", 4)

        assert await tracker.try_admit("twitch", 2) is False
        assert tracker.current_usage("twitch").used_units == 4
        assert await tracker.try_admit("twitch", 1) is True

    @pytest.mark.asyncio
    async def test_unaccounted_platform_is_always_admitted(self, clock) -> None:
        tracker = QuotaTracker({}, clock=clock)
        assert await tracker.try_admit("twitcasting", 1_000_000)

    @pytest.mark.asyncio
    async def test_negative_cost_is_rejected(self, clock) -> None:
        tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=10)}, clock=clock)
        with pytest.raises(ValueError):
            await tracker.try_admit("youtube", -1)

    @pytest.mark.asyncio
    async def test_concurrent_admissions_never_exceed_limit(self, clock) -> None:
        tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=25)}, clock=clock)

        results = await asyncio.gather(*(tracker.try_admit("youtube", 1) for _ in range(100)))

        assert sum(results) == 25
        assert tracker.current_usage("youtube").used_units == 25
        assert tracker.is_exhausted("youtube")


class TestWindows:
    @pytest.mark.asyncio
    async def test_reset_only_after_window_elapsed(self, clock) -> None:
        tracker = QuotaTracker({"twitter_spaces": QuotaPolicy(75, window_seconds=900)}, clock=clock)
        await tracker.try_admit("twitter_spaces", 75)

        clock.advance(seconds=899)
        assert await tracker.reset_if_window_elapsed("twitter_spaces") is False
        assert tracker.current_usage("twitter_spaces").used_units == 75

        clock.advance(seconds=1)
        assert await tracker.reset_if_window_elapsed("twitter_spaces") is True
        usage = tracker.current_usage("twitter_spaces")
        assert usage.used_units == 0
        assert usage.window_reset_at == clock.now + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_try_admit_rolls_elapsed_window(self, clock) -> None:
        tracker = QuotaTracker({"twitch": QuotaPolicy(10, window_seconds=60)}, clock=clock)
        await tracker.try_admit("twitch", 10)
        assert await tracker.try_admit("twitch", 1) is False

        clock.advance(seconds=61)

        assert await tracker.try_admit("twitch", 1) is True
        assert tracker.current_usage("twitch").used_units == 1

    @pytest.mark.asyncio
    async def test_reset_of_unknown_platform_is_noop(self, clock) -> None:
        tracker = QuotaTracker({}, clock=clock)
        assert await tracker.reset_if_window_elapsed("youtube") is False

    def test_daily_policy_resets_at_next_utc_midnight(self) -> None:
        policy = QuotaPolicy(limit_units=10_000)
        now = datetime(2026, 10, 17, 23, 59, 30, tzinfo=timezone.utc)

        assert policy.next_reset(now) == datetime(2026, 10, 18, tzinfo=timezone.utc)

    def test_current_usage_unknown_platform_raises(self, clock) -> None:
        with pytest.raises(KeyError):
            QuotaTracker({}, clock=clock).current_usage("youtube")


class TestUsageWarning:
    @pytest.mark.asyncio
    async def test_high_usage_warning_logged_once_per_window(self, clock, caplog) -> None:
        tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=10)}, clock=clock)

        with caplog.at_level(logging.WARNING, logger="stream_notify_crawler.core.quota"):
            for _ in range(10):
                await tracker.try_admit("youtube", 1)

        warnings = [r for r in caplog.records if r.getMessage() == "quota_usage_high"]
        assert len(warnings) == 1
        assert warnings[0].percentage == 80.0

    def test_quota_state_to_dict(self, clock) -> None:
        tracker = QuotaTracker({"youtube": QuotaPolicy(limit_units=200)}, clock=clock)
        payload = tracker.current_usage("youtube").to_dict()

        assert payload["platform"] == "youtube"
        assert payload["limitUnits"] == 200
        assert payload["remainingUnits"] == 200
        assert payload["usagePercentage"] == 0.0
        assert payload["windowResetAt"] == "2026-10-18T00:00:00+00:00"
