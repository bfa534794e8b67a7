#!/usr/bin/env python
"""Run one membership-marker probe pass outside the scheduler.

Run from the project root::

    python scripts/probe_membership.py [--channel UC...] [--seed 42] [--dry-run]

Without ``--channel`` every queued channel that lacks a verified marker (or
a title) is probed, exactly as the maintenance loop would.  With
``--channel`` only that channel is probed; it is added to the queue first if
it is not there yet.

``--dry-run`` prints the owner notifications to stdout instead of publishing
them on the broker.  Probe state is still persisted.

Options:
    --channel  YouTube channel id (``UC…``) to probe.
    --seed     Seed for candidate sampling, for reproducible runs.
    --dry-run  Print notifications instead of publishing them.

Exit codes:
    0 — Pass completed.
    1 — YouTube is not configured, or a database or broker error occurred.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import random
import sys
from typing import Optional

# Ensure the src layout is on sys.path when run as a standalone script.
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_SRC_DIR = os.path.join(os.path.dirname(_SCRIPT_DIR), "src")
if _SRC_DIR not in sys.path:
    sys.path.insert(0, _SRC_DIR)


class _StdoutNotifier:
    async def no_member_content(self, channel_id: str) -> None:
        print(f"[probe_membership] {channel_id}: no members-only content")

    async def marker_verified(self, channel_id: str, video_id: str) -> None:
        print(f"[probe_membership] {channel_id}: verified marker {video_id}")

    async def channel_title_changed(self, channel_id: str, old_title: str, new_title: str) -> None:
        print(f"[probe_membership] {channel_id}: renamed {old_title!r} -> {new_title!r}")


async def _run(channel_id: Optional[str], seed: Optional[int], dry_run: bool) -> int:
    """Build the probe from settings and run one pass.

    Returns:
        The process exit code.
    """
    import httpx  # noqa: PLC0415

    from stream_notify_crawler.api.main import build_publisher  # noqa: PLC0415
    from stream_notify_crawler.config.settings import get_settings  # noqa: PLC0415
    from stream_notify_crawler.core.database import build_engine, build_session_factory  # noqa: PLC0415
    from stream_notify_crawler.core.domain import MembershipProbeState  # noqa: PLC0415
    from stream_notify_crawler.core.exceptions import StreamCrawlerError  # noqa: PLC0415
    from stream_notify_crawler.core.logging_config import configure_logging  # noqa: PLC0415
    from stream_notify_crawler.core.quota import QuotaTracker  # noqa: PLC0415
    from stream_notify_crawler.core.repository import SqlAlchemyStreamRepository  # noqa: PLC0415
    from stream_notify_crawler.monitors.youtube.keys import ApiKeyPool  # noqa: PLC0415
    from stream_notify_crawler.monitors.youtube.membership import (  # noqa: PLC0415
        BrokerProbeNotifier,
        MembershipMarkerProbe,
    )
    from stream_notify_crawler.workers.scheduler import build_quota_policies  # noqa: PLC0415

    settings = get_settings()
    configure_logging(settings.log_level)
    if not settings.youtube_enabled:
        print("[probe_membership] ERROR: YOUTUBE_API_KEYS is not set.", file=sys.stderr)
        return 1

    engine = build_engine(
        settings.database_url,
        connect_timeout=settings.database_connect_timeout_seconds,
        command_timeout=settings.database_command_timeout_seconds,
    )
    repository = SqlAlchemyStreamRepository(build_session_factory(engine))
    publisher = None if dry_run else build_publisher(settings)
    notifier = (
        _StdoutNotifier()
        if publisher is None
        else BrokerProbeNotifier(publisher, category=settings.owner_notify_channel or "membership.probe")
    )

    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True) as client:
            probe = MembershipMarkerProbe(
                http_client=client,
                key_pool=ApiKeyPool(settings.youtube_api_keys),
                quota=QuotaTracker(build_quota_policies(settings)),
                repository=repository,
                notifier=notifier,
                rng=random.Random(seed),
            )
            if channel_id is None:
                reports = await probe.run_pass()
            else:
                states = {state.channel_id: state for state in await repository.list_probe_states()}
                state = states.get(channel_id) or MembershipProbeState(channel_id=channel_id)
                reports = [await probe.probe_channel(state)]
    except StreamCrawlerError as exc:
        print(f"[probe_membership] ERROR: {exc}", file=sys.stderr)
        return 1
    finally:
        if publisher is not None:
            await publisher.close()
        await engine.dispose()

    for report in reports:
        marker = f" marker={report.marker_video_id}" if report.marker_video_id else ""
        print(
            f"[probe_membership] {report.channel_id}: {report.outcome.value}"
            f" attempts={report.attempts}{marker}"
        )
    print(f"[probe_membership] Probed {len(reports)} channel(s).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one membership-marker probe pass.")
    parser.add_argument("--channel", default=None, help="YouTube channel id (UC...) to probe.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for candidate sampling.")
    parser.add_argument("--dry-run", action="store_true", help="Print notifications instead of publishing.")
    args = parser.parse_args()

    sys.exit(asyncio.run(_run(args.channel, args.seed, args.dry_run)))


if __name__ == "__main__":
    main()
