"""Authoritative in-memory state of every known broadcast.

``StreamStateStore`` is the only place a :class:`StreamRecord` is mutated.
Writers use :meth:`StreamStateStore.compare_and_set`, which holds a lock for
that one key, checks the stored status against the writer's expectation and
refuses any write that would move the broadcast backwards along
Scheduled → Live → Ended.  Distinct keys never contend.

The repository is only a durable copy: when saving fails, this store remains
the source of truth until the next successful save.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime

from stream_notify_crawler.core.domain import StreamRecord, StreamStatus

logger = logging.getLogger(__name__)


class StreamStateStore:
    """Per-key compare-and-set store of :class:`StreamRecord` objects."""

    def __init__(self, records: list[StreamRecord] | None = None) -> None:
        self._records: dict[str, StreamRecord] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        for record in records or []:
            self._records[record.stream_key] = record

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, stream_key: object) -> bool:
        return stream_key in self._records

    def get(self, stream_key: str) -> StreamRecord | None:
        """Return the stored record for ``stream_key`` or ``None``."""
        return self._records.get(stream_key)

    async def compare_and_set(
        self,
        stream_key: str,
        expected_prior_status: StreamStatus | None,
        new_record: StreamRecord,
    ) -> bool:
        """Store ``new_record`` if the current state matches the expectation.

        Args:
            stream_key: Key being written.  Must equal ``new_record.stream_key``.
            expected_prior_status: Status the writer read before computing
                ``new_record``; ``None`` means the writer saw no record.
            new_record: Replacement record.

        Returns:
            ``True`` if the write was applied.  ``False`` when the stored
            status differs from ``expected_prior_status`` or when
            ``new_record`` would regress the stored status; the stored record
            is left unchanged in both cases.
        """
        if new_record.stream_key != stream_key:
            raise ValueError(
                f"record key {new_record.stream_key!r} does not match {stream_key!r}"
            )

        async with self._locks[stream_key]:
            current = self._records.get(stream_key)
            current_status = current.status if current is not None else None

            if current_status != expected_prior_status:
                logger.debug(
                    "state_store: cas mismatch key=%s expected=%s actual=%s",
                    stream_key,
                    expected_prior_status,
                    current_status,
                )
                return False

            if current_status is not None and not current_status.can_advance_to(new_record.status):
                logger.warning(
                    "state_store: rejected regression key=%s %s -> %s",
                    stream_key,
                    current_status.value,
                    new_record.status.value,
                )
                return False

            self._records[stream_key] = new_record
            return True

    def seed(self, records: list[StreamRecord]) -> int:
        """Load persisted records for keys the store does not hold yet.

        Returns:
            Number of records added.
        """
        added = 0
        for record in records:
            if record.stream_key not in self._records:
                self._records[record.stream_key] = record
                added += 1
        return added

    def records_for(self, platform: str) -> list[StreamRecord]:
        return [r for r in self._records.values() if r.platform == platform]

    def open_records(self, platform: str, channel_id: str) -> list[StreamRecord]:
        """Return the channel's records that are not yet ``ENDED``."""
        return [
            r
            for r in self._records.values()
            if r.platform == platform
            and r.channel_id == channel_id
            and r.status is not StreamStatus.ENDED
        ]

    def live_keys(self, platform: str, channel_id: str) -> set[str]:
        return {
            r.stream_key
            for r in self.open_records(platform, channel_id)
            if r.status is StreamStatus.LIVE
        }

    def count_by_status(self, platform: str) -> dict[str, int]:
        counts = {status.value: 0 for status in StreamStatus}
        for record in self.records_for(platform):
            counts[record.status.value] += 1
        return counts

    def prune(self, ended_before: datetime) -> int:
        """Drop ``ENDED`` records last seen before ``ended_before``.

        Ended keys are never reused, so forgetting them cannot resurrect a
        broadcast.

        Returns:
            Number of records removed.
        """
        stale = [
            key
            for key, record in self._records.items()
            if record.status is StreamStatus.ENDED and record.last_seen_at < ended_before
        ]
        removed = 0
        for key in stale:
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            self._records.pop(key, None)
            self._locks.pop(key, None)
            removed += 1
        return removed
