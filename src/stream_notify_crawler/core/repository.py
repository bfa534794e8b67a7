"""Relational store access for the crawler.

The crawler only talks to the database through :class:`StreamRepository`.
:class:`SqlAlchemyStreamRepository` is the production implementation; tests
substitute an ``AsyncMock`` or an in-memory fake.

Stream record saves use optimistic locking.  When a concurrent writer bumps
``version_id`` between our load and our commit, SQLAlchemy raises
``StaleDataError`` (or ``IntegrityError`` when both inserted the same key);
the repository then reloads the row, reapplies the record, and tries again,
up to :data:`MAX_SAVE_ATTEMPTS` attempts or :data:`SAVE_BUDGET_SECONDS`
seconds.  The in-memory state store stays authoritative while a save is
failing.
"""

from __future__ import annotations

import asyncio
import enum
from datetime import datetime, timezone
from typing import Protocol

import sqlalchemy as sa
import structlog
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from stream_notify_crawler.core.domain import (
    MembershipProbeState,
    StreamRecord,
    StreamStatus,
    TrackedChannel,
    utcnow,
)
from stream_notify_crawler.core.exceptions import PersistenceError
from stream_notify_crawler.core.models import (
    MembershipProbeRow,
    StreamRecordRow,
    TrackedChannelRow,
)

logger = structlog.get_logger(__name__)

MAX_SAVE_ATTEMPTS = 5
SAVE_BUDGET_SECONDS = 60.0
_CONFLICT_BACKOFF_SECONDS = 0.1


class SaveOutcome(enum.Enum):
    SAVED = "saved"
    FAILED_AFTER_RETRIES = "failed_after_retries"


class StreamRepository(Protocol):
    """Narrow persistence contract used by monitors, maintenance and the probe."""

    async def list_tracked_channels(self, platform: str) -> list[TrackedChannel]: ...

    async def list_open_stream_records(self) -> list[StreamRecord]: ...

    async def save_stream_record(self, record: StreamRecord) -> SaveOutcome: ...

    async def deactivate_channel(self, platform: str, external_channel_id: str) -> bool: ...

    async def update_channel_title(self, platform: str, external_channel_id: str, title: str) -> bool: ...

    async def list_probe_states(self) -> list[MembershipProbeState]: ...

    async def save_probe_state(self, state: MembershipProbeState) -> None: ...

    async def remove_probe_channel(self, channel_id: str) -> bool: ...

    async def ping(self) -> bool: ...


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything in the crawler is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _row_to_record(row: StreamRecordRow) -> StreamRecord:
    return StreamRecord(
        stream_key=row.stream_key,
        platform=row.platform,
        channel_id=row.channel_id,
        title=row.title,
        status=StreamStatus(row.status),
        start_time=_aware(row.start_time),
        end_time=_aware(row.end_time),
        viewer_count=row.viewer_count,
        last_seen_at=_aware(row.last_seen_at) or utcnow(),
        url=row.url,
        metadata=dict(row.extra or {}),
    )


def _apply_record(row: StreamRecordRow, record: StreamRecord) -> None:
    row.platform = record.platform
    row.channel_id = record.channel_id
    row.title = record.title
    row.status = record.status.value
    row.start_time = record.start_time
    row.end_time = record.end_time
    row.viewer_count = record.viewer_count
    row.last_seen_at = record.last_seen_at
    row.url = record.url
    row.extra = dict(record.metadata)


class SqlAlchemyStreamRepository:
    """:class:`StreamRepository` backed by an async SQLAlchemy session factory.

    Args:
        session_factory: ``async_sessionmaker`` bound to the crawler database.
        command_timeout: Seconds allowed for each repository call.
        max_save_attempts: Upper bound on optimistic-lock retries.
        save_budget_seconds: Wall-clock budget for one save including retries.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        command_timeout: float = 60.0,
        max_save_attempts: int = MAX_SAVE_ATTEMPTS,
        save_budget_seconds: float = SAVE_BUDGET_SECONDS,
    ) -> None:
        self._session_factory = session_factory
        self._command_timeout = command_timeout
        self._max_save_attempts = max_save_attempts
        self._save_budget_seconds = save_budget_seconds

    # ------------------------------------------------------------------
    # Tracked channels
    # ------------------------------------------------------------------

    async def list_tracked_channels(self, platform: str) -> list[TrackedChannel]:
        stmt = (
            sa.select(TrackedChannelRow)
            .where(TrackedChannelRow.platform == platform, TrackedChannelRow.is_active.is_(True))
            .order_by(TrackedChannelRow.id)
        )
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                rows = result.scalars().all()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(f"could not list {platform} channels: {exc}") from exc
        return [
            TrackedChannel(
                platform=row.platform,
                external_channel_id=row.external_channel_id,
                display_title=row.display_title,
                is_trusted=row.is_trusted,
            )
            for row in rows
        ]

    async def deactivate_channel(self, platform: str, external_channel_id: str) -> bool:
        """Mark a channel inactive.  Returns ``False`` if it was not active."""
        stmt = (
            sa.update(TrackedChannelRow)
            .where(
                TrackedChannelRow.platform == platform,
                TrackedChannelRow.external_channel_id == external_channel_id,
                TrackedChannelRow.is_active.is_(True),
            )
            .values(is_active=False, deactivated_at=utcnow())
        )
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                await session.commit()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(
                f"could not deactivate {platform}:{external_channel_id}: {exc}"
            ) from exc
        changed = bool(result.rowcount)
        if changed:
            logger.info("tracked_channel_deactivated", platform=platform, channel_id=external_channel_id)
        return changed

    async def update_channel_title(self, platform: str, external_channel_id: str, title: str) -> bool:
        """Store a channel's new display title so it survives restarts."""
        stmt = (
            sa.update(TrackedChannelRow)
            .where(
                TrackedChannelRow.platform == platform,
                TrackedChannelRow.external_channel_id == external_channel_id,
            )
            .values(display_title=title)
        )
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                await session.commit()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(
                f"could not rename {platform}:{external_channel_id}: {exc}"
            ) from exc
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Stream records
    # ------------------------------------------------------------------

    async def list_open_stream_records(self) -> list[StreamRecord]:
        """Return every record not yet ``ENDED``, used to seed the state store."""
        stmt = sa.select(StreamRecordRow).where(StreamRecordRow.status != StreamStatus.ENDED.value)
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                return [_row_to_record(row) for row in result.scalars().all()]
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(f"could not load stream records: {exc}") from exc

    async def _save_once(self, record: StreamRecord) -> None:
        async with self._session_factory() as session:
            row = await session.get(StreamRecordRow, record.stream_key)
            if row is None:
                row = StreamRecordRow(stream_key=record.stream_key)
                _apply_record(row, record)
                session.add(row)
            else:
                stored = StreamStatus(row.status)
                if not stored.can_advance_to(record.status):
                    logger.debug(
                        "stream_record_save_skipped_regression",
                        stream_key=record.stream_key,
                        stored=stored.value,
                        incoming=record.status.value,
                    )
                    return
                _apply_record(row, record)
            await session.commit()

    async def save_stream_record(self, record: StreamRecord) -> SaveOutcome:
        """Upsert ``record``, retrying optimistic-lock conflicts.

        Every database error is retried: each attempt reloads the row and
        reapplies ``record``, so a concurrent insert of the same key
        (``IntegrityError``) resolves into an update on the next attempt.

        Returns:
            ``SaveOutcome.SAVED`` once the row matches ``record`` (or is
            already further along the lifecycle), otherwise
            ``SaveOutcome.FAILED_AFTER_RETRIES``.  Never raises for database
            errors.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._save_budget_seconds
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - loop.time()
            try:
                await asyncio.wait_for(self._save_once(record), max(remaining, 0.001))
                if attempt > 1:
                    logger.info("stream_record_saved_after_retry", stream_key=record.stream_key, attempts=attempt)
                return SaveOutcome.SAVED
            except (StaleDataError, IntegrityError, OperationalError, asyncio.TimeoutError) as exc:
                logger.warning(
                    "stream_record_save_conflict",
                    stream_key=record.stream_key,
                    attempt=attempt,
                    error=type(exc).__name__,
                )
            except SQLAlchemyError as exc:
                logger.warning(
                    "stream_record_save_error",
                    stream_key=record.stream_key,
                    attempt=attempt,
                    error=str(exc),
                )

            if attempt >= self._max_save_attempts or loop.time() >= deadline:
                logger.error(
                    "stream_record_save_failed",
                    stream_key=record.stream_key,
                    attempts=attempt,
                )
                return SaveOutcome.FAILED_AFTER_RETRIES
            await asyncio.sleep(_CONFLICT_BACKOFF_SECONDS * attempt)

    # ------------------------------------------------------------------
    # Membership probe queue
    # ------------------------------------------------------------------

    async def list_probe_states(self) -> list[MembershipProbeState]:
        stmt = sa.select(MembershipProbeRow).order_by(MembershipProbeRow.channel_id)
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                rows = result.scalars().all()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(f"could not list probe states: {exc}") from exc
        return [
            MembershipProbeState(
                channel_id=row.channel_id,
                candidate_video_id=row.candidate_video_id,
                verified_marker_video_id=row.verified_marker_video_id,
                channel_title=row.channel_title,
                last_checked_at=_aware(row.last_checked_at),
            )
            for row in rows
        ]

    async def save_probe_state(self, state: MembershipProbeState) -> None:
        try:
            async with self._session_factory() as session:
                row = await session.get(MembershipProbeRow, state.channel_id)
                if row is None:
                    row = MembershipProbeRow(channel_id=state.channel_id)
                    session.add(row)
                row.candidate_video_id = state.candidate_video_id
                row.verified_marker_video_id = state.verified_marker_video_id
                row.channel_title = state.channel_title
                row.last_checked_at = state.last_checked_at
                await asyncio.wait_for(session.commit(), self._command_timeout)
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(f"could not save probe state for {state.channel_id}: {exc}") from exc

    async def remove_probe_channel(self, channel_id: str) -> bool:
        stmt = sa.delete(MembershipProbeRow).where(MembershipProbeRow.channel_id == channel_id)
        try:
            async with self._session_factory() as session:
                result = await asyncio.wait_for(session.execute(stmt), self._command_timeout)
                await session.commit()
        except (SQLAlchemyError, asyncio.TimeoutError) as exc:
            raise PersistenceError(f"could not remove probe channel {channel_id}: {exc}") from exc
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Run ``SELECT 1``.  Returns ``False`` instead of raising."""
        try:
            async with self._session_factory() as session:
                await asyncio.wait_for(session.execute(sa.text("SELECT 1")), self._command_timeout)
            return True
        except Exception:  # noqa: BLE001
            logger.exception("storage_ping_failed")
            return False
