"""ORM models for tracked channels, stream records and membership probes.

tracked_channels:   channels registered by the bot surface.  The crawler only
                    reads them, apart from flipping ``is_active`` off during
                    stale-channel cleanup.
stream_records:     durable copy of ``StreamStateStore``.  ``version_id`` is
                    the optimistic-lock counter; a concurrent UPDATE raises
                    ``StaleDataError`` and the repository reloads and
                    reapplies.
membership_probes:  one row per members-only YouTube channel queued for the
                    marker probe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from stream_notify_crawler.core.models.base import Base, TimestampMixin


class TrackedChannelRow(TimestampMixin, Base):
    __tablename__ = "tracked_channels"
    __table_args__ = (
        sa.UniqueConstraint("platform", "external_channel_id", name="uq_tracked_channel"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    external_channel_id: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    display_title: Mapped[str] = mapped_column(sa.String(500), nullable=False, default="")
    is_trusted: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class StreamRecordRow(TimestampMixin, Base):
    """Persisted :class:`~stream_notify_crawler.core.domain.StreamRecord`.

    ``status`` stores the lowercase ``StreamStatus`` value.  The Python
    attribute ``extra`` maps to the ``metadata`` column because ``metadata``
    is reserved on declarative classes.
    """

    __tablename__ = "stream_records"

    stream_key: Mapped[str] = mapped_column(sa.String(300), primary_key=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(sa.String(200), nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.String(1000), nullable=False, default="")
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    start_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    viewer_count: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(nullable=False)
    url: Mapped[str] = mapped_column(sa.String(500), nullable=False, default="")
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", nullable=False, default=dict)
    version_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class MembershipProbeRow(TimestampMixin, Base):
    __tablename__ = "membership_probes"

    channel_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    candidate_video_id: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="")
    verified_marker_video_id: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="")
    channel_title: Mapped[str] = mapped_column(sa.String(500), nullable=False, default="")
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
