"""Initial schema: tracked channels, stream records and the membership probe queue.

Creates:

1. tracked_channels   — channels registered by the bot surface
2. stream_records     — durable copy of the crawler's stream state
                        (``version_id`` is the optimistic-lock counter)
3. membership_probes  — YouTube channels queued for the marker probe

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    ]


# ---------------------------------------------------------------------------
# upgrade
# ---------------------------------------------------------------------------

def upgrade() -> None:
    """Create all crawler tables and their indexes."""

    # ------------------------------------------------------------------
    # 1. tracked_channels
    # ------------------------------------------------------------------
    op.create_table(
        "tracked_channels",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("external_channel_id", sa.String(200), nullable=False),
        sa.Column("display_title", sa.String(500), nullable=False, server_default=sa.text("''")),
        sa.Column("is_trusted", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("deactivated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("platform", "external_channel_id", name="uq_tracked_channel"),
    )
    op.create_index("ix_tracked_channels_platform", "tracked_channels", ["platform"])
    op.create_index(
        "ix_tracked_channels_active",
        "tracked_channels",
        ["platform"],
        postgresql_where=sa.text("is_active"),
    )

    # ------------------------------------------------------------------
    # 2. stream_records
    # ------------------------------------------------------------------
    op.create_table(
        "stream_records",
        sa.Column("stream_key", sa.String(300), primary_key=True),
        sa.Column("platform", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(200), nullable=False),
        sa.Column("title", sa.String(1000), nullable=False, server_default=sa.text("''")),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("start_time", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("end_time", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("viewer_count", sa.Integer, nullable=True),
        sa.Column("last_seen_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("url", sa.String(500), nullable=False, server_default=sa.text("''")),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("version_id", sa.Integer, nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('scheduled', 'live', 'ended')",
            name="ck_stream_records_status",
        ),
    )
    op.create_index("ix_stream_records_platform", "stream_records", ["platform"])
    op.create_index("ix_stream_records_channel_id", "stream_records", ["channel_id"])
    op.create_index(
        "ix_stream_records_open",
        "stream_records",
        ["platform", "channel_id"],
        postgresql_where=sa.text("status <> 'ended'"),
    )

    # ------------------------------------------------------------------
    # 3. membership_probes
    # ------------------------------------------------------------------
    op.create_table(
        "membership_probes",
        sa.Column("channel_id", sa.String(64), primary_key=True),
        sa.Column("candidate_video_id", sa.String(32), nullable=False, server_default=sa.text("''")),
        sa.Column("verified_marker_video_id", sa.String(32), nullable=False, server_default=sa.text("''")),
        sa.Column("channel_title", sa.String(500), nullable=False, server_default=sa.text("''")),
        sa.Column("last_checked_at", sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )


# ---------------------------------------------------------------------------
# downgrade
# ---------------------------------------------------------------------------

def downgrade() -> None:
    """Drop all crawler tables."""
    op.drop_table("membership_probes")
    op.drop_index("ix_stream_records_open", table_name="stream_records")
    op.drop_index("ix_stream_records_channel_id", table_name="stream_records")
    op.drop_index("ix_stream_records_platform", table_name="stream_records")
    op.drop_table("stream_records")
    op.drop_index("ix_tracked_channels_active", table_name="tracked_channels")
    op.drop_index("ix_tracked_channels_platform", table_name="tracked_channels")
    op.drop_table("tracked_channels")
