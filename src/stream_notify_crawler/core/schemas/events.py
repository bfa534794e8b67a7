"""Pydantic schemas for broker envelopes and the health/quota responses.

Every message the crawler publishes is an :class:`EventEnvelope` serialised
with PascalCase field names::

    {
        "EventId": "5b0c…",
        "EventType": "stream.start",
        "Timestamp": "2026-10-17T12:00:00+00:00",
        "Version": "1.0",
        "Payload": {"streamKey": "twitch:4012", "platform": "twitch", …}
    }
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from stream_notify_crawler.core.domain import QuotaState

ENVELOPE_VERSION = "1.0"


class EventEnvelope(BaseModel):
    """Versioned wrapper around every published event."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="EventId")
    event_type: str = Field(alias="EventType")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="Timestamp"
    )
    version: str = Field(default=ENVELOPE_VERSION, alias="Version")
    payload: Dict[str, Any] = Field(default_factory=dict, alias="Payload")

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class HealthEntry(BaseModel):
    status: str
    description: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class HealthReport(BaseModel):
    """Response shape of the health query.

    Attributes:
        status: Worst status across ``entries``.
        entries: Component name → entry.
        checked_at: When the report was computed.
    """

    status: str
    entries: Dict[str, HealthEntry] = Field(default_factory=dict)
    checked_at: Optional[datetime] = None


class QuotaUsage(BaseModel):
    """Response shape of one platform in the quota query."""

    model_config = ConfigDict(populate_by_name=True)

    platform: str
    used_units: int = Field(alias="usedUnits")
    limit_units: int = Field(alias="limitUnits")
    remaining_units: int = Field(alias="remainingUnits")
    usage_percentage: float = Field(alias="usagePercentage")
    window_reset_at: datetime = Field(alias="windowResetAt")

    @classmethod
    def from_state(cls, state: QuotaState) -> QuotaUsage:
        return cls.model_validate(state.to_dict())
