"""ORM models.  Importing this package registers every table on ``Base.metadata``."""

from stream_notify_crawler.core.models.base import Base
from stream_notify_crawler.core.models.streams import (
    MembershipProbeRow,
    StreamRecordRow,
    TrackedChannelRow,
)

__all__ = ["Base", "MembershipProbeRow", "StreamRecordRow", "TrackedChannelRow"]
