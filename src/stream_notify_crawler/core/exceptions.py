"""Application-wide exception hierarchy for the Stream Notify Crawler.

All custom exceptions subclass ``StreamCrawlerError``, enabling
consistent error handling and structured logging across the crawler.

Hierarchy::

    StreamCrawlerError
    ├── PlatformError                (platform: str | None)
    │   ├── PlatformTransientError   (5xx, timeouts, connection failures)
    │   ├── PlatformAuthError        (401 / 403 authorization failures)
    │   ├── PlatformQuotaError       (retry_after: float)
    │   ├── PlatformNotFoundError
    │   ├── CommentsDisabledError
    │   └── PlaylistNotFoundError
    ├── PersistenceError
    ├── StartupError
    └── SchedulerStateError

Classification is done by the platform client at the call site.  The same
HTTP status can map to different classes depending on the endpoint: a 403 on
``commentThreads`` during the membership probe is an expected signal, while a
403 on ``videos`` means the monitor's credentials are rejected.
"""

from __future__ import annotations


class StreamCrawlerError(Exception):
    """Base class for all crawler exceptions."""


# ---------------------------------------------------------------------------
# Platform exceptions
# ---------------------------------------------------------------------------


class PlatformError(StreamCrawlerError):
    """Raised when a call to an upstream platform API fails.

    Args:
        message: Human-readable description of the failure.
        platform: Platform identifier (e.g. ``"youtube"``).
        status_code: HTTP status returned by the platform, when known.
    """

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code


class PlatformTransientError(PlatformError):
    """A retryable failure: HTTP 5xx, request timeout, or connection error."""


class PlatformAuthError(PlatformError):
    """The platform rejected the request's credentials or authorization.

    Marks the owning monitor Degraded.  In the membership probe a 403 on a
    candidate video's comment thread is raised as this class and treated as
    the success signal by the caller.
    """


class PlatformQuotaError(PlatformError):
    """The platform reports that the API quota or rate limit is exhausted.

    Args:
        message: Human-readable description.
        retry_after: Seconds until the platform accepts requests again.
        platform: Platform identifier.
    """

    def __init__(
        self,
        message: str,
        retry_after: float = 60.0,
        platform: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, platform=platform, status_code=status_code)
        self.retry_after = retry_after


class PlatformNotFoundError(PlatformError):
    """The requested channel, user or resource does not exist on the platform."""


class CommentsDisabledError(PlatformError):
    """The video's comment thread is disabled (membership probe resamples)."""


class PlaylistNotFoundError(PlatformError):
    """The channel has no members-only playlist (no qualifying content yet)."""


# ---------------------------------------------------------------------------
# Persistence / lifecycle exceptions
# ---------------------------------------------------------------------------


class PersistenceError(StreamCrawlerError):
    """Raised when the repository cannot complete a read or write.

    Args:
        message: Description of the failure.
        stream_key: Stream key of the affected record, if any.
    """

    def __init__(self, message: str, stream_key: str | None = None) -> None:
        super().__init__(message)
        self.stream_key = stream_key


class StartupError(StreamCrawlerError):
    """Fatal failure while the scheduler is initializing.

    Args:
        message: Description of the failure.
        component: Name of the dependency that could not be reached
            (``"storage"``, ``"broker"`` or a platform name).
    """

    def __init__(self, message: str, component: str | None = None) -> None:
        super().__init__(message)
        self.component = component


class SchedulerStateError(StreamCrawlerError):
    """Raised when a scheduler operation is invalid for its current state."""
