"""FastAPI dependency providers.

The running :class:`CrawlerScheduler` is created by the application lifespan
and stored on ``app.state``; route handlers resolve it through
:func:`get_scheduler` so tests can swap in their own instance.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from stream_notify_crawler.workers.scheduler import CrawlerScheduler


def get_scheduler(request: Request) -> CrawlerScheduler:
    """Return the scheduler attached to the application.

    Raises:
        HTTPException: 503 when the lifespan has not created a scheduler.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="crawler is not running",
        )
    return scheduler


SchedulerDep = Annotated[CrawlerScheduler, Depends(get_scheduler)]
