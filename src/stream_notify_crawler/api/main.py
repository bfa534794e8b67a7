"""FastAPI application factory and entry point.

The application is a thin status surface around the crawler: its lifespan
builds the database engine, the Redis client, the event publisher and the
:class:`CrawlerScheduler`, starts the scheduler, and stops it (closing the
broker last) on shutdown.

Usage::

    # Development server
    uvicorn --factory stream_notify_crawler.api.main:create_app --reload

    # As a module
    python -m stream_notify_crawler
"""

from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response

from stream_notify_crawler import __version__
from stream_notify_crawler.config.settings import Settings, get_settings
from stream_notify_crawler.core.database import build_engine, build_session_factory
from stream_notify_crawler.core.event_bus import EventPublisher
from stream_notify_crawler.core.logging_config import configure_logging
from stream_notify_crawler.core.repository import SqlAlchemyStreamRepository
from stream_notify_crawler.workers.scheduler import CrawlerScheduler

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------


def build_publisher(settings: Settings) -> EventPublisher:
    redis_client = aioredis.from_url(
        settings.redis_url,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )
    return EventPublisher(
        redis_client,
        prefix=settings.redis_key_prefix,
        publish_timeout=settings.redis_socket_timeout_seconds,
        unhealthy_after=settings.health_error_streak,
    )


@asynccontextmanager
async def crawler_lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Start the crawler with the application and stop it on shutdown."""
    settings = get_settings()
    engine = build_engine(
        settings.database_url,
        connect_timeout=settings.database_connect_timeout_seconds,
        command_timeout=settings.database_command_timeout_seconds,
    )
    repository = SqlAlchemyStreamRepository(
        build_session_factory(engine),
        command_timeout=settings.database_command_timeout_seconds,
    )
    scheduler = CrawlerScheduler(settings, repository, build_publisher(settings))
    application.state.scheduler = scheduler

    logger.info("application_startup", app_name=settings.app_name, log_level=settings.log_level)
    try:
        await scheduler.start()
        yield
    finally:
        await scheduler.stop()
        await engine.dispose()
        logger.info("application_shutdown")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    lifespan: Callable[[FastAPI], AsyncIterator[None]] | None = crawler_lifespan,
) -> FastAPI:
    """Build and configure the FastAPI application.

    Args:
        lifespan: Lifespan context manager.  Tests pass ``None`` and attach
            their own scheduler to ``app.state.scheduler``.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Live-stream state crawler status API.",
        version=__version__,
        lifespan=lifespan,
    )

    @application.middleware("http")
    async def request_logging_middleware(request: Request, call_next: Callable) -> Response:
        """Log every request with its status and duration, and record metrics."""
        from stream_notify_crawler.api.metrics import (  # noqa: PLC0415
            http_request_duration_seconds,
            http_requests_total,
        )

        request_id = str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed = time.perf_counter() - start
            status_code = response.status_code if response is not None else 500
            http_requests_total.labels(
                method=request.method, path=request.url.path, status=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(method=request.method, path=request.url.path).observe(elapsed)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn("request_complete", status_code=status_code, elapsed_ms=round(elapsed * 1000, 2))

        response.headers["X-Request-ID"] = request_id
        return response

    from stream_notify_crawler.api.routes import health as health_routes  # noqa: PLC0415

    application.include_router(health_routes.router)
    return application
