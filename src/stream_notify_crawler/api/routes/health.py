"""Status route handlers for the crawler.

Exposes three endpoints:

``GET /health``
    Aggregated health report: storage and broker reachability, the
    publisher's failure streak and every monitor's liveness.  Returns HTTP
    200 unless the aggregate status is ``Unhealthy`` (HTTP 503), so container
    health checks can use it directly.

``GET /api/quota``
    Current quota window of every accounted platform.

``GET /metrics``
    Prometheus text exposition.

These endpoints are diagnostic; dependency failures are reported in the body
and never surface as unhandled 5xx errors.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Response
from fastapi.responses import JSONResponse

from stream_notify_crawler.api.dependencies import SchedulerDep
from stream_notify_crawler.api.metrics import get_metrics_response
from stream_notify_crawler.core.domain import HealthStatus
from stream_notify_crawler.core.schemas.events import HealthReport, QuotaUsage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthReport)
async def health(scheduler: SchedulerDep) -> JSONResponse:
    """Return the aggregated :class:`HealthReport`."""
    report = await scheduler.health.check_health()
    status_code = 503 if report.status == HealthStatus.UNHEALTHY.value else 200
    if status_code != 200:
        logger.warning("health_check_unhealthy", extra={"health": report.model_dump(mode="json")})
    return JSONResponse(report.model_dump(mode="json"), status_code=status_code)


@router.get("/api/quota", response_model=dict[str, QuotaUsage])
async def quota(scheduler: SchedulerDep) -> dict[str, QuotaUsage]:
    """Return per-platform quota usage for the current window."""
    return {
        platform: QuotaUsage.from_state(state)
        for platform, state in scheduler.quota.all_usage().items()
    }


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    body, content_type = get_metrics_response()
    return Response(content=body, media_type=content_type)
