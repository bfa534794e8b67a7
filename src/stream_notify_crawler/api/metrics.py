"""Prometheus metrics for the Stream Notify Crawler.

All metrics are module-level singletons registered on the default
``REGISTRY``.  They are safe to import from multiple modules because the
module is only executed once per process.

Metrics defined here:

  crawler_events_published_total{event_type, outcome}
      Counter — envelopes handed to the broker, by envelope type and
      outcome (published, failed).

  crawler_poll_cycles_total{platform, outcome}
      Counter — monitor poll cycles by outcome (ok, degraded, failed).

  crawler_poll_duration_seconds{platform}
      Histogram — wall-clock duration of one monitor poll cycle.

  crawler_quota_used_units{platform}
      Gauge — units consumed in the current quota window.

  crawler_component_health{component}
      Gauge — 2 = healthy, 1 = degraded, 0 = unhealthy.

  http_requests_total{method, path, status}
      Counter — HTTP requests handled by the status API.

  http_request_duration_seconds{method, path}
      Histogram — HTTP request latency in seconds.

Usage::

    from stream_notify_crawler.api.metrics import events_published_total
    events_published_total.labels(event_type="stream.start", outcome="published").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Broker
# ---------------------------------------------------------------------------

events_published_total: Counter = Counter(
    "crawler_events_published_total",
    "Envelopes handed to the broker by type and outcome.",
    labelnames=["event_type", "outcome"],
)

# ---------------------------------------------------------------------------
# Monitors
# ---------------------------------------------------------------------------

poll_cycles_total: Counter = Counter(
    "crawler_poll_cycles_total",
    "Monitor poll cycles by platform and outcome.",
    labelnames=["platform", "outcome"],
)

poll_duration_seconds: Histogram = Histogram(
    "crawler_poll_duration_seconds",
    "Wall-clock duration of one monitor poll cycle.",
    labelnames=["platform"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

quota_used_units: Gauge = Gauge(
    "crawler_quota_used_units",
    "API quota units consumed in the current window.",
    labelnames=["platform"],
)

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

component_health: Gauge = Gauge(
    "crawler_component_health",
    "Per-component health. 2 = healthy, 1 = degraded, 0 = unhealthy.",
    labelnames=["component"],
)

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

http_requests_total: Counter = Counter(
    "http_requests_total",
    "HTTP requests handled by the status API.",
    labelnames=["method", "path", "status"],
)

http_request_duration_seconds: Histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 30.0],
)


def get_metrics_response() -> tuple[bytes, str]:
    """Generate a Prometheus text-format metrics response.

    Returns:
        A tuple of (body_bytes, content_type_string) suitable for constructing
        a FastAPI ``Response`` object.
    """
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest  # noqa: PLC0415

    return generate_latest(), CONTENT_TYPE_LATEST
